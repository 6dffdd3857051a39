import argparse
import logging
import sys
import time
import uuid

from pydantic import ValidationError

from . import ffmpeg_runner
from .catalog import VideoStatus
from .config import resolve_config
from .errors import MediaProcError, VideoNotFound
from .queue.models import (
    AudioExtractSettings,
    CompressSettings,
    JobRequest,
    JobStatus,
    JobType,
    PreviewSettings,
    WatermarkSettings,
)
from .service import ProcessingService


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", "-c", type=str, help="YAML config (replaces config/local.yaml)")
    common.add_argument("--db", type=str, help="Pipeline database path")
    common.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging level",
    )
    return common


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mediaproc", description="Asynchronous media-processing pipeline"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")
    common = _common_options()

    # CHECK FFMPEG
    subparsers.add_parser("check", parents=[common], help="Verify dependencies")

    # SUBMIT
    submit_parser = subparsers.add_parser(
        "submit", parents=[common], help="Register a video and queue its processing jobs"
    )
    submit_parser.add_argument("--input", "-i", type=str, required=True, help="Source video file")
    submit_parser.add_argument("--video-id", type=str, help="Video id (default: random UUID)")
    submit_parser.add_argument("--user-id", type=str, default="local", help="Owner id")
    submit_parser.add_argument("--title", type=str, help="Video title")
    submit_parser.add_argument(
        "--renditions", type=str, default="720p", help="Comma-separated labels (720p,480p)"
    )
    submit_parser.add_argument("--thumbnails", type=int, default=5, help="Thumbnail count")
    submit_parser.add_argument("--audio", choices=["mp3", "aac"], help="Also extract audio")
    submit_parser.add_argument("--preview", action="store_true", help="Also cut a preview clip")
    submit_parser.add_argument("--compress", action="store_true", help="Also build a compressed copy")
    submit_parser.add_argument("--watermark", type=str, help="Also burn in this watermark image")
    submit_parser.add_argument("--max-retries", type=int, help="Override retry budget")

    # WORK
    work_parser = subparsers.add_parser("work", parents=[common], help="Run the worker pool")
    work_parser.add_argument("--workers", "-w", type=int, help="Number of parallel workers")
    work_parser.add_argument(
        "--drain", action="store_true", help="Exit once no message is deliverable"
    )
    work_parser.add_argument("--max-jobs", type=int, help="Maximum number of jobs to process")
    work_parser.add_argument("--work-dir", type=str, help="Scratch directory for encodes")

    # JOBS
    jobs_parser = subparsers.add_parser("jobs", parents=[common], help="List jobs")
    jobs_parser.add_argument("--video-id", type=str, help="Only jobs of this video")
    jobs_parser.add_argument(
        "--status", choices=[s.value for s in JobStatus], help="Only jobs in this state"
    )

    # QUEUE subcommands (status, retry, cleanup)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_parser.set_defaults(queue_help=queue_parser.print_help)
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    queue_subparsers.add_parser("status", parents=[common], help="Show queue status")

    retry_parser = queue_subparsers.add_parser("retry", parents=[common], help="Retry failed jobs")
    retry_parser.add_argument("--video-id", type=str, help="Only failed jobs of this video")

    cleanup_parser = queue_subparsers.add_parser(
        "cleanup", parents=[common], help="Delete old finished jobs"
    )
    cleanup_parser.add_argument(
        "--older-than-days", type=int, default=30, help="Completed/cancelled job TTL"
    )
    cleanup_parser.add_argument(
        "--failed-older-than-days", type=int, default=7, help="Failed job TTL"
    )

    # CANCEL
    cancel_parser = subparsers.add_parser("cancel", parents=[common], help="Cancel a job")
    cancel_parser.add_argument("job_id", type=str, help="Job id")

    # RECONCILE
    reconcile_parser = subparsers.add_parser(
        "reconcile", parents=[common], help="Re-run readiness for a video"
    )
    reconcile_parser.add_argument("video_id", type=str, help="Video id")

    return parser


def _open_service(args) -> ProcessingService:
    cli_dict = {
        "db": getattr(args, "db", None),
        "workers": getattr(args, "workers", None),
        "work_dir": getattr(args, "work_dir", None),
        "max_retries": getattr(args, "max_retries", None),
    }
    config = resolve_config(cli_dict, config_path=getattr(args, "config", None))
    return ProcessingService.from_config(config)


def _submit_requests(service: ProcessingService, args) -> list:
    renditions = [label.strip() for label in args.renditions.split(",") if label.strip()]
    requests = service.default_requests(renditions, thumbnail_count=args.thumbnails)

    if args.audio:
        requests.append(
            JobRequest(job_type=JobType.AUDIO_EXTRACT, settings=AudioExtractSettings(codec=args.audio))
        )
    if args.preview:
        requests.append(JobRequest(job_type=JobType.PREVIEW, settings=PreviewSettings()))
    if args.compress:
        requests.append(JobRequest(job_type=JobType.COMPRESS, settings=CompressSettings()))
    if args.watermark:
        requests.append(
            JobRequest(job_type=JobType.WATERMARK, settings=WatermarkSettings(image=args.watermark))
        )
    return requests


def _print_job_table(jobs) -> None:
    print(f"{'JOB':<38}{'TYPE':<15}{'STATUS':<12}{'PROG':>5}  {'RETRY':<6}VIDEO")
    for job in jobs:
        print(
            f"{job.job_id:<38}{job.job_type.value:<15}{job.status.value:<12}"
            f"{job.progress.percent:>4}%  {job.retry_count}/{job.max_retries:<4}{job.video_id}"
        )
        if job.last_error and job.status == JobStatus.FAILED:
            print(f"    error: {job.last_error}")


def _run_worker(service: ProcessingService, args) -> None:
    pool = service.build_pool(args.workers)

    if args.drain or args.max_jobs:
        stats = pool.run_until_idle(max_jobs=args.max_jobs, show_progress=True)
        print("\n" + "=" * 60)
        print("PROCESSING SUMMARY")
        print("=" * 60)
        print(f"Completed:            {stats.get('completed')}")
        print(f"Failed:               {stats.get('failed')}")
        print(f"Retried:              {stats.get('retried')}")
        print(f"Cancelled:            {stats.get('cancelled')}")
        print(f"Requeued:             {stats.get('requeued')}")
        print("=" * 60)
        return

    print(f"Worker pool running with {pool.concurrency} worker(s). Ctrl-C to stop.")
    try:
        with pool:
            while True:
                time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopped; interrupted jobs were returned to the queue.")


def _dispatch(args) -> None:
    if args.command == "check":
        print("Checking dependencies...")
        version = ffmpeg_runner.ffmpeg_version()
        if version:
            print(f"✅ ffmpeg found: {version}")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)
        return

    service = _open_service(args)
    try:
        if args.command == "submit":
            video_id = args.video_id or str(uuid.uuid4())
            try:
                service.catalog.get_video(video_id)
            except VideoNotFound:
                service.catalog.create_video(
                    video_id,
                    user_id=args.user_id,
                    title=args.title,
                    source=args.input,
                    status=VideoStatus.UPLOADING,
                )
            requests = _submit_requests(service, args)
            job_ids = service.create_jobs(video_id, args.user_id, args.input, requests)
            print(f"Video {video_id}: queued {len(job_ids)} job(s)")
            for job_id in job_ids:
                print(f"  {job_id}")

        elif args.command == "work":
            _run_worker(service, args)

        elif args.command == "jobs":
            jobs = service.list_jobs(video_id=args.video_id, status=args.status)
            if not jobs:
                print("No jobs.")
            else:
                _print_job_table(jobs)

        elif args.command == "queue":
            if args.queue_command == "status":
                depth = service.get_queue_depth()
                print("\n" + "=" * 60)
                print("QUEUE STATUS")
                print("=" * 60)
                print(f"Waiting:              {depth.waiting}")
                print(f"Active:               {depth.active}")
                print(f"Completed:            {depth.completed}")
                print(f"Failed:               {depth.failed}")
                print(f"Total:                {depth.total}")
                print("=" * 60)

            elif args.queue_command == "retry":
                job_ids = service.retry_failed(video_id=args.video_id)
                print(f"Re-queued {len(job_ids)} failed job(s)")

            elif args.queue_command == "cleanup":
                deleted = service.cleanup(
                    older_than_days=args.older_than_days,
                    failed_older_than_days=args.failed_older_than_days,
                )
                print(f"Deleted {sum(deleted.values())} job(s): {deleted}")

        elif args.command == "cancel":
            job = service.cancel_job(args.job_id)
            if job.status == JobStatus.CANCELLED:
                print(f"Job {job.job_id} cancelled")
            else:
                print(f"Cancellation requested for job {job.job_id} ({job.status.value})")

        elif args.command == "reconcile":
            outcome = service.reconcile(args.video_id)
            video = service.catalog.get_video(args.video_id)
            print(f"Video {args.video_id}: {outcome.decision.value} ({outcome.reason})")
            print(f"Status: {video.status.value}")
    finally:
        service.close()


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    if args.command == "queue" and args.queue_command is None:
        args.queue_help()
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        _dispatch(args)
    except (MediaProcError, ValidationError, ValueError) as e:
        print(f"❌ Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
