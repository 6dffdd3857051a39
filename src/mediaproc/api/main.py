from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from mediaproc.config import resolve_config
from mediaproc.errors import InvalidTransition, JobNotFound, VideoNotFound
from mediaproc.queue.models import JobStatus, ProcessingJob, QueueDepth
from mediaproc.service import ProcessingService


# --- Response models ---
class QueueStatusResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    total: int


class ReconcileResponse(BaseModel):
    videoId: str  # noqa: N815
    decision: str
    reason: str
    statusChanged: bool  # noqa: N815
    videoStatus: str  # noqa: N815


def _queue_status(depth: QueueDepth) -> QueueStatusResponse:
    return QueueStatusResponse(
        waiting=depth.waiting,
        active=depth.active,
        completed=depth.completed,
        failed=depth.failed,
        total=depth.total,
    )


def create_app(service: Optional[ProcessingService] = None) -> FastAPI:
    """Build the inspection app.

    Without ``service`` one is built from the layered config on startup
    (``MEDIAPROC_CONFIG`` may name a YAML file).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.service is None
        if owned:
            config = resolve_config(config_path=os.getenv("MEDIAPROC_CONFIG"))
            app.state.service = ProcessingService.from_config(config)
        yield
        if owned:
            app.state.service.close()

    app = FastAPI(title="mediaproc", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def svc() -> ProcessingService:
        return app.state.service

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.get("/videos/{video_id}/jobs", response_model=List[ProcessingJob])
    async def list_video_jobs(video_id: str, status: Optional[JobStatus] = None):
        return await asyncio.to_thread(svc().list_jobs, video_id, status)

    @app.get("/jobs/{job_id}", response_model=ProcessingJob)
    async def get_job(job_id: str):
        try:
            return await asyncio.to_thread(svc().get_job, job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="Job not found")

    @app.get("/queue", response_model=QueueStatusResponse)
    async def queue_status():
        depth = await asyncio.to_thread(svc().get_queue_depth)
        return _queue_status(depth)

    @app.post("/jobs/{job_id}/cancel", response_model=ProcessingJob)
    async def cancel_job(job_id: str):
        try:
            return await asyncio.to_thread(svc().cancel_job, job_id)
        except JobNotFound:
            raise HTTPException(status_code=404, detail="Job not found")
        except InvalidTransition as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    @app.post("/videos/{video_id}/reconcile", response_model=ReconcileResponse)
    async def reconcile_video(video_id: str):
        def _run():
            outcome = svc().reconcile(video_id)
            video = svc().catalog.get_video(video_id)
            return outcome, video

        try:
            outcome, video = await asyncio.to_thread(_run)
        except VideoNotFound:
            raise HTTPException(status_code=404, detail="Video not found")

        return ReconcileResponse(
            videoId=video_id,
            decision=outcome.decision.value,
            reason=outcome.reason,
            statusChanged=outcome.status_changed,
            videoStatus=video.status.value,
        )

    return app
