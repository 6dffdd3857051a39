"""Output fingerprinting for uploaded artifacts."""

import hashlib
import os


def compute_output_hash(file_path: str) -> str:
    """Compute SHA-256 hash of an encoded output before upload.

    Args:
        file_path: Path to the encoded file

    Returns:
        SHA-256 hex digest

    Used for:
        - OutputFile.checksum in job results
        - Detecting truncated uploads when compared with the stored copy

    Raises:
        FileNotFoundError: If output file doesn't exist
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Output file not found: {file_path}")

    hasher = hashlib.sha256()

    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(65536), b''):
            hasher.update(chunk)

    return hasher.hexdigest()
