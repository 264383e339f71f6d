import logging
import re
from urllib.parse import urlparse

from fastapi import HTTPException


logger = logging.getLogger(__name__)

PROCESS_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


def is_valid_process_id(process_id: str) -> bool:
    return bool(process_id) and bool(PROCESS_ID_PATTERN.match(process_id))


def validate_process_id(process_id: str) -> None:
    if not process_id:
        raise HTTPException(status_code=400, detail="Process ID is required")
    if not is_valid_process_id(process_id):
        logger.warning(f"Input validation failed: Invalid process_id format: {process_id}")
        raise HTTPException(status_code=400, detail="Invalid process_id format")


def normalize_endpoint(endpoint: str) -> str:
    """Return a relative upstream path, rejecting absolute URLs and traversal.

    Raises ValueError for anything that could leave the configured API base.
    """
    if not endpoint or not endpoint.strip():
        raise ValueError("Endpoint is required")
    candidate = endpoint.strip()
    if not candidate.isprintable() or not candidate.isascii():
        raise ValueError("Endpoint must contain only printable ASCII characters")
    parsed = urlparse(candidate)
    if parsed.scheme or parsed.netloc or candidate.startswith("//"):
        raise ValueError("Endpoint must be a path relative to the API base URL")
    if '..' in candidate.split('?', 1)[0].split('/') or '\\' in candidate:
        raise ValueError("Endpoint must not contain path traversal")
    return candidate.lstrip('/')


def extract_process_id(value: str) -> str:
    """Return the bare process id from either an id or a URL ending in the id."""
    if not value:
        return ""
    candidate = value.strip()
    if '/' not in candidate:
        return candidate
    path = urlparse(candidate).path if '://' in candidate else candidate.split('?', 1)[0].split('#', 1)[0]
    segments = [seg for seg in path.split('/') if seg]
    return segments[-1] if segments else ""
