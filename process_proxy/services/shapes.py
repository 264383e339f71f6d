import json
import logging
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)

# Wrapper keys the upstream has been seen to use, in priority order.
WRAPPER_KEYS = ("processes", "data", "items")


def _decode(body: Any, log: logging.Logger) -> Any:
    if isinstance(body, (bytes, bytearray)):
        try:
            body = body.decode("utf-8")
        except UnicodeDecodeError as e:
            log.error(f"Response body is not valid UTF-8: {e}")
            return None
    if isinstance(body, str):
        try:
            return json.loads(body)
        except ValueError as e:
            log.error(f"JSON parsing error: {e}. Response that failed to parse: {body[:500]}")
            return None
    return body


def resolve_items(body: Any, log: Optional[logging.Logger] = None) -> List[Dict[str, Any]]:
    """Map any successful upstream payload onto a list of JSON objects.

    Accepts raw text/bytes or an already decoded JSON value. Unrecognized
    shapes resolve to an empty list; this never raises.
    """
    log = log or logger
    result = _decode(body, log)

    items: Optional[List[Any]] = None
    if isinstance(result, list):
        log.info(f"Response is an array with {len(result)} processes")
        items = result
    elif isinstance(result, dict):
        for key in WRAPPER_KEYS:
            if isinstance(result.get(key), list):
                log.info(f"Found {key} array inside result object with {len(result[key])} processes")
                items = result[key]
                break
        else:
            log.warning(f"Response is an object but doesn't contain expected process arrays. Keys: {', '.join(map(str, result.keys()))}")
    elif result is not None:
        log.warning(f"Unexpected response type: {type(result).__name__}")

    if items is None:
        return []

    objects = [item for item in items if isinstance(item, dict)]
    if len(objects) != len(items):
        log.warning(f"Dropped {len(items) - len(objects)} non-object entries from process list")
    return objects
