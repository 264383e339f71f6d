import json
import logging
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

JWT_PREFIX = "eyJ"


def normalize_token(raw: Optional[str], log: Optional[logging.Logger] = None) -> Optional[str]:
    """Extract a bare bearer token from a raw stored value.

    The value may be a plain token, a JSON object holding ``access_token``,
    or anything else that merely looks like JSON. Only a successfully parsed
    object with a non-empty ``access_token`` is unwrapped; every other input
    comes back unchanged. Double-encoded values are unwrapped until the
    result is stable, so normalizing twice gives the same answer.
    """
    log = log or logger
    if raw is None or not raw.strip():
        return None

    token = raw
    while token.startswith("{") and '"access_token"' in token:
        try:
            parsed = json.loads(token)
        except ValueError as e:
            log.warning(f"Failed to parse token as JSON, will use as-is: {e}")
            break
        extracted = parsed.get("access_token") if isinstance(parsed, dict) else None
        if not isinstance(extracted, str) or not extracted.strip():
            log.warning("Token appears to be JSON but does not contain a usable access_token field")
            break
        log.debug("Found token in JSON format, extracting access_token value")
        token = extracted

    return token


def token_preview(token: Optional[str], edge: int = 10) -> str:
    if not token:
        return "nil"
    if len(token) <= edge * 2:
        return "*" * len(token)
    return f"{token[:edge]}...{token[-edge:]}"


def looks_like_jwt(token: Optional[str]) -> bool:
    return bool(token) and token.startswith(JWT_PREFIX)


def describe_token(raw: Optional[str]) -> Dict[str, Any]:
    """Build a diagnostic report on how a stored token is encoded."""
    info: Dict[str, Any] = {
        "raw_token_present": bool(raw),
        "raw_token_type": type(raw).__name__,
        "raw_token_length": len(raw) if raw else 0,
        "raw_token_preview": token_preview(raw, edge=20) if raw else None,
        "appears_to_be_json": bool(raw) and raw.startswith("{") and raw.endswith("}"),
        "appears_to_have_access_token": bool(raw) and "access_token" in raw,
    }

    parsed_keys = None
    if raw and raw.startswith("{"):
        try:
            parsed = json.loads(raw)
        except ValueError as e:
            info["parsed_successfully"] = False
            info["parse_error"] = str(e)
        else:
            if isinstance(parsed, dict):
                parsed_keys = list(parsed.keys())
                info["parsed_successfully"] = True
                info["parsed_token_keys"] = parsed_keys
                extracted = parsed.get("access_token")
                if isinstance(extracted, str) and extracted:
                    info["extracted_token_preview"] = token_preview(extracted, edge=20)
                    info["extracted_token_length"] = len(extracted)
            else:
                info["parsed_successfully"] = False
                info["parse_error"] = f"Parsed JSON is a {type(parsed).__name__}, not an object"
    else:
        info["parsed_successfully"] = False
        info["parse_error"] = "Token doesn't appear to be JSON"

    if parsed_keys is not None and "access_token" in parsed_keys:
        info["diagnosis"] = "The token is stored as a JSON object; the bearer value is its 'access_token' field."
    elif looks_like_jwt(raw):
        info["diagnosis"] = "The token is stored as a bare JWT."
    else:
        info["diagnosis"] = "The token format is unclear: neither a bare JWT nor a JSON object with access_token."

    return info
