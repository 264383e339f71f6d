import os
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import urlsplit

from dotenv import load_dotenv


load_dotenv()

DEFAULT_API_BASE_URL = "https://api.fabublox.com/api"
DEFAULT_USER_AGENT = "ProcessProxy/1.0"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class ProxyConfig:
    """Configuration for talking to the remote process API.

    Built explicitly and passed to the services that need it, so several
    independently configured proxies can live in one process.
    """

    api_base_url: str = DEFAULT_API_BASE_URL
    connect_timeout: float = 15.0
    read_timeout: float = 30.0
    preview_connect_timeout: float = 10.0
    preview_read_timeout: float = 20.0
    max_retries: int = 2
    backoff_seconds: float = 1.0
    user_agent: str = DEFAULT_USER_AGENT
    cors_allowed_origins: str = "http://localhost:3000"

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        return cls(
            api_base_url=os.getenv("PROCESS_API_BASE_URL", DEFAULT_API_BASE_URL),
            connect_timeout=_env_float("PROCESS_API_CONNECT_TIMEOUT", 15.0),
            read_timeout=_env_float("PROCESS_API_READ_TIMEOUT", 30.0),
            preview_connect_timeout=_env_float("PROCESS_PREVIEW_CONNECT_TIMEOUT", 10.0),
            preview_read_timeout=_env_float("PROCESS_PREVIEW_READ_TIMEOUT", 20.0),
            max_retries=_env_int("PROCESS_API_MAX_RETRIES", 2),
            backoff_seconds=_env_float("PROCESS_API_BACKOFF_SECONDS", 1.0),
            user_agent=os.getenv("PROCESS_API_USER_AGENT", DEFAULT_USER_AGENT),
            cors_allowed_origins=os.getenv("CORS_ALLOWED_ORIGINS", "http://localhost:3000"),
        )

    @property
    def base_url(self) -> str:
        return self.api_base_url.rstrip("/")

    def endpoint_url(self, path: str) -> str:
        """Join a relative upstream path onto the configured base URL."""
        return f"{self.base_url}/{path.lstrip('/')}"

    def allowed_origins(self, extra_origins: Optional[List[str]] = None) -> List[str]:
        merged = [o.strip() for o in self.cors_allowed_origins.split(",") if o.strip()]
        if extra_origins:
            merged.extend(extra_origins)
        # Deduplicate while preserving order
        seen = set()
        result: List[str] = []
        for origin in merged:
            if origin not in seen:
                seen.add(origin)
                result.append(origin)
        return result

    def validate(self) -> None:
        parsed = urlsplit(self.api_base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError("PROCESS_API_BASE_URL must be an absolute http(s) URL")
        if self.max_retries < 0:
            raise ValueError("PROCESS_API_MAX_RETRIES must not be negative")
        if self.backoff_seconds < 0:
            raise ValueError("PROCESS_API_BACKOFF_SECONDS must not be negative")
        for name in ("connect_timeout", "read_timeout", "preview_connect_timeout", "preview_read_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
