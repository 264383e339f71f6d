import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar, Union


T = TypeVar("T")

ID_KEYS = ("id", "processId", "_id")
NAME_KEYS = ("displayName", "name", "processName")


class ErrorKind(str, Enum):
    NO_CREDENTIAL = "no_credential"
    AUTH_EXPIRED = "auth_expired"
    UPSTREAM = "upstream"
    NOT_FOUND = "not_found"
    MALFORMED_RESPONSE = "malformed_response"
    PREVIEW_UNAVAILABLE = "preview_unavailable"


@dataclass(frozen=True)
class FetchOk(Generic[T]):
    value: T


@dataclass(frozen=True)
class FetchFailed:
    kind: ErrorKind
    message: str = ""


FetchResult = Union[FetchOk[T], FetchFailed]


def _first_text(obj: Dict[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, (str, int)):
            text = str(value).strip()
            if text:
                return text
    return None


@dataclass(frozen=True)
class ProcessSummary:
    id: str
    display_name: str

    @classmethod
    def from_upstream(cls, obj: Dict[str, Any]) -> Optional["ProcessSummary"]:
        """Build a summary from an upstream process object, or None without an id."""
        process_id = _first_text(obj, ID_KEYS)
        if not process_id:
            return None
        return cls(id=process_id, display_name=_first_text(obj, NAME_KEYS) or process_id)

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "displayName": self.display_name}


@dataclass(frozen=True)
class ProcessDetail(ProcessSummary):
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_upstream(cls, obj: Dict[str, Any]) -> Optional["ProcessDetail"]:
        summary = ProcessSummary.from_upstream(obj)
        if summary is None:
            return None
        return cls(id=summary.id, display_name=summary.display_name, attributes=dict(obj))

    def summary(self) -> ProcessSummary:
        return ProcessSummary(id=self.id, display_name=self.display_name)

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.attributes)
        payload.update(super().to_dict())
        return payload


@dataclass(frozen=True)
class PreviewImage:
    process_id: str
    content: bytes
    content_type: str = "image/svg+xml"

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    def as_json(self) -> Optional[Any]:
        """Return the decoded payload when the upstream sent JSON instead of markup."""
        try:
            return json.loads(self.content)
        except (ValueError, UnicodeDecodeError):
            return None

    @property
    def is_json(self) -> bool:
        return self.as_json() is not None
