"""Client-side list/preview cache and selection state machine.

Runs on a single asyncio event loop. The owned-list fetch is one suspension
point; previews are fetched by independent tasks that write into the cache as
they finish, in whatever order that happens.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Union

from ..core.models import ErrorKind, FetchFailed, FetchOk, PreviewImage, ProcessDetail, ProcessSummary
from ..core.validation import extract_process_id
from ..services.credentials import CredentialSource


logger = logging.getLogger(__name__)

ERROR_MESSAGES = {
    ErrorKind.NO_CREDENTIAL: "You need to sign in again to load your processes.",
    ErrorKind.AUTH_EXPIRED: "Your session has expired. Please sign in again.",
    ErrorKind.UPSTREAM: "The process service is unavailable right now. Please try again later.",
    ErrorKind.NOT_FOUND: "The selected process could not be found.",
    ErrorKind.MALFORMED_RESPONSE: "The process service returned an unexpected response.",
    ErrorKind.PREVIEW_UNAVAILABLE: "No preview available.",
}


class PreviewStatus(str, Enum):
    PENDING = "pending"
    UNAVAILABLE = "unavailable"


CacheEntry = Union[PreviewImage, PreviewStatus]


class ProcessSource(Protocol):
    async def fetch_owned(self, raw_credential: Optional[str]) -> Any: ...

    async def fetch_detail(self, raw_credential: Optional[str], process_id: str) -> Any: ...

    async def fetch_preview(self, process_id: str, raw_credential: Optional[str] = None) -> Any: ...


@dataclass
class UiState:
    loading: bool = False
    items: List[ProcessSummary] = field(default_factory=list)
    preview_cache: Dict[str, CacheEntry] = field(default_factory=dict)
    selected: Optional[ProcessSummary] = None
    selected_preview: Optional[PreviewImage] = None
    dropdown_open: bool = False
    last_error: Optional[str] = None
    loaded: bool = False


def describe_failure(failure: FetchFailed) -> str:
    return ERROR_MESSAGES.get(failure.kind, "Something went wrong while loading processes.")


SelectionSink = Callable[[str], Union[None, Awaitable[None]]]


class ClientCacheController:
    """Own the on-screen process list, the preview cache and the selection.

    ``selection_sink`` receives the selected id whenever the user picks an
    item; it may be a plain function or a coroutine function. ``selected_id``
    restores a prior selection (a bare id or a URL ending in one) on the first
    ``start()`` instead of loading the whole owned list; later calls load the
    list as usual.
    """

    def __init__(
        self,
        source: ProcessSource,
        credential_source: CredentialSource,
        *,
        selection_sink: Optional[SelectionSink] = None,
        selected_id: Optional[str] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.source = source
        self.credential_source = credential_source
        self.selection_sink = selection_sink
        self.initial_selected_id = extract_process_id(selected_id) if selected_id else ""
        self.state = UiState()
        self._log = log or logger
        self._tasks: Set[asyncio.Task] = set()
        self._torn_down = False
        self._restored = False
        self._credential: Optional[str] = None

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    @property
    def is_empty(self) -> bool:
        """True only when a fetch succeeded and returned nothing."""
        return self.state.loaded and not self.state.items and self.state.last_error is None

    async def _raw_credential(self) -> Optional[str]:
        try:
            return await self.credential_source()
        except Exception as e:
            self._log.warning(f"Credential source failed, treating as no credential: {type(e).__name__} - {e}")
            return None

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def start(self) -> None:
        if self._torn_down:
            return
        if self.initial_selected_id and not self._restored:
            self._restored = True
            await self._restore_selection(self.initial_selected_id)
            return
        await self.load_owned()

    async def load_owned(self) -> None:
        if self._torn_down:
            return
        self.state.loading = True
        self.state.last_error = None
        self._credential = await self._raw_credential()
        if self._torn_down:
            return
        try:
            result = await self.source.fetch_owned(self._credential)
        except Exception as e:
            self._log.error(f"Error fetching owned processes: {type(e).__name__} - {e}", exc_info=True)
            result = FetchFailed(ErrorKind.UPSTREAM, str(e))
        if self._torn_down:
            self._log.debug("Discarding owned-process result that arrived after teardown")
            return

        self.state.loading = False
        if isinstance(result, FetchOk):
            self.state.items = list(result.value)
            self.state.loaded = True
            if not self.state.items:
                self._log.info("Server returned an empty list of processes")
            self._load_previews(self.state.items)
        else:
            self.state.last_error = describe_failure(result)
            self._log.warning(f"Failed to load processes: {result.kind.value} - {result.message}")

    async def _restore_selection(self, process_id: str) -> None:
        self.state.loading = True
        self.state.last_error = None
        self._credential = await self._raw_credential()
        if self._torn_down:
            return
        self.state.preview_cache[process_id] = PreviewStatus.PENDING
        self._track(self._fetch_preview(process_id))
        try:
            detail_result = await self.source.fetch_detail(self._credential, process_id)
        except Exception as e:
            self._log.error(f"Error restoring selection {process_id}: {type(e).__name__} - {e}", exc_info=True)
            detail_result = FetchFailed(ErrorKind.UPSTREAM, str(e))
        if self._torn_down:
            self._log.debug(f"Discarding restored selection {process_id} that arrived after teardown")
            return

        self.state.loading = False
        if isinstance(detail_result, FetchOk):
            detail: ProcessDetail = detail_result.value
            self.state.selected = detail.summary()
            self.state.selected_preview = self.cached_preview(detail.id)
        else:
            self.state.last_error = describe_failure(detail_result)
            self._log.warning(f"Failed to restore selection {process_id}: {detail_result.kind.value} - {detail_result.message}")

    def _load_previews(self, items: List[ProcessSummary]) -> None:
        for item in items:
            if item.id in self.state.preview_cache and self.state.preview_cache[item.id] is not PreviewStatus.UNAVAILABLE:
                continue
            self.state.preview_cache[item.id] = PreviewStatus.PENDING
            self._track(self._fetch_preview(item.id))

    async def _fetch_preview(self, process_id: str) -> None:
        try:
            result = await self.source.fetch_preview(process_id, self._credential)
        except Exception as e:
            self._log.error(f"Error fetching preview for process {process_id}: {type(e).__name__} - {e}")
            result = FetchFailed(ErrorKind.PREVIEW_UNAVAILABLE, str(e))
        if self._torn_down:
            self._log.debug(f"Discarding preview for {process_id} that arrived after teardown")
            return
        self._store_preview(process_id, result)

    def _store_preview(self, process_id: str, result: Any) -> None:
        if isinstance(result, PreviewImage):
            self.state.preview_cache[process_id] = result
        else:
            self.state.preview_cache[process_id] = PreviewStatus.UNAVAILABLE
            self._log.info(f"No preview available for process {process_id}")
        if self.state.selected is not None and self.state.selected.id == process_id:
            self.state.selected_preview = self.cached_preview(process_id)

    def cached_preview(self, process_id: str) -> Optional[PreviewImage]:
        entry = self.state.preview_cache.get(process_id)
        return entry if isinstance(entry, PreviewImage) else None

    def toggle_dropdown(self) -> None:
        self.state.dropdown_open = not self.state.dropdown_open

    def select(self, item: ProcessSummary) -> None:
        self.state.selected = item
        self.state.selected_preview = self.cached_preview(item.id)
        self.state.dropdown_open = False
        if self.selection_sink is None:
            return
        try:
            pending = self.selection_sink(item.id)
        except Exception as e:
            self._log.error(f"Failed to persist selection {item.id}: {e}", exc_info=True)
            return
        if inspect.isawaitable(pending):
            self._track(self._persist_selection(item.id, pending))

    async def _persist_selection(self, process_id: str, pending: Awaitable[None]) -> None:
        try:
            await pending
        except Exception as e:
            self._log.error(f"Failed to persist selection {process_id}: {e}", exc_info=True)

    async def wait_for_previews(self) -> None:
        while self._tasks:
            pending = list(self._tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.difference_update(pending)

    def teardown(self) -> None:
        self._torn_down = True
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
