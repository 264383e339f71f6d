import asyncio

import pytest

from conftest import json_response
from process_proxy.client.controller import ClientCacheController, PreviewStatus
from process_proxy.core.models import ErrorKind, FetchFailed, FetchOk, PreviewImage, ProcessDetail, ProcessSummary
from process_proxy.services.credentials import StaticCredentialSource

WIDGET = ProcessSummary("p1", "Widget")
GADGET = ProcessSummary("p2", "Gadget")


class FakeSource:
    """Process source whose preview calls block until released by the test."""

    def __init__(self, owned=None, detail=None):
        self.owned = owned if owned is not None else FetchOk([WIDGET, GADGET])
        self.detail = detail
        self.owned_calls = []
        self.detail_calls = []
        self.preview_calls = []
        self.gates = {}

    def gate(self, process_id: str) -> asyncio.Event:
        return self.gates.setdefault(process_id, asyncio.Event())

    async def fetch_owned(self, raw_credential):
        self.owned_calls.append(raw_credential)
        return self.owned

    async def fetch_detail(self, raw_credential, process_id):
        self.detail_calls.append((raw_credential, process_id))
        return self.detail

    async def fetch_preview(self, process_id, raw_credential=None):
        self.preview_calls.append((process_id, raw_credential))
        await self.gate(process_id).wait()
        if process_id == "missing":
            return FetchFailed(ErrorKind.NOT_FOUND, "No preview available")
        return PreviewImage(process_id, f"<svg id='{process_id}'/>".encode())


def release_all(source: FakeSource, *ids: str) -> None:
    for process_id in ids:
        source.gate(process_id).set()


def make_controller(source, raw="token", **kwargs) -> ClientCacheController:
    return ClientCacheController(source, StaticCredentialSource(raw), **kwargs)


def test_initial_state():
    state = make_controller(FakeSource()).state
    assert state.loading is False
    assert state.items == []
    assert state.preview_cache == {}
    assert state.selected is None
    assert state.dropdown_open is False
    assert state.last_error is None


@pytest.mark.asyncio
async def test_start_populates_items_and_fans_out_previews():
    source = FakeSource()
    controller = make_controller(source)

    await controller.start()

    assert controller.state.loading is False
    assert controller.state.last_error is None
    assert controller.state.items == [WIDGET, GADGET]
    assert controller.state.preview_cache == {"p1": PreviewStatus.PENDING, "p2": PreviewStatus.PENDING}
    assert source.owned_calls == ["token"]

    release_all(source, "p1", "p2")
    await controller.wait_for_previews()
    assert controller.cached_preview("p1").process_id == "p1"
    assert controller.cached_preview("p2").process_id == "p2"


@pytest.mark.asyncio
async def test_previews_land_independently_in_any_order():
    source = FakeSource()
    controller = make_controller(source)
    await controller.start()

    release_all(source, "p2")
    for _ in range(5):
        await asyncio.sleep(0)

    assert isinstance(controller.state.preview_cache["p2"], PreviewImage)
    assert controller.state.preview_cache["p1"] is PreviewStatus.PENDING

    release_all(source, "p1")
    await controller.wait_for_previews()
    assert isinstance(controller.state.preview_cache["p1"], PreviewImage)


@pytest.mark.asyncio
async def test_failed_preview_becomes_unavailable_without_error():
    missing = ProcessSummary("missing", "Missing")
    source = FakeSource(owned=FetchOk([missing]))
    controller = make_controller(source)
    await controller.start()

    release_all(source, "missing")
    await controller.wait_for_previews()

    assert controller.state.preview_cache["missing"] is PreviewStatus.UNAVAILABLE
    assert controller.state.last_error is None
    assert controller.state.items == [missing]


@pytest.mark.asyncio
async def test_empty_list_is_not_an_error():
    controller = make_controller(FakeSource(owned=FetchOk([])))

    await controller.start()

    assert controller.state.items == []
    assert controller.state.last_error is None
    assert controller.is_empty is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kind, fragment",
    [
        (ErrorKind.NO_CREDENTIAL, "sign in"),
        (ErrorKind.AUTH_EXPIRED, "expired"),
        (ErrorKind.UPSTREAM, "unavailable"),
    ],
)
async def test_failures_set_readable_error(kind, fragment):
    controller = make_controller(FakeSource(owned=FetchFailed(kind, "detail")))

    await controller.start()

    assert controller.state.loading is False
    assert controller.state.items == []
    assert fragment in controller.state.last_error
    assert controller.is_empty is False


@pytest.mark.asyncio
async def test_failing_credential_source_counts_as_no_credential():
    async def broken_source():
        raise ConnectionError("refresh endpoint down")

    source = FakeSource()
    controller = ClientCacheController(source, broken_source)

    await controller.start()

    assert source.owned_calls == [None]
    controller.teardown()


@pytest.mark.asyncio
async def test_cached_previews_are_not_refetched():
    source = FakeSource()
    controller = make_controller(source)
    release_all(source, "p1", "p2")
    await controller.start()
    await controller.wait_for_previews()

    await controller.start()
    await controller.wait_for_previews()

    assert [call[0] for call in source.preview_calls] == ["p1", "p2"]


def test_toggle_dropdown_leaves_data_alone():
    controller = make_controller(FakeSource())
    controller.state.items = [WIDGET]

    controller.toggle_dropdown()
    assert controller.state.dropdown_open is True
    controller.toggle_dropdown()
    assert controller.state.dropdown_open is False
    assert controller.state.items == [WIDGET]
    assert controller.state.preview_cache == {}


@pytest.mark.asyncio
async def test_select_before_preview_loads():
    source = FakeSource()
    chosen = []
    controller = make_controller(source, selection_sink=chosen.append)
    await controller.start()
    controller.toggle_dropdown()

    controller.select(WIDGET)

    assert controller.state.selected == WIDGET
    assert controller.state.selected_preview is None
    assert controller.state.dropdown_open is False
    assert chosen == ["p1"]

    release_all(source, "p1", "p2")
    await controller.wait_for_previews()
    assert controller.state.selected_preview.process_id == "p1"


@pytest.mark.asyncio
async def test_select_uses_cached_preview():
    source = FakeSource()
    controller = make_controller(source)
    release_all(source, "p1", "p2")
    await controller.start()
    await controller.wait_for_previews()

    controller.select(GADGET)

    assert controller.state.selected_preview == controller.cached_preview("p2")


def test_select_survives_sink_failure():
    def sink(process_id):
        raise RuntimeError("store unavailable")

    controller = make_controller(FakeSource(), selection_sink=sink)
    controller.state.dropdown_open = True

    controller.select(WIDGET)

    assert controller.state.selected == WIDGET
    assert controller.state.dropdown_open is False


@pytest.mark.asyncio
async def test_completions_after_teardown_are_discarded():
    source = FakeSource()
    controller = make_controller(source)
    await controller.start()

    controller.teardown()
    release_all(source, "p1", "p2")
    await asyncio.sleep(0)
    await controller.wait_for_previews()

    assert controller.torn_down is True
    assert controller.state.preview_cache == {"p1": PreviewStatus.PENDING, "p2": PreviewStatus.PENDING}


@pytest.mark.asyncio
async def test_owned_result_after_teardown_is_discarded():
    owned_gate = asyncio.Event()

    class SlowSource(FakeSource):
        async def fetch_owned(self, raw_credential):
            await owned_gate.wait()
            return self.owned

    controller = make_controller(SlowSource())
    task = asyncio.create_task(controller.start())
    await asyncio.sleep(0)
    assert controller.state.loading is True

    controller.teardown()
    owned_gate.set()
    await task

    assert controller.state.items == []
    assert controller.state.preview_cache == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("selected_id", ["p1", "https://app.example.com/process/p1", "/process/p1/"])
async def test_restores_prior_selection_without_loading_list(selected_id):
    detail = ProcessDetail("p1", "Widget", {"id": "p1", "displayName": "Widget"})
    source = FakeSource(detail=FetchOk(detail))
    release_all(source, "p1")
    controller = make_controller(source, selected_id=selected_id)

    await controller.start()

    assert source.owned_calls == []
    assert source.detail_calls == [("token", "p1")]
    assert controller.state.items == []
    assert controller.state.selected == ProcessSummary("p1", "Widget")
    await controller.wait_for_previews()
    assert controller.state.selected_preview.process_id == "p1"
    assert controller.state.loading is False


@pytest.mark.asyncio
async def test_restore_failure_sets_error():
    source = FakeSource(detail=FetchFailed(ErrorKind.NOT_FOUND, "gone"))
    release_all(source, "p9")
    controller = make_controller(source, selected_id="p9")

    await controller.start()

    assert controller.state.selected is None
    assert controller.state.last_error == "The selected process could not be found."


@pytest.mark.asyncio
async def test_end_to_end_with_service(recorder, make_service):
    def handler(request):
        recorder.requests.append(request)
        if request.url.path.endswith("/owned"):
            return json_response({"processes": [{"id": "p1", "displayName": "Widget"}]})
        return json_response({"error": "no svg"}, status_code=404)

    service = make_service(handler)
    controller = make_controller(service, raw='{"access_token":"abc123"}')

    await controller.start()
    await controller.wait_for_previews()

    assert controller.state.loading is False
    assert controller.state.last_error is None
    assert len(controller.state.items) == 1
    assert controller.state.preview_cache["p1"] is PreviewStatus.UNAVAILABLE
    assert recorder.paths == ["/api/processes/owned", "/api/processes/p1/svg"]


@pytest.mark.asyncio
async def test_second_start_after_restore_loads_owned_list():
    detail = ProcessDetail("p1", "Widget", {"id": "p1"})
    source = FakeSource(detail=FetchOk(detail))
    release_all(source, "p1", "p2")
    controller = make_controller(source, selected_id="p1")

    await controller.start()
    assert source.owned_calls == []

    await controller.start()
    await controller.wait_for_previews()

    assert source.owned_calls == ["token"]
    assert controller.state.items == [WIDGET, GADGET]
    assert controller.state.selected == ProcessSummary("p1", "Widget")
    assert [call[0] for call in source.preview_calls] == ["p1", "p2"]


@pytest.mark.asyncio
async def test_load_owned_fills_items_for_restored_controller():
    source = FakeSource(detail=FetchOk(ProcessDetail("p1", "Widget", {})))
    controller = make_controller(source, selected_id="p1")
    await controller.start()

    await controller.load_owned()

    assert controller.state.items == [WIDGET, GADGET]
    assert controller.state.loaded is True
    controller.teardown()


@pytest.mark.asyncio
async def test_restored_selection_does_not_wait_for_preview():
    source = FakeSource(detail=FetchOk(ProcessDetail("p1", "Widget", {})))
    controller = make_controller(source, selected_id="p1")

    await controller.start()

    assert controller.state.loading is False
    assert controller.state.selected == ProcessSummary("p1", "Widget")
    assert controller.state.selected_preview is None
    assert controller.state.preview_cache["p1"] is PreviewStatus.PENDING

    release_all(source, "p1")
    await controller.wait_for_previews()
    assert controller.state.selected_preview.process_id == "p1"


@pytest.mark.asyncio
async def test_restore_survives_raising_detail_fetch():
    class BrokenDetailSource(FakeSource):
        async def fetch_detail(self, raw_credential, process_id):
            raise ConnectionError("connection reset")

    source = BrokenDetailSource()
    release_all(source, "p1")
    controller = make_controller(source, selected_id="p1")

    await controller.start()
    await controller.wait_for_previews()

    assert controller.state.loading is False
    assert controller.state.selected is None
    assert "unavailable" in controller.state.last_error


@pytest.mark.asyncio
async def test_raising_owned_fetch_clears_loading():
    class BrokenOwnedSource(FakeSource):
        async def fetch_owned(self, raw_credential):
            raise ConnectionError("connection reset")

    controller = make_controller(BrokenOwnedSource())

    await controller.start()

    assert controller.state.loading is False
    assert controller.state.items == []
    assert "unavailable" in controller.state.last_error


@pytest.mark.asyncio
async def test_async_selection_sink_is_awaited():
    chosen = []

    async def sink(process_id):
        await asyncio.sleep(0)
        chosen.append(process_id)

    controller = make_controller(FakeSource(), selection_sink=sink)

    controller.select(GADGET)
    await controller.wait_for_previews()

    assert chosen == ["p2"]
    assert controller.state.selected == GADGET


@pytest.mark.asyncio
async def test_failing_async_selection_sink_keeps_selection(caplog):
    async def sink(process_id):
        raise RuntimeError("store unavailable")

    controller = make_controller(FakeSource(), selection_sink=sink)

    with caplog.at_level("ERROR"):
        controller.select(WIDGET)
        await controller.wait_for_previews()

    assert controller.state.selected == WIDGET
    assert "Failed to persist selection p1" in caplog.text
