import pytest

from process_proxy.services.shapes import resolve_items


def test_top_level_array_is_used_directly():
    assert resolve_items([]) == []
    assert resolve_items([{"id": "a"}, {"id": "b"}]) == [{"id": "a"}, {"id": "b"}]


@pytest.mark.parametrize("key", ["processes", "data", "items"])
def test_known_wrapper_keys(key):
    assert resolve_items({key: [{"id": "a"}]}) == [{"id": "a"}]


def test_wrapper_priority_order():
    body = {"items": [{"id": "i"}], "data": [{"id": "d"}], "processes": [{"id": "p"}]}
    assert resolve_items(body) == [{"id": "p"}]
    assert resolve_items({"items": [{"id": "i"}], "data": [{"id": "d"}]}) == [{"id": "d"}]


def test_non_array_wrapper_values_are_skipped():
    assert resolve_items({"processes": {"id": "p"}, "items": [{"id": "i"}]}) == [{"id": "i"}]


@pytest.mark.parametrize("body", [{"unexpected": 1}, 42, None, True, "not json", b"not json", "", b"{\"data\": [", b"\xff\xfe"])
def test_unrecognized_shapes_resolve_to_empty(body):
    assert resolve_items(body) == []


def test_raw_json_text_is_parsed():
    assert resolve_items(b'{"processes": [{"id": "p1", "displayName": "Widget"}]}') == [{"id": "p1", "displayName": "Widget"}]
    assert resolve_items('[{"id": "a"}]') == [{"id": "a"}]


def test_non_object_entries_are_dropped():
    assert resolve_items([{"id": "a"}, "b", 3, None]) == [{"id": "a"}]


def test_anomalies_are_logged(caplog):
    with caplog.at_level("WARNING", logger="process_proxy.services.shapes"):
        resolve_items({"unexpected": 1})
    assert "doesn't contain expected process arrays" in caplog.text
