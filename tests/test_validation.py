import pytest
from fastapi import HTTPException

from process_proxy.core.validation import extract_process_id, normalize_endpoint, validate_process_id


@pytest.mark.parametrize(
    "value, expected",
    [
        ("p1", "p1"),
        (" p1 ", "p1"),
        ("https://app.example.com/process/p1", "p1"),
        ("https://app.example.com/process/p1/?tab=steps", "p1"),
        ("/process/p1#preview", "p1"),
        ("", ""),
        ("https://app.example.com/", ""),
    ],
)
def test_extract_process_id(value, expected):
    assert extract_process_id(value) == expected


def test_validate_process_id():
    validate_process_id("abc_DEF-123")
    with pytest.raises(HTTPException) as exc:
        validate_process_id("a/b")
    assert exc.value.status_code == 400
    with pytest.raises(HTTPException):
        validate_process_id("")


@pytest.mark.parametrize("endpoint, expected", [("/users/me", "users/me"), ("processes?limit=5", "processes?limit=5")])
def test_normalize_endpoint(endpoint, expected):
    assert normalize_endpoint(endpoint) == expected


@pytest.mark.parametrize("endpoint", ["", "  ", "http://evil.test", "//evil.test/a", "a/../b", "a\\b", "processes\x01x", "procésses"])
def test_normalize_endpoint_rejects(endpoint):
    with pytest.raises(ValueError):
        normalize_endpoint(endpoint)
