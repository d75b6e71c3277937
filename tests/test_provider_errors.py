"""Tests for HTTP error normalisation shared by every provider adapter."""

from unittest.mock import patch

import pytest
import requests

from gallery_storage.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
    TransientNetworkError,
    ValidationError,
)
from gallery_storage.providers.base import error_from_response, exchange_token, provider_request
from tests.fakes import http_response

REQUEST = "gallery_storage.providers.base.requests.request"


@pytest.mark.parametrize(
    ("status", "body", "expected"),
    [
        (429, "", RateLimitedError),
        (403, '{"error": {"errors": [{"reason": "userRateLimitExceeded"}]}}', RateLimitedError),
        (409, '{"error_summary": "too_many_write_operations/"}', RateLimitedError),
        (401, "", AuthenticationError),
        (403, '{"error": "insufficientPermissions"}', AuthenticationError),
        (404, "", NotFoundError),
        (409, '{"error_summary": "path/not_found/"}', NotFoundError),
        (409, '{"error_summary": "path/conflict/folder/"}', ConflictError),
        (408, "", TransientNetworkError),
        (500, "", TransientNetworkError),
        (503, "", TransientNetworkError),
        (400, '{"error": "badRequest"}', ValidationError),
    ],
)
def test_error_from_response_maps_status_and_body(status, body, expected) -> None:
    error = error_from_response(http_response(status, body), "google-drive")
    assert type(error) is expected
    assert error.provider == "google-drive"


def test_retry_after_header_is_parsed() -> None:
    error = error_from_response(http_response(429, headers={"Retry-After": "12"}), "dropbox")
    assert isinstance(error, RateLimitedError)
    assert error.retry_after == 12


def test_provider_request_sends_bearer_token_and_timeout() -> None:
    with patch(REQUEST, return_value=http_response(200, {"id": "x"})) as request:
        resp = provider_request("GET", "https://api.example/files", "tok", "google-drive")
    assert resp.json() == {"id": "x"}
    _, kwargs = request.call_args
    assert kwargs["headers"]["Authorization"] == "Bearer tok"
    assert kwargs["timeout"]


def test_provider_request_raises_normalised_error() -> None:
    with patch(REQUEST, return_value=http_response(404)):
        with pytest.raises(NotFoundError):
            provider_request("GET", "https://api.example/files/x", "tok", "google-drive")


def test_ok_statuses_are_returned_instead_of_raised() -> None:
    with patch(REQUEST, return_value=http_response(409, {"error": {}})):
        resp = provider_request("POST", "https://api.example", "tok", "dropbox", ok_statuses=(409,))
    assert resp.status_code == 409


@pytest.mark.parametrize("exc", [requests.exceptions.ConnectionError(), requests.exceptions.ReadTimeout()])
def test_transport_failures_become_transient_errors(exc) -> None:
    with patch(REQUEST, side_effect=exc):
        with pytest.raises(TransientNetworkError):
            provider_request("GET", "https://api.example", "tok", "dropbox")


def test_exchange_token_rejected_grant_is_authentication_error() -> None:
    with patch(REQUEST, return_value=http_response(400, {"error": "invalid_grant"})):
        with pytest.raises(AuthenticationError, match="invalid_grant"):
            exchange_token("https://oauth.example/token", {"grant_type": "refresh_token"}, "google-drive")


def test_exchange_token_returns_payload() -> None:
    payload = {"access_token": "new", "expires_in": 3599}
    with patch(REQUEST, return_value=http_response(200, payload)):
        assert exchange_token("https://oauth.example/token", {}, "google-drive") == payload
