"""Unit tests for the REE balance client."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
import requests

from ingest import client
from ingest.errors import BalanceError, ErrorKind


class DummyResponse:
    def __init__(self, payload=None, status_code=200, json_error=False):
        self.payload = payload
        self.status_code = status_code
        self.json_error = json_error

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def json(self):
        if self.json_error:
            raise ValueError("no json")
        return self.payload


def test_format_api_date_uses_madrid_wall_clock():
    """UTC bounds are rendered in the grid's local time (CET in winter, CEST in summer)."""

    winter = datetime(2024, 1, 1, 23, 0, tzinfo=timezone.utc)
    summer = datetime(2024, 7, 1, 22, 30, tzinfo=timezone.utc)

    assert client.format_api_date(winter) == "2024-01-02T00:00"
    assert client.format_api_date(summer) == "2024-07-02T00:30"


def test_build_params_includes_extra():
    c = client.REEClient()

    params = c.build_params("2024-03-01", "2024-03-02", "hour", {"geo_limit": "peninsular"})

    assert params == {
        "start_date": "2024-03-01T01:00",
        "end_date": "2024-03-02T01:00",
        "time_trunc": "hour",
        "geo_limit": "peninsular",
    }


def test_fetch_range_success(monkeypatch):
    """`fetch_range` should call the balance endpoint with range parameters."""

    def fake_get(url, params, headers, timeout):
        assert url == "https://apidatos.ree.es/en/datos/balance/balance-electrico"
        assert params["time_trunc"] == "day"
        assert headers["User-Agent"] == client.USER_AGENT
        assert timeout == client.HTTP_TIMEOUT
        return DummyResponse({"data": {}, "included": []})

    monkeypatch.setattr(client.requests, "get", fake_get)

    result = client.REEClient().fetch_range("2024-03-01", "2024-03-02")

    assert result == {"data": {}, "included": []}


def test_url_honours_base_and_language():
    c = client.REEClient(base_url="http://localhost:9000/", lang="es")

    assert c.url == "http://localhost:9000/es/datos/balance/balance-electrico"


@pytest.mark.parametrize(
    "status, kind, transient",
    [
        (400, ErrorKind.REQUEST, False),
        (404, ErrorKind.REQUEST, False),
        (429, ErrorKind.REQUEST, True),
        (500, ErrorKind.RESPONSE, True),
        (503, ErrorKind.RESPONSE, True),
    ],
)
def test_http_errors_are_classified(monkeypatch, status, kind, transient):
    monkeypatch.setattr(
        client.requests, "get", lambda *a, **k: DummyResponse({}, status_code=status)
    )

    with pytest.raises(BalanceError) as exc:
        client.REEClient().fetch_range("2024-03-01", "2024-03-02")

    assert exc.value.kind is kind
    assert exc.value.status_code == status
    assert exc.value.transient is transient


def test_timeout_is_flagged(monkeypatch):
    def fake_get(*args, **kwargs):
        raise requests.Timeout("slow")

    monkeypatch.setattr(client.requests, "get", fake_get)

    with pytest.raises(BalanceError) as exc:
        client.REEClient().fetch_range("2024-03-01", "2024-03-02")

    assert exc.value.kind is ErrorKind.NETWORK_TIMEOUT
    assert exc.value.is_timeout is True
    assert exc.value.transient is True


def test_connection_error_is_network(monkeypatch):
    def fake_get(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(client.requests, "get", fake_get)

    with pytest.raises(BalanceError) as exc:
        client.REEClient().fetch_range("2024-03-01", "2024-03-02")

    assert exc.value.kind is ErrorKind.NETWORK
    assert isinstance(exc.value.cause, requests.ConnectionError)


@pytest.mark.parametrize("response", [DummyResponse(json_error=True), DummyResponse({})])
def test_unusable_body_is_response_error(monkeypatch, response):
    monkeypatch.setattr(client.requests, "get", lambda *a, **k: response)

    with pytest.raises(BalanceError) as exc:
        client.REEClient().fetch_range("2024-03-01", "2024-03-02")

    assert exc.value.kind is ErrorKind.RESPONSE


def test_invalid_bound_raises_before_request(monkeypatch):
    def fake_get(*args, **kwargs):  # pragma: no cover - must not be reached
        raise AssertionError("should not be called")

    monkeypatch.setattr(client.requests, "get", fake_get)

    with pytest.raises(BalanceError) as exc:
        client.REEClient().fetch_range("yesterday", "2024-03-02")

    assert exc.value.kind is ErrorKind.INVALID_RANGE
