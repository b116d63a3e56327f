from __future__ import annotations

import base64
import sys
from datetime import date
from pathlib import Path

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from nfse_sync.domain import DocumentKind, TenantCredential
from nfse_sync.domain.errors import ExternalFetchError
from nfse_sync.infrastructure import HttpDocumentFetcher

CREDENTIAL = TenantCredential(tenant_id="acme", api_token="secret-token")


def _document(number: int, content_type: str = "application/xml") -> dict:
    payload = f"<Nfse><Numero>{number}</Numero></Nfse>".encode("utf-8")
    return {
        "number": str(number),
        "emission_date": "2025-08-03T10:15:00",
        "content_type": content_type,
        "content": base64.b64encode(payload).decode("ascii"),
    }


def _fetcher(handler, **kwargs) -> HttpDocumentFetcher:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    kwargs.setdefault("base_url", "https://nfse.example.gov.br/api")
    return HttpDocumentFetcher(http_client=client, **kwargs)


def test_fetch_walks_pages_until_short_page():
    requests: list[httpx.Request] = []
    pages = {
        "1": [_document(n) for n in range(1, 101)],
        "2": [_document(101), _document(102, "application/zip")],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"documents": pages[request.url.params["page"]]})

    sleeps: list[float] = []
    fetcher = _fetcher(handler, page_delay=0.5, sleep=sleeps.append)

    documents = fetcher.fetch_documents(CREDENTIAL, "2025-08")

    assert len(documents) == 102
    assert documents[0].number == "1"
    assert documents[0].emission_date == date(2025, 8, 3)
    assert documents[0].content == b"<Nfse><Numero>1</Numero></Nfse>"
    assert documents[-1].kind == DocumentKind.ZIP
    assert sleeps == [0.5]

    first = requests[0]
    assert first.url.path == "/api/nfse"
    assert first.url.params["competencia"] == "2025-08"
    assert first.url.params["per_page"] == "100"
    assert first.headers["Authorization"] == "Bearer secret-token"
    assert [request.url.params["page"] for request in requests] == ["1", "2"]


def test_fetch_stops_at_max_pages():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.params["page"])
        start = (int(request.url.params["page"]) - 1) * 100
        return httpx.Response(200, json={"documents": [_document(start + n) for n in range(100)]})

    documents = _fetcher(handler, max_pages=2).fetch_documents(CREDENTIAL, "2025-08")

    assert calls == ["1", "2"]
    assert len(documents) == 200


def test_credential_endpoint_overrides_base_url():
    hosts = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return httpx.Response(200, json={"documents": []})

    credential = TenantCredential(tenant_id="acme", api_token="t", api_endpoint="https://prefeitura.example.com/v2")
    assert _fetcher(handler).fetch_documents(credential, "2025-08") == []
    assert hosts == ["prefeitura.example.com"]


def test_missing_endpoint_is_a_fetch_error():
    fetcher = _fetcher(lambda request: httpx.Response(200, json={"documents": []}), base_url=None)
    with pytest.raises(ExternalFetchError):
        fetcher.fetch_documents(CREDENTIAL, "2025-08")


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="maintenance"),
        httpx.Response(401, json={"error": "invalid token"}),
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json={"items": []}),
        httpx.Response(200, json={"documents": [{"number": "1", "content": "***"}]}),
        httpx.Response(200, json={"documents": [{"content": ""}]}),
    ],
)
def test_bad_responses_raise_fetch_error(response):
    fetcher = _fetcher(lambda request: response)
    with pytest.raises(ExternalFetchError):
        fetcher.fetch_documents(CREDENTIAL, "2025-08")


def test_transport_errors_raise_fetch_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ExternalFetchError) as excinfo:
        _fetcher(handler).fetch_documents(CREDENTIAL, "2025-08")
    assert "connection refused" in str(excinfo.value)


def test_invalid_base_url_is_rejected():
    with pytest.raises(ValueError):
        HttpDocumentFetcher(base_url="not-a-url")
