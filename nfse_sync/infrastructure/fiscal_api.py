"""Client for the municipal NFS-e consultation API."""
from __future__ import annotations

import base64
import binascii
import logging
import time
from datetime import date
from typing import Any, Callable, Protocol
from urllib.parse import urlparse

import httpx

from nfse_sync.domain import FetchedDocument, TenantCredential
from nfse_sync.domain.errors import ExternalFetchError

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class DocumentFetcher(Protocol):
    """Fetches every document a tenant issued or received in a period."""

    def fetch_documents(self, credential: TenantCredential, period: str) -> list[FetchedDocument]: ...


class HttpDocumentFetcher:
    """Paginated HTTP client for ``GET {endpoint}/nfse``.

    Each page holds up to 100 documents; a short page ends the walk, as does
    reaching ``max_pages``. The response body is expected to look like::

        {"documents": [{"number": "123", "emission_date": "2025-08-01",
                        "content_type": "application/xml", "content": "<base64>"}]}
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: float = 30.0,
        max_pages: int = 10,
        page_delay: float = 0.0,
        http_client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if base_url is not None:
            self._validate_url(base_url)
        self._base_url = base_url
        self._max_pages = max(1, max_pages)
        self._page_delay = max(0.0, page_delay)
        self._sleep = sleep
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _validate_url(url: str) -> None:
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("base_url must include scheme and host")

    def _endpoint(self, credential: TenantCredential) -> str:
        base = credential.api_endpoint or self._base_url
        if not base:
            raise ExternalFetchError(f"no API endpoint configured for tenant {credential.tenant_id}")
        return f"{base.rstrip('/')}/nfse"

    @staticmethod
    def _parse_date(value: Any) -> date | None:
        if not value:
            return None
        try:
            return date.fromisoformat(str(value)[:10])
        except ValueError:
            logger.warning("ignoring malformed emission date %r", value)
            return None

    def _parse_document(self, entry: dict[str, Any]) -> FetchedDocument:
        number = str(entry.get("number") or "").strip()
        if not number:
            raise ExternalFetchError("document without number in API response")
        try:
            content = base64.b64decode(entry.get("content") or "", validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ExternalFetchError(f"document {number} carries invalid base64 content") from exc
        return FetchedDocument(
            number=number,
            emission_date=self._parse_date(entry.get("emission_date")),
            content=content,
            content_type=str(entry.get("content_type") or "application/xml"),
        )

    def _request_page(self, url: str, credential: TenantCredential, period: str, page: int) -> list[dict[str, Any]]:
        try:
            response = self._client.get(
                url,
                params={"competencia": period, "page": page, "per_page": PAGE_SIZE},
                headers={
                    "Authorization": f"Bearer {credential.api_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as exc:
            raise ExternalFetchError(f"request to {url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise ExternalFetchError(
                f"fiscal API answered {response.status_code} for {period} page {page}: {response.text[:200]}"
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalFetchError(f"fiscal API returned invalid JSON for {period} page {page}") from exc

        documents = body.get("documents") if isinstance(body, dict) else None
        if not isinstance(documents, list):
            raise ExternalFetchError(f"fiscal API response for {period} page {page} has no documents list")
        return documents

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    def fetch_documents(self, credential: TenantCredential, period: str) -> list[FetchedDocument]:
        url = self._endpoint(credential)
        fetched: list[FetchedDocument] = []
        for page in range(1, self._max_pages + 1):
            if page > 1 and self._page_delay:
                self._sleep(self._page_delay)
            entries = self._request_page(url, credential, period, page)
            fetched.extend(self._parse_document(entry) for entry in entries)
            if len(entries) < PAGE_SIZE:
                break
        else:
            logger.warning(
                "stopped fetching %s for tenant %s after %d pages", period, credential.tenant_id, self._max_pages
            )
        logger.debug("fetched %d documents for tenant %s in %s", len(fetched), credential.tenant_id, period)
        return fetched

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpDocumentFetcher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
