"""Value objects for fetched and stored fiscal documents."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum


class DocumentKind(str, Enum):
    XML = "xml"
    ZIP = "zip"

    @property
    def content_type(self) -> str:
        return CONTENT_TYPES[self.value]

    @classmethod
    def from_content_type(cls, content_type: str | None) -> "DocumentKind":
        if content_type and "zip" in content_type.lower():
            return cls.ZIP
        return cls.XML


CONTENT_TYPES: dict[str, str] = {
    "xml": "application/xml",
    "zip": "application/zip",
    "txt": "text/plain",
    "csv": "text/csv",
    "json": "application/json",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def content_type_for(key: str) -> str:
    suffix = key.rsplit(".", 1)[-1].lower() if "." in key else ""
    return CONTENT_TYPES.get(suffix, DEFAULT_CONTENT_TYPE)


@dataclass(slots=True)
class FetchedDocument:
    """A document as returned by the fiscal document API."""

    number: str
    emission_date: date | None
    content: bytes
    content_type: str = "application/xml"

    @property
    def kind(self) -> DocumentKind:
        return DocumentKind.from_content_type(self.content_type)


@dataclass(slots=True)
class StoredObject:
    key: str
    size: int
    content_type: str


@dataclass(slots=True)
class StoredDocument:
    """A document key decoded back into its parts."""

    key: str
    number: str
    emission_date: date
    kind: DocumentKind
    version: int = 1


@dataclass(slots=True)
class StoreResult:
    """Outcome of a deduplicating write."""

    key: str
    status: str
    sha256: str
    superseded_key: str | None = None

    CREATED = "created"
    DUPLICATE = "duplicate"
    VERSIONED = "versioned"
