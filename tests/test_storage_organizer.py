from __future__ import annotations

import json
import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from nfse_sync.application import StorageOrganizer, parse_document_key
from nfse_sync.domain import DocumentKind, StoreResult
from nfse_sync.domain.errors import DocumentNotFound, InvalidPayload, NotFound
from nfse_sync.infrastructure import InMemoryObjectStore, LocalObjectStore

CNPJ = "12345678000190"
EMITTED = date(2025, 8, 3)


@pytest.fixture(params=["memory", "local"])
def objects(request, tmp_path):
    if request.param == "memory":
        return InMemoryObjectStore()
    return LocalObjectStore(tmp_path / "storage")


@pytest.fixture()
def organizer(objects, clock):
    return StorageOrganizer(objects, clock=clock)


def test_build_path_is_deterministic(organizer):
    key = organizer.build_path(CNPJ, "2025-08", "42", EMITTED, DocumentKind.XML)

    assert key == f"{CNPJ}/2025/08/{CNPJ}/xml/nfse_42_20250803.xml"
    assert organizer.build_path(CNPJ, "2025-08", "42", EMITTED, "xml") == key
    assert organizer.build_path(CNPJ, "2025-08", "42", EMITTED, DocumentKind.ZIP).endswith("/zip/nfse_42_20250803.zip")
    assert organizer.build_path(CNPJ, "2025-08", "42", EMITTED, version=3).endswith("nfse_42_20250803_v3.xml")


def test_report_path_is_keyed_by_batch(organizer):
    assert organizer.build_report_path(CNPJ, "batch_001") == f"{CNPJ}/reports/processing_report_batch_001.txt"
    assert organizer.build_report_path(CNPJ, "202508", "xlsx").endswith("processing_report_202508.xlsx")
    with pytest.raises(InvalidPayload):
        organizer.build_report_path(CNPJ, "202508", "pdf")


@pytest.mark.parametrize("number", ["", "12/34", "..", "a b", "42_1"])
def test_rejects_unsafe_document_numbers(organizer, number):
    with pytest.raises(InvalidPayload):
        organizer.build_path(CNPJ, "2025-08", number, EMITTED)


def test_rejects_malformed_period(organizer):
    with pytest.raises(InvalidPayload):
        organizer.build_path(CNPJ, "2025-8", "42", EMITTED)


def test_store_then_fetch_round_trip(organizer, objects):
    result = organizer.store(CNPJ, "2025-08", "42", b"<Nfse>42</Nfse>", DocumentKind.XML, EMITTED)

    assert result.status == StoreResult.CREATED
    assert result.key == f"{CNPJ}/2025/08/{CNPJ}/xml/nfse_42_20250803.xml"
    assert organizer.fetch(CNPJ, "2025-08", "42") == b"<Nfse>42</Nfse>"
    [stored] = objects.list(f"{CNPJ}/")
    assert stored.content_type == "application/xml"
    assert stored.size == len(b"<Nfse>42</Nfse>")


def test_zip_documents_use_zip_content_type(organizer, objects):
    result = organizer.store(CNPJ, "2025-08", "42", b"PK\x03\x04", DocumentKind.ZIP, EMITTED)

    [stored] = objects.list(result.key)
    assert stored.content_type == "application/zip"
    assert organizer.fetch(CNPJ, "2025-08", "42", DocumentKind.ZIP) == b"PK\x03\x04"
    with pytest.raises(DocumentNotFound):
        organizer.fetch(CNPJ, "2025-08", "42", DocumentKind.XML)


def test_emission_date_defaults_to_today(organizer, clock):
    result = organizer.store(CNPJ, "2025-08", "7", b"<Nfse/>")
    assert result.key.endswith(f"nfse_7_{clock.now:%Y%m%d}.xml")


def test_fetch_matches_exact_number_token(organizer):
    organizer.store(CNPJ, "2025-08", "123", b"<Nfse>123</Nfse>", emission_date=EMITTED)

    with pytest.raises(NotFound):
        organizer.fetch(CNPJ, "2025-08", "12")
    with pytest.raises(NotFound):
        organizer.fetch(CNPJ, "2025-07", "123")
    assert organizer.fetch(CNPJ, "2025-08", "123") == b"<Nfse>123</Nfse>"


def test_identical_content_is_a_duplicate(organizer, objects):
    first = organizer.store(CNPJ, "2025-08", "42", b"<Nfse>42</Nfse>", emission_date=EMITTED)
    second = organizer.store(CNPJ, "2025-08", "42", b"<Nfse>42</Nfse>", emission_date=date(2025, 8, 9))

    assert second.status == StoreResult.DUPLICATE
    assert second.key == first.key
    assert second.sha256 == first.sha256
    assert len(objects.list(f"{CNPJ}/")) == 1


def test_changed_content_is_stored_as_new_version_with_audit(organizer, objects):
    first = organizer.store(CNPJ, "2025-08", "42", b"<Nfse>v1</Nfse>", emission_date=EMITTED)
    second = organizer.store(CNPJ, "2025-08", "42", b"<Nfse>v2</Nfse>", emission_date=EMITTED)
    third = organizer.store(CNPJ, "2025-08", "42", b"<Nfse>v3</Nfse>", emission_date=EMITTED)

    assert second.status == StoreResult.VERSIONED
    assert second.key.endswith("nfse_42_20250803_v2.xml")
    assert second.superseded_key == first.key
    assert third.key.endswith("nfse_42_20250803_v3.xml")
    assert third.superseded_key == second.key

    assert objects.get(first.key) == b"<Nfse>v1</Nfse>"
    assert organizer.fetch(CNPJ, "2025-08", "42") == b"<Nfse>v3</Nfse>"
    assert organizer.current_key(CNPJ, "2025-08", "42") == third.key

    audit = json.loads(objects.get(f"{CNPJ}/2025/08/{CNPJ}/audit/nfse_42_v2.json"))
    assert audit["superseded_key"] == first.key
    assert audit["key"] == second.key
    assert audit["sha256"] == second.sha256

    again = organizer.store(CNPJ, "2025-08", "42", b"<Nfse>v3</Nfse>", emission_date=EMITTED)
    assert again.status == StoreResult.DUPLICATE


def test_listing_by_period(organizer):
    organizer.store(CNPJ, "2025-08", "1", b"<a/>", emission_date=EMITTED)
    organizer.store(CNPJ, "2025-08", "2", b"<b/>", emission_date=EMITTED)
    organizer.store(CNPJ, "2025-08", "2", b"<b2/>", emission_date=EMITTED)
    organizer.store(CNPJ, "2025-08", "3", b"PK", DocumentKind.ZIP, EMITTED)
    organizer.store(CNPJ, "2025-07", "9", b"<c/>", emission_date=date(2025, 7, 30))
    organizer.store_report(CNPJ, "202508", b"report")

    keys = [item.key for item in organizer.list(CNPJ, "2025-08")]
    assert all(key.startswith(f"{CNPJ}/2025/08/") for key in keys)
    assert len([key for key in keys if "/audit/" not in key]) == 4

    current = organizer.list_documents(CNPJ, "2025-08")
    assert [(entry.number, entry.kind, entry.version) for entry in current] == [
        ("1", DocumentKind.XML, 1),
        ("2", DocumentKind.XML, 2),
        ("3", DocumentKind.ZIP, 1),
    ]
    assert len(organizer.list_documents(CNPJ, "2025-08", DocumentKind.XML, current_only=False)) == 3
    assert organizer.existing_numbers(CNPJ, "2025-08", DocumentKind.XML) == {"1", "2"}


def test_reports_round_trip(organizer, objects):
    stored = organizer.store_report(CNPJ, "batch_001", b"ok\n", "txt")

    assert stored.key == f"{CNPJ}/reports/processing_report_batch_001.txt"
    assert stored.content_type == "text/plain"
    assert organizer.fetch_report(CNPJ, "batch_001") == b"ok\n"
    assert objects.exists(stored.key)
    with pytest.raises(DocumentNotFound):
        organizer.fetch_report(CNPJ, "batch_002")


def test_delete_removes_every_version(organizer):
    organizer.store(CNPJ, "2025-08", "42", b"<v1/>", emission_date=EMITTED)
    organizer.store(CNPJ, "2025-08", "42", b"<v2/>", emission_date=EMITTED)

    assert organizer.delete(CNPJ, "2025-08", "42") == 2
    with pytest.raises(DocumentNotFound):
        organizer.fetch(CNPJ, "2025-08", "42")


def test_parse_document_key():
    parsed = parse_document_key(f"{CNPJ}/2025/08/{CNPJ}/xml/nfse_42_20250803_v2.xml")
    assert parsed is not None
    assert parsed.number == "42"
    assert parsed.emission_date == EMITTED
    assert parsed.version == 2
    assert parse_document_key(f"{CNPJ}/reports/processing_report_1.txt") is None
    assert parse_document_key(f"{CNPJ}/2025/08/{CNPJ}/zip/nfse_42_20250803.xml") is None


def test_local_store_writes_atomically(tmp_path):
    objects = LocalObjectStore(tmp_path)
    objects.put("a/b/c.xml", b"one")
    objects.put("a/b/c.xml", b"two")

    assert objects.get("a/b/c.xml") == b"two"
    assert sorted(path.name for path in (tmp_path / "a" / "b").iterdir()) == ["c.xml"]
    assert [item.key for item in objects.list("a/b/c")] == ["a/b/c.xml"]
    assert objects.list("missing/") == []
    with pytest.raises(ValueError):
        objects.put("../escape.xml", b"x")
