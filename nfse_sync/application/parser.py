"""Extraction of key fields from ABRASF style NFS-e XML documents."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from lxml import etree

from nfse_sync.core.hashing import sha256_bytes
from nfse_sync.domain.errors import InvalidPayload

logger = logging.getLogger(__name__)

_DATE_FORMATS = ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d")


def _local(path: str) -> str:
    """Turn ``a/b`` into a namespace agnostic ``*[local-name()="a"]/*[local-name()="b"]`` step list."""

    return "/".join(f'*[local-name()="{part}"]' for part in path.split("/"))


@dataclass(slots=True)
class ParsedNFSe:
    number: str
    verification_code: str | None
    issue_date: str | None
    competence: str | None
    provider_cnpj: str | None
    provider_name: str | None
    provider_trade_name: str | None
    municipal_registration: str | None
    taker_document: str | None
    taker_name: str | None
    service_code: str | None
    service_value: Decimal
    iss_value: Decimal
    iss_withheld: bool
    is_cancelled: bool
    is_substituted: bool
    document_hash: str

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["service_value"] = str(self.service_value)
        data["iss_value"] = str(self.iss_value)
        return data


def _parse_root(content: bytes) -> etree._Element:
    if not content or not content.strip():
        raise InvalidPayload("empty XML content")
    parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False, no_network=True)
    try:
        return etree.fromstring(content, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise InvalidPayload(f"malformed NFS-e XML: {exc}") from exc


def _text(node: etree._Element, path: str) -> str | None:
    results = node.xpath(f"./{_local(path)}/text()")
    if not results:
        return None
    value = str(results[0]).strip()
    return value or None


def _decimal(value: str | None, field: str) -> Decimal:
    if not value:
        return Decimal("0")
    try:
        result = Decimal(value.replace(",", "."))
    except InvalidOperation:
        logger.warning("ignoring malformed %s value %r", field, value)
        return Decimal("0")
    return result if result.is_finite() else Decimal("0")


def _normalise_datetime(value: str | None) -> str | None:
    if not value:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value[:19], fmt).isoformat()
        except ValueError:
            continue
    logger.warning("unrecognised NFS-e date %r", value)
    return value


def parse_nfse(content: bytes) -> ParsedNFSe:
    """Parse the first ``InfNfse`` block found in ``content``."""

    root = _parse_root(content)
    matches = root.xpath('.//*[local-name()="InfNfse"]')
    if not matches:
        raise InvalidPayload("XML does not contain an InfNfse element")
    inf = matches[0]

    number = _text(inf, "Numero")
    if not number:
        raise InvalidPayload("NFS-e without Numero")

    verification_code = _text(inf, "CodigoVerificacao")
    provider_cnpj = _text(inf, "PrestadorServico/IdentificacaoPrestador/Cnpj")
    raw_issue_date = _text(inf, "DataEmissao")
    taker_document = _text(inf, "TomadorServico/IdentificacaoTomador/CpfCnpj/Cnpj") or _text(
        inf, "TomadorServico/IdentificacaoTomador/CpfCnpj/Cpf"
    )

    cancelled = root.xpath(f'.//*[local-name()="InfConfirmacaoCancelamento"]/{_local("Sucesso")}/text()')
    substituted = root.xpath('.//*[local-name()="SubstituicaoNfse"]//text()')

    fingerprint = "|".join(
        [verification_code or "", number, provider_cnpj or "", raw_issue_date or ""]
    ).encode("utf-8")

    return ParsedNFSe(
        number=number,
        verification_code=verification_code,
        issue_date=_normalise_datetime(raw_issue_date),
        competence=_normalise_datetime(_text(inf, "Competencia")),
        provider_cnpj=provider_cnpj,
        provider_name=_text(inf, "PrestadorServico/RazaoSocial"),
        provider_trade_name=_text(inf, "PrestadorServico/NomeFantasia"),
        municipal_registration=_text(inf, "PrestadorServico/IdentificacaoPrestador/InscricaoMunicipal"),
        taker_document=taker_document,
        taker_name=_text(inf, "TomadorServico/RazaoSocial"),
        service_code=_text(inf, "Servico/ItemListaServico"),
        service_value=_decimal(_text(inf, "Servico/Valores/ValorServicos"), "ValorServicos"),
        iss_value=_decimal(_text(inf, "Servico/Valores/ValorIss"), "ValorIss"),
        iss_withheld=_text(inf, "Servico/Valores/IssRetido") in {"1", "true", "S"},
        is_cancelled=bool(cancelled) and str(cancelled[0]).strip().lower() == "true",
        is_substituted=any(str(item).strip() for item in substituted),
        document_hash=sha256_bytes(fingerprint),
    )
