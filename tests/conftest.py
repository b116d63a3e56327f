from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))


class FakeClock:
    """Manually advanced clock returning timezone-aware UTC datetimes."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 8, 3, 12, 0, tzinfo=timezone.utc))


SAMPLE_NFSE = """<?xml version="1.0" encoding="UTF-8"?>
<ConsultarNfseResposta xmlns="http://www.abrasf.org.br/nfse.xsd">
  <ListaNfse>
    <CompNfse>
      <Nfse>
        <InfNfse>
          <Numero>{number}</Numero>
          <CodigoVerificacao>AB12CD34</CodigoVerificacao>
          <DataEmissao>2025-08-03T10:15:00</DataEmissao>
          <Competencia>2025-08-01</Competencia>
          <Servico>
            <Valores>
              <ValorServicos>{value}</ValorServicos>
              <IssRetido>2</IssRetido>
              <ValorIss>75.00</ValorIss>
            </Valores>
            <ItemListaServico>17.01</ItemListaServico>
          </Servico>
          <PrestadorServico>
            <IdentificacaoPrestador>
              <Cnpj>12345678000190</Cnpj>
              <InscricaoMunicipal>998877</InscricaoMunicipal>
            </IdentificacaoPrestador>
            <RazaoSocial>Acme Servicos Ltda</RazaoSocial>
          </PrestadorServico>
          <TomadorServico>
            <IdentificacaoTomador>
              <CpfCnpj>
                <Cnpj>98765432000155</Cnpj>
              </CpfCnpj>
            </IdentificacaoTomador>
            <RazaoSocial>Globex SA</RazaoSocial>
          </TomadorServico>
        </InfNfse>
      </Nfse>
    </CompNfse>
  </ListaNfse>
</ConsultarNfseResposta>
"""


def make_nfse(number: str = "2025000042", value: str = "1500.00") -> bytes:
    return SAMPLE_NFSE.format(number=number, value=value).encode("utf-8")
