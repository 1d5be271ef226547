from pathlib import Path
from types import SimpleNamespace
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.verifactu_client.config import TransportConfig
from app.verifactu_client.exceptions import ConfigError, NetworkError, TransportTimeoutError
from app.verifactu_client.models import TransportResult
from verifactu_minisender.core_send import (
    ChainInvalid,
    ConfigFailed,
    Prepared,
    Submitted,
    TransportFailed,
    ValidationFailed,
    prepare_envelope,
    register_invoice,
    send_prepared_xml,
)
from _records import chained_record, minimal_record

CONFIG = TransportConfig(cert_bytes=b"p12", passphrase="secret")


class _FakeTransport:
    def __init__(self, *, result=None, exc=None):
        self.result = result or TransportResult(status_code=200, body_text="<ok/>", elapsed_s=0.2)
        self.exc = exc
        self.sent = []

    def send(self, xml, config, *, label=None):
        self.sent.append(SimpleNamespace(xml=xml, config=config, label=label))
        if self.exc is not None:
            raise self.exc
        return self.result


def test_scenario_c_reports_all_validation_errors_and_never_sends():
    raw = minimal_record()
    raw["recipients"] = []
    raw["totalAmount"] = "no-numérico"
    transport = _FakeTransport()

    outcome = register_invoice(raw, CONFIG, transport=transport)

    assert isinstance(outcome, ValidationFailed)
    fields = {e.field for e in outcome.errors}
    assert {"recipients", "totalAmount"} <= fields
    assert outcome.http_status == 400
    assert transport.sent == []


def test_chain_error_short_circuits_before_build():
    raw = chained_record()
    raw["chain"]["previous"]["hash"] = ""
    transport = _FakeTransport()

    outcome = register_invoice(raw, CONFIG, transport=transport)

    assert isinstance(outcome, ChainInvalid)
    assert outcome.error.field == "chain.previous.hash"
    assert outcome.to_dict()["errors"][0]["field"] == "chain.previous.hash"
    assert transport.sent == []


def test_successful_registration_is_submitted_with_raw_body():
    transport = _FakeTransport(result=TransportResult(status_code=200, body_text="<soap:Fault/>", elapsed_s=0.5))

    outcome = register_invoice(chained_record(), CONFIG, transport=transport)

    assert isinstance(outcome, Submitted)
    assert outcome.status_code == 200
    assert outcome.body == "<soap:Fault/>"
    assert transport.sent[0].label == "A-2025-0002"
    assert "RegistroAnterior" in transport.sent[0].xml
    assert transport.sent[0].config is CONFIG


def test_config_error_maps_to_config_failed():
    outcome = register_invoice(minimal_record(), CONFIG, transport=_FakeTransport(exc=ConfigError("sin cert")))
    assert isinstance(outcome, ConfigFailed)
    assert outcome.http_status == 500


@pytest.mark.parametrize(
    "exc,status",
    [(NetworkError("refused"), 502), (TransportTimeoutError("slow", timeout=1), 504)],
)
def test_transport_errors_map_to_transport_failed(exc, status):
    outcome = register_invoice(minimal_record(), CONFIG, transport=_FakeTransport(exc=exc))
    assert isinstance(outcome, TransportFailed)
    assert outcome.http_status == status
    assert outcome.to_dict()["kind"] == exc.code


def test_prepare_envelope_returns_xml_without_network():
    prepared = prepare_envelope(minimal_record())
    assert isinstance(prepared, Prepared)
    assert prepared.xml.startswith("<?xml")
    assert "PrimerRegistro" in prepared.xml


def test_submitted_preview_is_truncated():
    outcome = Submitted(status_code=200, body="x" * 50)
    payload = outcome.to_dict(preview_chars=10)
    assert payload["body_preview"] == "x" * 10
    assert payload["body_truncated"] is True
    assert payload["status_code"] == 200


def test_send_prepared_xml_wraps_fragment_and_rejects_garbage():
    transport = _FakeTransport()
    outcome = send_prepared_xml("<RegistroAlta/>", CONFIG, transport=transport)
    assert isinstance(outcome, Submitted)
    assert "Envelope" in transport.sent[0].xml

    bad = send_prepared_xml("<roto", CONFIG, transport=transport)
    assert isinstance(bad, ValidationFailed)
    assert bad.errors[0].field == "xml"
    assert len(transport.sent) == 1


def test_control_characters_become_validation_outcome():
    raw = minimal_record()
    raw["issuerName"] = "ACME\x01 S.L."
    transport = _FakeTransport()

    outcome = register_invoice(raw, CONFIG, transport=transport)

    assert isinstance(outcome, ValidationFailed)
    assert [e.field for e in outcome.errors] == ["issuerName"]
    assert transport.sent == []


def test_oversized_amounts_become_validation_outcome():
    raw = minimal_record()
    raw["taxBreakdown"][0]["taxableBase"] = 10 ** 30
    raw["totalAmount"] = 10 ** 30 + 21
    transport = _FakeTransport()

    outcome = register_invoice(raw, CONFIG, transport=transport, check_totals=False)

    assert isinstance(outcome, ValidationFailed)
    assert {e.field for e in outcome.errors} == {"taxBreakdown[0].taxableBase", "totalAmount"}
    assert transport.sent == []
