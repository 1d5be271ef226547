from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from app.verifactu_client.chain import resolve_chain
from app.verifactu_client.config import TransportConfig
from app.verifactu_client.exceptions import (
    ChainError,
    ConfigError,
    TransportError,
    TransportTimeoutError,
    VerifactuValidationError,
)
from app.verifactu_client.models import ChainLink, FieldError, InvoiceRegistrationRecord, errors_to_dicts
from app.verifactu_client.soap_client import AeatTransport
from app.verifactu_client.validator import validate_record
from app.verifactu_client.xml_generator import build_envelope, wrap_soap_envelope

from .envelope_guards import run_envelope_guardrails

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ValidationFailed:
    errors: List[FieldError]
    http_status: int = 400

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "stage": "validation", "errors": errors_to_dicts(self.errors)}


@dataclass(frozen=True)
class ChainInvalid:
    error: ChainError
    http_status: int = 400

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": False,
            "stage": "chain",
            "errors": [{"field": self.error.field, "message": self.error.message}],
        }


@dataclass(frozen=True)
class ConfigFailed:
    error: ConfigError
    http_status: int = 500

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "stage": "config", "error": self.error.message}


@dataclass(frozen=True)
class TransportFailed:
    error: TransportError

    @property
    def http_status(self) -> int:
        return 504 if isinstance(self.error, TransportTimeoutError) else 502

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "stage": "transport", "kind": self.error.code, "error": self.error.message}


@dataclass(frozen=True)
class Submitted:
    status_code: int
    body: str
    elapsed_s: float = 0.0
    http_status: int = 200

    def to_dict(self, preview_chars: Optional[int] = None) -> Dict[str, Any]:
        body = self.body
        truncated = preview_chars is not None and 0 < preview_chars < len(body)
        if truncated:
            body = body[:preview_chars]
        return {
            "ok": True,
            "stage": "submitted",
            "status_code": self.status_code,
            "body_preview": body,
            "body_truncated": truncated,
            "elapsed_s": round(self.elapsed_s, 3),
        }


Outcome = Union[ValidationFailed, ChainInvalid, ConfigFailed, TransportFailed, Submitted]


@dataclass(frozen=True)
class Prepared:
    record: InvoiceRegistrationRecord
    link: ChainLink
    xml: str = field(repr=False)


def prepare_envelope(
    raw: Any,
    *,
    now: Optional[datetime] = None,
    check_totals: bool = True,
    tolerance: Optional[Decimal] = None,
) -> Union[Prepared, ValidationFailed, ChainInvalid]:
    """
    Validar -> tipar -> resolver cadena -> construir envelope (sin red).

    Corta en la primera etapa que falla; nunca construye XML a partir de un
    registro inválido.
    """
    errors = validate_record(raw, check_totals=check_totals, tolerance=tolerance)
    if errors:
        logger.info(f"Registro rechazado por validación: {len(errors)} error(es)")
        return ValidationFailed(errors)

    try:
        record = InvoiceRegistrationRecord.from_dict(raw)
    except VerifactuValidationError as e:
        return ValidationFailed(e.errors or [FieldError("$", e.message)])

    try:
        link = resolve_chain(record)
    except ChainError as e:
        logger.info(f"Encadenamiento inválido: {e.field}: {e.message}")
        return ChainInvalid(e)

    xml = build_envelope(record, link, now=now)
    run_envelope_guardrails(xml.encode("utf-8"), context=f"NumSerieFactura={record.invoice_id.series_number}")
    return Prepared(record=record, link=link, xml=xml)


def _send(xml: str, config: TransportConfig, transport: Optional[AeatTransport], label: Optional[str]) -> Outcome:
    transport = transport or AeatTransport()
    try:
        result = transport.send(xml, config, label=label)
    except ConfigError as e:
        logger.error(f"Configuración inválida: {e.message}")
        return ConfigFailed(e)
    except TransportError as e:
        return TransportFailed(e)
    return Submitted(status_code=result.status_code, body=result.body_text, elapsed_s=result.elapsed_s)


def register_invoice(
    raw: Any,
    config: TransportConfig,
    *,
    transport: Optional[AeatTransport] = None,
    now: Optional[datetime] = None,
    check_totals: bool = True,
    tolerance: Optional[Decimal] = None,
) -> Outcome:
    """
    Pipeline completo: Validate -> Link -> Build -> Send.

    Devuelve siempre un Outcome etiquetado; los errores previstos no se
    propagan como excepción.
    """
    prepared = prepare_envelope(raw, now=now, check_totals=check_totals, tolerance=tolerance)
    if not isinstance(prepared, Prepared):
        return prepared
    return _send(prepared.xml, config, transport, prepared.record.invoice_id.series_number)


def send_prepared_xml(
    xml: Union[str, bytes],
    config: TransportConfig,
    *,
    transport: Optional[AeatTransport] = None,
) -> Outcome:
    """Envía XML ya construido por el caller, envolviéndolo en SOAP si hace falta."""
    try:
        envelope = wrap_soap_envelope(xml)
    except VerifactuValidationError as e:
        return ValidationFailed([FieldError("xml", e.message)])
    return _send(envelope, config, transport, None)
