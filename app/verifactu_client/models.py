"""
Modelos de datos para VeriFactu (RegistroAlta)

Los registros se construyen una sola vez por envío a partir del dict de
entrada ya validado y no se mutan después (dataclasses frozen).
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .exceptions import VerifactuValidationError
from .utils import clean_text, parse_date, parse_flag, parse_timestamp, to_decimal


INVOICE_TYPES = ("F1", "F2", "F3", "R1", "R2", "R3", "R4", "R5")
CORRECTIVE_INVOICE_TYPES = ("R1", "R2", "R3", "R4", "R5")

# alias -> (TipoFactura, TipoRectificativa)
INVOICE_TYPE_ALIASES: Dict[str, Tuple[str, Optional[str]]] = {
    "ordinary": ("F1", None),
    "simplified": ("F2", None),
    "substitute": ("F3", None),
    "corrective-by-substitution": ("R1", "S"),
    "corrective-by-difference": ("R1", "I"),
}

CORRECTIVE_TYPE_ALIASES = {
    "S": "S",
    "I": "I",
    "substitution": "S",
    "difference": "I",
}

HASH_ALGORITHM_ALIASES = {
    "01": "01",
    "SHA-256": "01",
    "SHA256": "01",
}

THIRD_PARTY_ALIASES = {
    "T": "T",
    "D": "D",
    "third-party": "T",
    "recipient": "D",
}

SUBJECT_QUALIFICATIONS = ("S1", "S2")
OPERATION_QUALIFICATIONS = ("S1", "S2", "N1", "N2")
EXEMPTION_CODES = ("E1", "E2", "E3", "E4", "E5", "E6", "E7", "E8")
PREVIOUS_REJECTION_CODES = ("N", "S", "X")
DEFAULT_TAX_KIND = "01"


def resolve_invoice_type(value: Any, corrective: Any = None) -> Tuple[Optional[str], Optional[str]]:
    """
    Normaliza tipo de factura y tipo rectificativa.

    Returns:
        (TipoFactura, TipoRectificativa). TipoFactura None si el código es desconocido.
        TipoRectificativa None si no se indicó o es desconocido.
    """
    corrective_code = None
    if clean_text(corrective):
        corrective_code = CORRECTIVE_TYPE_ALIASES.get(str(corrective).strip())
        if corrective_code is None:
            corrective_code = CORRECTIVE_TYPE_ALIASES.get(str(corrective).strip().lower())

    raw = clean_text(value)
    if raw is None:
        return "F1", corrective_code
    if raw.upper() in INVOICE_TYPES:
        return raw.upper(), corrective_code
    alias = INVOICE_TYPE_ALIASES.get(raw.lower())
    if alias is None:
        return None, corrective_code
    return alias[0], corrective_code or alias[1]


def resolve_hash_algorithm(value: Any) -> Optional[str]:
    raw = clean_text(value)
    if raw is None:
        return None
    return HASH_ALGORITHM_ALIASES.get(raw.upper())


def resolve_third_party(value: Any) -> Optional[str]:
    raw = clean_text(value)
    if raw is None:
        return None
    return THIRD_PARTY_ALIASES.get(raw) or THIRD_PARTY_ALIASES.get(raw.lower())


def _get(raw: Mapping, key: str) -> Any:
    if not isinstance(raw, Mapping):
        return None
    return raw.get(key)


def _require_text(value: Any, path: str) -> str:
    text = clean_text(value)
    if text is None:
        raise VerifactuValidationError(f"Campo obligatorio vacío: {path}", [FieldError(path, "obligatorio")])
    return text


def _require_decimal(value: Any, path: str) -> Decimal:
    d = to_decimal(value)
    if d is None:
        raise VerifactuValidationError(f"Importe no numérico: {path}", [FieldError(path, "debe ser numérico")])
    return d


def _require_date(value: Any, path: str) -> date:
    d = parse_date(value)
    if d is None:
        raise VerifactuValidationError(f"Fecha inválida: {path}", [FieldError(path, "fecha inválida")])
    return d


@dataclass(frozen=True)
class FieldError:
    """Un incumplimiento de una regla de validación."""
    field: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"field": self.field, "message": self.message}

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass(frozen=True)
class InvoiceId:
    issuer_tax_id: str
    series_number: str
    issue_date: date

    @classmethod
    def from_dict(cls, raw: Mapping, path: str, default_issuer: Any = None) -> "InvoiceId":
        issuer = _get(raw, "issuerTaxId")
        if clean_text(issuer) is None:
            issuer = default_issuer
        return cls(
            issuer_tax_id=_require_text(issuer, f"{path}.issuerTaxId"),
            series_number=_require_text(_get(raw, "seriesNumber"), f"{path}.seriesNumber"),
            issue_date=_require_date(_get(raw, "issueDate"), f"{path}.issueDate"),
        )


@dataclass(frozen=True)
class ForeignId:
    country_code: str
    id_type: str
    id: str


@dataclass(frozen=True)
class Party:
    """Destinatario o tercero: NIF nacional o IDOtro, nunca ambos."""
    name: str
    tax_id: Optional[str] = None
    foreign_id: Optional[ForeignId] = None

    @classmethod
    def from_dict(cls, raw: Mapping, path: str) -> "Party":
        foreign_raw = _get(raw, "foreignId")
        foreign = None
        if isinstance(foreign_raw, Mapping) and any(clean_text(v) for v in foreign_raw.values()):
            foreign = ForeignId(
                country_code=_require_text(foreign_raw.get("countryCode"), f"{path}.foreignId.countryCode"),
                id_type=_require_text(foreign_raw.get("idType"), f"{path}.foreignId.idType"),
                id=_require_text(foreign_raw.get("id"), f"{path}.foreignId.id"),
            )
        return cls(
            name=_require_text(_get(raw, "name"), f"{path}.name"),
            tax_id=clean_text(_get(raw, "taxId")),
            foreign_id=foreign,
        )


@dataclass(frozen=True)
class TaxBreakdownLine:
    """Una línea de DetalleDesglose."""
    taxable_base: Decimal
    tax_kind: str = DEFAULT_TAX_KIND
    regime_key: Optional[str] = None
    operation_qualification: Optional[str] = None
    exemption_code: Optional[str] = None
    tax_rate: Optional[Decimal] = None
    cost_base: Optional[Decimal] = None
    tax_quota: Optional[Decimal] = None
    surcharge_rate: Optional[Decimal] = None
    surcharge_quota: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, raw: Mapping, path: str) -> "TaxBreakdownLine":
        return cls(
            taxable_base=_require_decimal(_get(raw, "taxableBase"), f"{path}.taxableBase"),
            tax_kind=clean_text(_get(raw, "taxKind")) or DEFAULT_TAX_KIND,
            regime_key=clean_text(_get(raw, "regimeKey")),
            operation_qualification=clean_text(_get(raw, "operationQualification")),
            exemption_code=clean_text(_get(raw, "exemptionCode")),
            tax_rate=to_decimal(_get(raw, "taxRate")),
            cost_base=to_decimal(_get(raw, "costBase")),
            tax_quota=to_decimal(_get(raw, "taxQuota")),
            surcharge_rate=to_decimal(_get(raw, "surchargeRate")),
            surcharge_quota=to_decimal(_get(raw, "surchargeQuota")),
        )


@dataclass(frozen=True)
class CorrectionAmount:
    """ImporteRectificacion (solo rectificativas por sustitución)."""
    base: Decimal
    quota: Decimal
    surcharge: Optional[Decimal] = None


@dataclass(frozen=True)
class SystemDescriptor:
    """Bloque SistemaInformatico."""
    vendor_name: str
    vendor_tax_id: str
    name: str
    id: str
    version: str
    installation_number: str
    only_verifactu: bool = True
    multi_taxpayer: bool = False
    multiple_taxpayers: bool = False

    @classmethod
    def from_dict(cls, raw: Mapping, path: str = "systemDescriptor") -> "SystemDescriptor":
        def flag(key: str, default: bool) -> bool:
            parsed = parse_flag(_get(raw, key))
            return default if parsed is None else parsed

        return cls(
            vendor_name=_require_text(_get(raw, "vendorName"), f"{path}.vendorName"),
            vendor_tax_id=_require_text(_get(raw, "vendorTaxId"), f"{path}.vendorTaxId"),
            name=_require_text(_get(raw, "name"), f"{path}.name"),
            id=_require_text(_get(raw, "id"), f"{path}.id"),
            version=_require_text(_get(raw, "version"), f"{path}.version"),
            installation_number=_require_text(_get(raw, "installationNumber"), f"{path}.installationNumber"),
            only_verifactu=flag("onlyVerifactu", True),
            multi_taxpayer=flag("multiTaxpayer", False),
            multiple_taxpayers=flag("multipleTaxpayers", False),
        )


@dataclass(frozen=True)
class PreviousRecord:
    """Identidad y huella del registro inmediatamente anterior."""
    issuer_tax_id: str
    series_number: str
    issue_date: date
    hash: str


@dataclass(frozen=True)
class ChainBlock:
    """Bloque `chain` tal como llegó; la resolución la hace chain.resolve_chain."""
    is_first: bool = False
    previous: Optional[Mapping[str, Any]] = None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["ChainBlock"]:
        if not isinstance(raw, Mapping):
            return None
        previous = raw.get("previous")
        return cls(
            is_first=parse_flag(raw.get("isFirst")) is True,
            previous=dict(previous) if isinstance(previous, Mapping) else None,
        )


@dataclass(frozen=True)
class FirstInChain:
    """Encadenamiento/PrimerRegistro = S"""
    pass


@dataclass(frozen=True)
class ChainedTo:
    """Encadenamiento/RegistroAnterior"""
    previous: PreviousRecord


ChainLink = Union[FirstInChain, ChainedTo]


@dataclass(frozen=True)
class InvoiceRegistrationRecord:
    """Registro de alta de factura (RegistroAlta) normalizado."""
    version: str
    invoice_id: InvoiceId
    issuer_name: str
    issuer_tax_id: str
    recipients: Tuple[Party, ...]
    tax_breakdown: Tuple[TaxBreakdownLine, ...]
    total_tax: Decimal
    total_amount: Decimal
    hash_algorithm: str
    hash: str
    system: SystemDescriptor
    invoice_type: str = "F1"
    corrective_type: Optional[str] = None
    corrected_invoices: Tuple[InvoiceId, ...] = ()
    substituted_invoices: Tuple[InvoiceId, ...] = ()
    correction_amount: Optional[CorrectionAmount] = None
    chain: Optional[ChainBlock] = None
    generated_at: Optional[datetime] = None
    third_party_issuance: Optional[str] = None
    third_party: Optional[Party] = None
    external_ref: Optional[str] = None
    operation_description: Optional[str] = None
    operation_date: Optional[date] = None
    coupon: Optional[bool] = None
    simplified_invoice: Optional[bool] = None
    macro_data: Optional[bool] = None
    no_recipient_id: Optional[bool] = None
    remedy: Optional[bool] = None
    previous_rejection: Optional[str] = None

    @property
    def is_corrective(self) -> bool:
        return self.invoice_type in CORRECTIVE_INVOICE_TYPES

    @classmethod
    def from_dict(cls, raw: Mapping) -> "InvoiceRegistrationRecord":
        """
        Construye el registro tipado desde el dict de entrada.

        Asume entrada ya validada (validator.validate_record); ante un valor
        imposible de convertir lanza VerifactuValidationError.
        """
        if not isinstance(raw, Mapping):
            raise VerifactuValidationError("El registro debe ser un objeto JSON", [FieldError("$", "debe ser un objeto")])

        top_issuer = _get(raw, "issuerTaxId")
        invoice_raw = _get(raw, "invoiceId") or {}
        invoice_id = InvoiceId.from_dict(invoice_raw, "invoiceId", default_issuer=top_issuer)

        invoice_type, corrective_type = resolve_invoice_type(_get(raw, "invoiceType"), _get(raw, "correctiveType"))
        if invoice_type is None:
            raise VerifactuValidationError(
                f"invoiceType desconocido: {_get(raw, 'invoiceType')!r}",
                [FieldError("invoiceType", "código desconocido")],
            )

        correction = None
        correction_raw = _get(raw, "correctionAmount")
        if isinstance(correction_raw, Mapping) and invoice_type in CORRECTIVE_INVOICE_TYPES:
            correction = CorrectionAmount(
                base=_require_decimal(correction_raw.get("base"), "correctionAmount.base"),
                quota=_require_decimal(correction_raw.get("quota"), "correctionAmount.quota"),
                surcharge=to_decimal(correction_raw.get("surcharge")),
            )

        third_party_tag = resolve_third_party(_get(raw, "thirdPartyIssuance"))
        third_party = None
        if third_party_tag is not None:
            third_party = Party.from_dict(_get(raw, "thirdParty") or {}, "thirdParty")

        hash_algorithm = resolve_hash_algorithm(_get(raw, "hashAlgorithm"))
        if hash_algorithm is None:
            raise VerifactuValidationError(
                "hashAlgorithm desconocido", [FieldError("hashAlgorithm", "código desconocido")]
            )

        def refs(key: str) -> Tuple[InvoiceId, ...]:
            items = _get(raw, key) or []
            return tuple(InvoiceId.from_dict(item, f"{key}[{i}]") for i, item in enumerate(items))

        def flag(key: str) -> Optional[bool]:
            return parse_flag(_get(raw, key))

        operation_date = None
        if clean_text(_get(raw, "operationDate")) or isinstance(_get(raw, "operationDate"), date):
            operation_date = _require_date(_get(raw, "operationDate"), "operationDate")

        previous_rejection = clean_text(_get(raw, "previousRejection"))
        if isinstance(_get(raw, "previousRejection"), bool):
            previous_rejection = "S" if _get(raw, "previousRejection") else "N"

        return cls(
            version=_require_text(_get(raw, "version"), "version"),
            invoice_id=invoice_id,
            issuer_name=_require_text(_get(raw, "issuerName"), "issuerName"),
            issuer_tax_id=clean_text(top_issuer) or invoice_id.issuer_tax_id,
            recipients=tuple(
                Party.from_dict(item, f"recipients[{i}]") for i, item in enumerate(_get(raw, "recipients") or [])
            ),
            tax_breakdown=tuple(
                TaxBreakdownLine.from_dict(item, f"taxBreakdown[{i}]")
                for i, item in enumerate(_get(raw, "taxBreakdown") or [])
            ),
            total_tax=_require_decimal(_get(raw, "totalTax"), "totalTax"),
            total_amount=_require_decimal(_get(raw, "totalAmount"), "totalAmount"),
            hash_algorithm=hash_algorithm,
            hash=_require_text(_get(raw, "hash"), "hash"),
            system=SystemDescriptor.from_dict(_get(raw, "systemDescriptor") or {}),
            invoice_type=invoice_type,
            corrective_type=corrective_type if invoice_type in CORRECTIVE_INVOICE_TYPES else None,
            corrected_invoices=refs("correctedInvoiceRefs") if invoice_type in CORRECTIVE_INVOICE_TYPES else (),
            substituted_invoices=refs("substitutedInvoiceRefs") if invoice_type == "F3" else (),
            correction_amount=correction,
            chain=ChainBlock.from_raw(_get(raw, "chain")),
            generated_at=parse_timestamp(_get(raw, "generatedAt")),
            third_party_issuance=third_party_tag,
            third_party=third_party,
            external_ref=clean_text(_get(raw, "externalRef")),
            operation_description=clean_text(_get(raw, "operationDescription")),
            operation_date=operation_date,
            coupon=flag("coupon"),
            simplified_invoice=flag("simplifiedInvoice"),
            macro_data=flag("macroData"),
            no_recipient_id=flag("noRecipientId"),
            remedy=flag("remedy"),
            previous_rejection=previous_rejection,
        )


@dataclass(frozen=True)
class TransportResult:
    """Respuesta HTTP cruda de la AEAT (cualquier status)."""
    status_code: int
    body_text: str
    elapsed_s: float = 0.0
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


def errors_to_dicts(errors: List[FieldError]) -> List[Dict[str, str]]:
    return [e.to_dict() for e in errors]
