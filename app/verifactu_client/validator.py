"""
Validador de registros de alta VeriFactu

Valida el dict de entrada antes de cualquier serialización. Acumula TODOS los
errores (nunca corta en el primero) y nunca lanza por valores mal formados:
el caller recibe la lista completa para mostrarla de una vez.
"""
import logging
from decimal import Decimal
from typing import Any, List, Mapping, Optional

from .models import (
    CORRECTIVE_INVOICE_TYPES,
    EXEMPTION_CODES,
    OPERATION_QUALIFICATIONS,
    PREVIOUS_REJECTION_CODES,
    SUBJECT_QUALIFICATIONS,
    FieldError,
    resolve_hash_algorithm,
    resolve_invoice_type,
    resolve_third_party,
)
from .utils import (
    AMOUNT_INTEGER_DIGITS,
    amount_fits,
    clean_text,
    has_illegal_xml_chars,
    is_blank,
    parse_date,
    parse_flag,
    parse_timestamp,
    to_decimal,
)

logger = logging.getLogger(__name__)

DEFAULT_TOTALS_TOLERANCE = Decimal("0.01")

_OPTIONAL_FLAGS = ("coupon", "simplifiedInvoice", "macroData", "noRecipientId", "remedy")
_SYSTEM_REQUIRED = ("vendorName", "vendorTaxId", "name", "id", "version", "installationNumber")
_SYSTEM_FLAGS = ("onlyVerifactu", "multiTaxpayer", "multipleTaxpayers")
_LINE_AMOUNTS = ("taxableBase", "costBase", "taxRate", "taxQuota", "surchargeRate", "surchargeQuota")
_CORRECTION_AMOUNTS = ("base", "quota", "surcharge")


class RecordValidator:
    """
    Validador de InvoiceRegistrationRecord (entrada cruda).

    Args:
        check_totals: si True, exige que totalTax/totalAmount coincidan con
            la suma del desglose (dentro de `tolerance`)
        tolerance: diferencia máxima admitida en la comprobación de totales
    """

    def __init__(self, check_totals: bool = True, tolerance: Optional[Decimal] = None):
        self.check_totals = check_totals
        self.tolerance = DEFAULT_TOTALS_TOLERANCE if tolerance is None else Decimal(tolerance)
        self.errors: List[FieldError] = []

    def _add(self, field: str, message: str) -> None:
        self.errors.append(FieldError(field, message))

    def _require_text(self, raw: Mapping, key: str, path: str) -> Optional[str]:
        value = raw.get(key) if isinstance(raw, Mapping) else None
        text = clean_text(value) if not isinstance(value, (dict, list)) else None
        if text is None:
            self._add(path, "obligatorio")
        return text

    def validate(self, record: Any) -> List[FieldError]:
        self.errors = []
        if not isinstance(record, Mapping):
            self._add("$", "el registro debe ser un objeto")
            return list(self.errors)

        self._validate_xml_text(record, "")
        self._validate_header(record)
        self._validate_invoice_type(record)
        self._validate_recipients(record)
        self._validate_breakdown(record)
        self._validate_totals(record)
        self._validate_hash(record)
        self._validate_system(record)
        self._validate_third_party(record)
        self._validate_optional(record)
        self._validate_amount_ranges(record)
        if self.check_totals:
            self._validate_totals_consistency(record)

        if self.errors:
            logger.debug(f"Registro inválido: {len(self.errors)} error(es)")
        return list(self.errors)

    def _validate_xml_text(self, value: Any, path: str) -> None:
        """Un error por campo con caracteres que lxml no puede serializar."""
        if isinstance(value, Mapping):
            for key, item in value.items():
                self._validate_xml_text(item, f"{path}.{key}" if path else str(key))
        elif isinstance(value, list):
            for i, item in enumerate(value):
                self._validate_xml_text(item, f"{path}[{i}]")
        elif has_illegal_xml_chars(value):
            self._add(path or "$", "contiene caracteres de control no admitidos en XML")

    def _check_amount_range(self, value: Any, path: str) -> None:
        amount = to_decimal(value)
        if amount is not None and not amount_fits(amount):
            self._add(path, f"excede {AMOUNT_INTEGER_DIGITS} dígitos enteros")

    def _validate_amount_ranges(self, record: Mapping) -> None:
        for key in ("totalTax", "totalAmount"):
            self._check_amount_range(record.get(key), key)

        lines = record.get("taxBreakdown")
        if isinstance(lines, list):
            for i, line in enumerate(lines):
                if isinstance(line, Mapping):
                    for key in _LINE_AMOUNTS:
                        self._check_amount_range(line.get(key), f"taxBreakdown[{i}].{key}")

        correction = record.get("correctionAmount")
        if isinstance(correction, Mapping):
            for key in _CORRECTION_AMOUNTS:
                self._check_amount_range(correction.get(key), f"correctionAmount.{key}")

    def _validate_header(self, record: Mapping) -> None:
        self._require_text(record, "version", "version")

        invoice_id = record.get("invoiceId")
        if invoice_id is not None and not isinstance(invoice_id, Mapping):
            self._add("invoiceId", "debe ser un objeto")
            invoice_id = {}
        invoice_id = invoice_id or {}

        issuer = clean_text(invoice_id.get("issuerTaxId")) or clean_text(record.get("issuerTaxId"))
        if issuer is None:
            self._add("invoiceId.issuerTaxId", "obligatorio")

        self._require_text(invoice_id, "seriesNumber", "invoiceId.seriesNumber")

        issue_date = invoice_id.get("issueDate")
        if is_blank(issue_date):
            self._add("invoiceId.issueDate", "obligatorio")
        elif parse_date(issue_date) is None:
            self._add("invoiceId.issueDate", f"fecha inválida: {issue_date!r} (usar YYYY-MM-DD o DD-MM-YYYY)")

        self._require_text(record, "issuerName", "issuerName")

    def _validate_invoice_type(self, record: Mapping) -> None:
        invoice_type, corrective_type = resolve_invoice_type(record.get("invoiceType"), record.get("correctiveType"))
        if invoice_type is None:
            self._add("invoiceType", f"código desconocido: {record.get('invoiceType')!r}")
            return

        if not is_blank(record.get("correctiveType")) and corrective_type is None:
            self._add("correctiveType", f"código desconocido: {record.get('correctiveType')!r} (S o I)")

        if invoice_type not in CORRECTIVE_INVOICE_TYPES:
            return

        if corrective_type is None and is_blank(record.get("correctiveType")):
            self._add("correctiveType", "obligatorio en facturas rectificativas (S o I)")

        refs = record.get("correctedInvoiceRefs")
        if not isinstance(refs, list) or not refs:
            self._add("correctedInvoiceRefs", "obligatorio en facturas rectificativas (lista no vacía)")
        else:
            for i, ref in enumerate(refs):
                self._validate_invoice_ref(ref, f"correctedInvoiceRefs[{i}]")

        if corrective_type == "S":
            amount = record.get("correctionAmount")
            if not isinstance(amount, Mapping):
                self._add("correctionAmount", "obligatorio en rectificativas por sustitución")
            else:
                for key in ("base", "quota"):
                    if to_decimal(amount.get(key)) is None:
                        self._add(f"correctionAmount.{key}", "debe ser numérico")
                if not is_blank(amount.get("surcharge")) and to_decimal(amount.get("surcharge")) is None:
                    self._add("correctionAmount.surcharge", "debe ser numérico")

    def _validate_invoice_ref(self, ref: Any, path: str) -> None:
        if not isinstance(ref, Mapping):
            self._add(path, "debe ser un objeto {issuerTaxId, seriesNumber, issueDate}")
            return
        self._require_text(ref, "issuerTaxId", f"{path}.issuerTaxId")
        self._require_text(ref, "seriesNumber", f"{path}.seriesNumber")
        if is_blank(ref.get("issueDate")):
            self._add(f"{path}.issueDate", "obligatorio")
        elif parse_date(ref.get("issueDate")) is None:
            self._add(f"{path}.issueDate", "fecha inválida")

    def _validate_party(self, party: Any, path: str) -> None:
        """Nombre + exactamente una identidad: taxId o foreignId completo."""
        if not isinstance(party, Mapping):
            self._add(path, "debe ser un objeto")
            return

        self._require_text(party, "name", f"{path}.name")

        has_tax_id = clean_text(party.get("taxId")) is not None
        foreign = party.get("foreignId")
        if foreign is not None and not isinstance(foreign, Mapping):
            self._add(f"{path}.foreignId", "debe ser un objeto {countryCode, idType, id}")
            return
        has_foreign = isinstance(foreign, Mapping) and any(not is_blank(v) for v in foreign.values())

        if has_tax_id and has_foreign:
            self._add(path, "indicar taxId o foreignId, no ambos")
        elif not has_tax_id and not has_foreign:
            self._add(f"{path}.taxId", "obligatorio taxId o foreignId")
        elif has_foreign:
            for key in ("countryCode", "idType", "id"):
                if clean_text(foreign.get(key)) is None:
                    self._add(f"{path}.foreignId.{key}", "obligatorio (identificador extranjero incompleto)")

    def _validate_recipients(self, record: Mapping) -> None:
        recipients = record.get("recipients")
        if not isinstance(recipients, list) or not recipients:
            self._add("recipients", "debe contener al menos un destinatario")
            return
        for i, recipient in enumerate(recipients):
            self._validate_party(recipient, f"recipients[{i}]")

    def _validate_breakdown(self, record: Mapping) -> None:
        lines = record.get("taxBreakdown")
        if not isinstance(lines, list) or not lines:
            self._add("taxBreakdown", "debe contener al menos una línea de desglose")
            return

        for i, line in enumerate(lines):
            path = f"taxBreakdown[{i}]"
            if not isinstance(line, Mapping):
                self._add(path, "debe ser un objeto")
                continue

            if to_decimal(line.get("taxableBase")) is None:
                self._add(f"{path}.taxableBase", "obligatorio y numérico")

            qualification = clean_text(line.get("operationQualification"))
            exemption = clean_text(line.get("exemptionCode"))
            if qualification and exemption:
                self._add(path, "indicar operationQualification u exemptionCode, no ambos")
            elif not qualification and not exemption:
                self._add(f"{path}.operationQualification", "obligatorio operationQualification o exemptionCode")
            elif qualification and qualification not in OPERATION_QUALIFICATIONS:
                self._add(f"{path}.operationQualification", f"código desconocido: {qualification!r}")
            elif exemption and exemption not in EXEMPTION_CODES:
                self._add(f"{path}.exemptionCode", f"código desconocido: {exemption!r}")

            subject = qualification in SUBJECT_QUALIFICATIONS
            for key in ("taxRate", "taxQuota"):
                value = line.get(key)
                if is_blank(value):
                    if subject:
                        self._add(f"{path}.{key}", f"obligatorio para operaciones sujetas ({qualification})")
                elif to_decimal(value) is None:
                    self._add(f"{path}.{key}", "debe ser numérico")

            for key in ("costBase", "surchargeRate", "surchargeQuota"):
                value = line.get(key)
                if not is_blank(value) and to_decimal(value) is None:
                    self._add(f"{path}.{key}", "debe ser numérico")

    def _validate_totals(self, record: Mapping) -> None:
        for key in ("totalTax", "totalAmount"):
            value = record.get(key)
            if is_blank(value):
                self._add(key, "obligatorio")
            elif to_decimal(value) is None:
                self._add(key, f"debe ser numérico: {value!r}")

    def _validate_hash(self, record: Mapping) -> None:
        algorithm = self._require_text(record, "hashAlgorithm", "hashAlgorithm")
        if algorithm is not None and resolve_hash_algorithm(algorithm) is None:
            self._add("hashAlgorithm", f"algoritmo desconocido: {algorithm!r}")
        self._require_text(record, "hash", "hash")

    def _validate_system(self, record: Mapping) -> None:
        system = record.get("systemDescriptor")
        if not isinstance(system, Mapping):
            self._add("systemDescriptor", "obligatorio")
            return
        for key in _SYSTEM_REQUIRED:
            self._require_text(system, key, f"systemDescriptor.{key}")
        for key in _SYSTEM_FLAGS:
            value = system.get(key)
            if value is not None and parse_flag(value) is None:
                self._add(f"systemDescriptor.{key}", "debe ser booleano (o S/N)")

    def _validate_third_party(self, record: Mapping) -> None:
        raw_tag = record.get("thirdPartyIssuance")
        third_party = record.get("thirdParty")
        if is_blank(raw_tag):
            if not is_blank(third_party):
                self._add("thirdParty", "presente sin thirdPartyIssuance")
            return

        tag = resolve_third_party(raw_tag)
        if tag is None:
            self._add("thirdPartyIssuance", f"código desconocido: {raw_tag!r} (T o D)")
        if is_blank(third_party):
            self._add("thirdParty", "obligatorio cuando se indica thirdPartyIssuance")
            return
        self._validate_party(third_party, "thirdParty")

    def _validate_optional(self, record: Mapping) -> None:
        for key in _OPTIONAL_FLAGS:
            value = record.get(key)
            if value is not None and parse_flag(value) is None:
                self._add(key, "debe ser booleano (o S/N)")

        operation_date = record.get("operationDate")
        if not is_blank(operation_date) and parse_date(operation_date) is None:
            self._add("operationDate", "fecha inválida")

        generated_at = record.get("generatedAt")
        if not is_blank(generated_at) and parse_timestamp(generated_at) is None:
            self._add("generatedAt", "timestamp ISO-8601 inválido")

        rejection = record.get("previousRejection")
        if not is_blank(rejection) and not isinstance(rejection, bool):
            if str(rejection).strip() not in PREVIOUS_REJECTION_CODES:
                self._add("previousRejection", "debe ser N, S o X")

        refs = record.get("substitutedInvoiceRefs")
        if refs is not None:
            if not isinstance(refs, list):
                self._add("substitutedInvoiceRefs", "debe ser una lista")
            else:
                for i, ref in enumerate(refs):
                    self._validate_invoice_ref(ref, f"substitutedInvoiceRefs[{i}]")

    def _validate_totals_consistency(self, record: Mapping) -> None:
        lines = record.get("taxBreakdown")
        total_tax = to_decimal(record.get("totalTax"))
        total_amount = to_decimal(record.get("totalAmount"))
        if not isinstance(lines, list) or not lines or total_tax is None or total_amount is None:
            return

        bases = Decimal("0")
        quotas = Decimal("0")
        for line in lines:
            if not isinstance(line, Mapping):
                return
            base = to_decimal(line.get("taxableBase"))
            if base is None:
                return
            bases += base
            for key in ("taxQuota", "surchargeQuota"):
                value = line.get(key)
                if is_blank(value):
                    continue
                amount = to_decimal(value)
                if amount is None:
                    return
                quotas += amount

        if abs(total_tax - quotas) > self.tolerance:
            self._add("totalTax", f"no coincide con la suma de cuotas del desglose ({quotas})")
        if abs(total_amount - (bases + quotas)) > self.tolerance:
            self._add("totalAmount", f"no coincide con bases + cuotas del desglose ({bases + quotas})")


def validate_record(record: Any, *, check_totals: bool = True, tolerance: Optional[Decimal] = None) -> List[FieldError]:
    """Atajo: valida y devuelve la lista de FieldError (vacía si es válido)."""
    return RecordValidator(check_totals=check_totals, tolerance=tolerance).validate(record)
