"""
Generador de XML para RegistroAlta VeriFactu (SOAP 1.1)

Construye el árbol con lxml (el escape de texto lo hace la librería) en el
orden exacto que exige SuministroInformacion.xsd. Los elementos opcionales
sin valor se omiten: la AEAT trata distinto un tag vacío que uno ausente.
"""
import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional, Union

from lxml import etree

from .exceptions import VerifactuValidationError
from .models import ChainedTo, ChainLink, FirstInChain, InvoiceId, InvoiceRegistrationRecord, Party
from .utils import fmt_amount, fmt_date, fmt_flag, fmt_timestamp

logger = logging.getLogger(__name__)

SOAP11_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SUM_NS = (
    "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/"
    "aplicaciones/es/aeat/tike/cont/ws/SuministroLR.xsd"
)
SUM1_NS = (
    "https://www2.agenciatributaria.gob.es/static_files/common/internet/dep/"
    "aplicaciones/es/aeat/tike/cont/ws/SuministroInformacion.xsd"
)
NSMAP = {"soapenv": SOAP11_NS, "sum": SUM_NS, "sum1": SUM1_NS}

_ENVELOPE_START_RE = re.compile(
    r"^\ufeff?\s*(?:<\?xml[^>]*\?>\s*)?(?:<!--.*?-->\s*)*<(?:[A-Za-z_][\w.-]*:)?Envelope\b",
    re.DOTALL,
)


def _el(parent: etree._Element, ns: str, name: str, text: Optional[str] = None) -> etree._Element:
    child = etree.SubElement(parent, etree.QName(ns, name))
    if text is not None:
        child.text = text
    return child


def _sum1(parent: etree._Element, name: str, text: Optional[str] = None) -> etree._Element:
    return _el(parent, SUM1_NS, name, text)


def _opt_text(parent: etree._Element, name: str, value: Optional[str]) -> None:
    if value:
        _sum1(parent, name, value)


def _opt_amount(parent: etree._Element, name: str, value: Any) -> None:
    if value is not None:
        _sum1(parent, name, fmt_amount(value))


def _opt_flag(parent: etree._Element, name: str, value: Optional[bool]) -> None:
    if value is not None:
        _sum1(parent, name, fmt_flag(value))


def _soap_skeleton() -> tuple:
    envelope = etree.Element(etree.QName(SOAP11_NS, "Envelope"), nsmap=NSMAP)
    etree.SubElement(envelope, etree.QName(SOAP11_NS, "Header"))
    body = etree.SubElement(envelope, etree.QName(SOAP11_NS, "Body"))
    return envelope, body


def _to_text(root: etree._Element) -> str:
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8").decode("utf-8")


def is_soap_envelope(xml: Union[str, bytes]) -> bool:
    """True si el texto ya empieza (tras espacios/declaración) por un <Envelope>."""
    if isinstance(xml, bytes):
        xml = xml.decode("utf-8", errors="replace")
    return bool(_ENVELOPE_START_RE.match(xml or ""))


def wrap_soap_envelope(xml: Union[str, bytes]) -> str:
    """
    Envuelve un fragmento XML en el Envelope SOAP 1.1 de VeriFactu.

    Si el caller ya envió un Envelope completo se devuelve tal cual.

    Raises:
        VerifactuValidationError: si el fragmento no es UTF-8 o no es XML bien formado
    """
    if isinstance(xml, bytes):
        try:
            text = xml.decode("utf-8")
        except UnicodeDecodeError as e:
            raise VerifactuValidationError(f"XML no es UTF-8 válido: {e}", code="xml") from e
    else:
        text = xml or ""
    if is_soap_envelope(text):
        return text

    stripped = text.strip().lstrip("\ufeff")
    if not stripped:
        raise VerifactuValidationError("XML vacío", code="xml")
    try:
        fragment = etree.fromstring(stripped.encode("utf-8"))
    except etree.XMLSyntaxError as e:
        raise VerifactuValidationError(f"XML inválido (parse): {e}", code="xml") from e

    envelope, body = _soap_skeleton()
    body.append(fragment)
    return _to_text(envelope)


class EnvelopeBuilder:
    """
    Serializa un InvoiceRegistrationRecord ya validado y con cadena resuelta.

    Args:
        now: proveedor de la hora actual (para FechaHoraHusoGenRegistro
            cuando el registro no trae generatedAt)
    """

    def __init__(self, now=None):
        self._now = now or (lambda: datetime.now(timezone.utc))

    def build(self, record: InvoiceRegistrationRecord, link: ChainLink) -> str:
        envelope, body = _soap_skeleton()
        reg = _el(body, SUM_NS, "RegFactuSistemaFacturacion")

        cabecera = _el(reg, SUM_NS, "Cabecera")
        obligado = _sum1(cabecera, "ObligadoEmision")
        _sum1(obligado, "NombreRazon", record.issuer_name)
        _sum1(obligado, "NIF", record.issuer_tax_id)

        registro = _el(reg, SUM_NS, "RegistroFactura")
        self._build_registro_alta(_sum1(registro, "RegistroAlta"), record, link)

        xml = _to_text(envelope)
        logger.debug(
            f"RegistroAlta generado: {record.invoice_id.series_number} ({len(xml.encode('utf-8'))} bytes)"
        )
        return xml

    def _build_registro_alta(self, alta: etree._Element, record: InvoiceRegistrationRecord, link: ChainLink) -> None:
        _sum1(alta, "IDVersion", record.version)
        self._invoice_id(alta, "IDFactura", record.invoice_id)
        _opt_text(alta, "RefExterna", record.external_ref)
        _sum1(alta, "NombreRazonEmisor", record.issuer_name)
        _opt_flag(alta, "Subsanacion", record.remedy)
        _opt_text(alta, "RechazoPrevio", record.previous_rejection)
        _sum1(alta, "TipoFactura", record.invoice_type)

        if record.is_corrective:
            _opt_text(alta, "TipoRectificativa", record.corrective_type)
            if record.corrected_invoices:
                rectificadas = _sum1(alta, "FacturasRectificadas")
                for ref in record.corrected_invoices:
                    self._invoice_id(rectificadas, "IDFacturaRectificada", ref)

        if record.substituted_invoices:
            sustituidas = _sum1(alta, "FacturasSustituidas")
            for ref in record.substituted_invoices:
                self._invoice_id(sustituidas, "IDFacturaSustituida", ref)

        if record.correction_amount is not None and record.corrective_type == "S":
            importe = _sum1(alta, "ImporteRectificacion")
            _sum1(importe, "BaseRectificada", fmt_amount(record.correction_amount.base))
            _sum1(importe, "CuotaRectificada", fmt_amount(record.correction_amount.quota))
            _opt_amount(importe, "CuotaRecargoRectificado", record.correction_amount.surcharge)

        if record.operation_date is not None:
            _sum1(alta, "FechaOperacion", fmt_date(record.operation_date))
        _opt_text(alta, "DescripcionOperacion", record.operation_description)
        _opt_flag(alta, "FacturaSimplificadaArt7273", record.simplified_invoice)
        _opt_flag(alta, "FacturaSinIdentifDestinatarioArt61d", record.no_recipient_id)
        _opt_flag(alta, "Macrodato", record.macro_data)

        if record.third_party_issuance:
            _sum1(alta, "EmitidaPorTerceroODestinatario", record.third_party_issuance)
            if record.third_party is not None:
                self._party(_sum1(alta, "Tercero"), record.third_party)

        destinatarios = _sum1(alta, "Destinatarios")
        for recipient in record.recipients:
            self._party(_sum1(destinatarios, "IDDestinatario"), recipient)

        _opt_flag(alta, "Cupon", record.coupon)

        desglose = _sum1(alta, "Desglose")
        for line in record.tax_breakdown:
            detalle = _sum1(desglose, "DetalleDesglose")
            _sum1(detalle, "Impuesto", line.tax_kind)
            _opt_text(detalle, "ClaveRegimen", line.regime_key)
            if line.operation_qualification:
                _sum1(detalle, "CalificacionOperacion", line.operation_qualification)
            else:
                _sum1(detalle, "OperacionExenta", line.exemption_code)
            _opt_amount(detalle, "TipoImpositivo", line.tax_rate)
            _sum1(detalle, "BaseImponibleOimporteNoSujeto", fmt_amount(line.taxable_base))
            _opt_amount(detalle, "BaseImponibleACoste", line.cost_base)
            _opt_amount(detalle, "CuotaRepercutida", line.tax_quota)
            _opt_amount(detalle, "TipoRecargoEquivalencia", line.surcharge_rate)
            _opt_amount(detalle, "CuotaRecargoEquivalencia", line.surcharge_quota)

        _sum1(alta, "CuotaTotal", fmt_amount(record.total_tax))
        _sum1(alta, "ImporteTotal", fmt_amount(record.total_amount))

        self._chain(_sum1(alta, "Encadenamiento"), link)
        self._system(_sum1(alta, "SistemaInformatico"), record)

        generated_at = record.generated_at or self._now()
        if generated_at.tzinfo is None:
            generated_at = generated_at.replace(tzinfo=timezone.utc)
        _sum1(alta, "FechaHoraHusoGenRegistro", fmt_timestamp(generated_at))
        _sum1(alta, "TipoHuella", record.hash_algorithm)
        _sum1(alta, "Huella", record.hash)

    def _invoice_id(self, parent: etree._Element, name: str, invoice_id: InvoiceId) -> None:
        node = _sum1(parent, name)
        _sum1(node, "IDEmisorFactura", invoice_id.issuer_tax_id)
        _sum1(node, "NumSerieFactura", invoice_id.series_number)
        _sum1(node, "FechaExpedicionFactura", fmt_date(invoice_id.issue_date))

    def _party(self, node: etree._Element, party: Party) -> None:
        _sum1(node, "NombreRazon", party.name)
        if party.foreign_id is not None:
            otro = _sum1(node, "IDOtro")
            _sum1(otro, "CodigoPais", party.foreign_id.country_code)
            _sum1(otro, "IDType", party.foreign_id.id_type)
            _sum1(otro, "ID", party.foreign_id.id)
        else:
            _sum1(node, "NIF", party.tax_id)

    def _chain(self, node: etree._Element, link: ChainLink) -> None:
        if isinstance(link, FirstInChain):
            _sum1(node, "PrimerRegistro", "S")
            return
        if not isinstance(link, ChainedTo):
            raise TypeError(f"ChainLink desconocido: {type(link).__name__}")
        anterior = _sum1(node, "RegistroAnterior")
        _sum1(anterior, "IDEmisorFactura", link.previous.issuer_tax_id)
        _sum1(anterior, "NumSerieFactura", link.previous.series_number)
        _sum1(anterior, "FechaExpedicionFactura", fmt_date(link.previous.issue_date))
        _sum1(anterior, "Huella", link.previous.hash)

    def _system(self, node: etree._Element, record: InvoiceRegistrationRecord) -> None:
        system = record.system
        _sum1(node, "NombreRazon", system.vendor_name)
        _sum1(node, "NIF", system.vendor_tax_id)
        _sum1(node, "NombreSistemaInformatico", system.name)
        _sum1(node, "IdSistemaInformatico", system.id)
        _sum1(node, "Version", system.version)
        _sum1(node, "NumeroInstalacion", system.installation_number)
        _sum1(node, "TipoUsoPosibleSoloVerifactu", fmt_flag(system.only_verifactu))
        _sum1(node, "TipoUsoPosibleMultiOT", fmt_flag(system.multi_taxpayer))
        _sum1(node, "IndicadorMultiplesOT", fmt_flag(system.multiple_taxpayers))


def build_envelope(record: InvoiceRegistrationRecord, link: ChainLink, *, now: Optional[datetime] = None) -> str:
    """Atajo funcional sobre EnvelopeBuilder.build."""
    builder = EnvelopeBuilder(now=(lambda: now) if now is not None else None)
    return builder.build(record, link)
