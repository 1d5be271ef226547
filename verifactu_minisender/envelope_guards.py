from __future__ import annotations

from typing import List, Optional

from lxml import etree

from app.verifactu_client.xml_generator import SOAP11_NS, SUM1_NS, SUM_NS


REGISTRO_ALTA_ORDER = [
    "IDVersion",
    "IDFactura",
    "RefExterna",
    "NombreRazonEmisor",
    "Subsanacion",
    "RechazoPrevio",
    "TipoFactura",
    "TipoRectificativa",
    "FacturasRectificadas",
    "FacturasSustituidas",
    "ImporteRectificacion",
    "FechaOperacion",
    "DescripcionOperacion",
    "FacturaSimplificadaArt7273",
    "FacturaSinIdentifDestinatarioArt61d",
    "Macrodato",
    "EmitidaPorTerceroODestinatario",
    "Tercero",
    "Destinatarios",
    "Cupon",
    "Desglose",
    "CuotaTotal",
    "ImporteTotal",
    "Encadenamiento",
    "SistemaInformatico",
    "FechaHoraHusoGenRegistro",
    "TipoHuella",
    "Huella",
]

REGISTRO_ALTA_REQUIRED = [
    "IDVersion",
    "IDFactura",
    "NombreRazonEmisor",
    "TipoFactura",
    "Desglose",
    "CuotaTotal",
    "ImporteTotal",
    "Encadenamiento",
    "SistemaInformatico",
    "FechaHoraHusoGenRegistro",
    "TipoHuella",
    "Huella",
]


class EnvelopeGuardError(RuntimeError):
    pass


def _local(tag) -> str:
    if not isinstance(tag, str):
        return ""
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def _find_first_by_local(root: etree._Element, name: str) -> Optional[etree._Element]:
    for el in root.iter():
        if _local(el.tag) == name:
            return el
    return None


def _parse_xml(xml_bytes: bytes, *, context: str = "") -> etree._Element:
    try:
        return etree.fromstring(xml_bytes)
    except etree.XMLSyntaxError as e:
        raise EnvelopeGuardError(f"[envelope_guard] XML inválido (parse). {context} err={e}")


def _load_registro_alta(xml_bytes: bytes, *, context: str = "") -> etree._Element:
    root = _parse_xml(xml_bytes, context=context)
    alta = _find_first_by_local(root, "RegistroAlta")
    if alta is None:
        raise EnvelopeGuardError(f"[envelope_guard] No se encontró <RegistroAlta>. {context}")
    return alta


def assert_soap_envelope_structure(xml_bytes: bytes, *, context: str = "") -> None:
    """
    Envelope SOAP 1.1 -> Body -> sum:RegFactuSistemaFacturacion
    con hijos exactos: Cabecera, RegistroFactura.
    """
    root = _parse_xml(xml_bytes, context=context)
    if root.tag != f"{{{SOAP11_NS}}}Envelope":
        raise EnvelopeGuardError(f"[envelope_guard] Raíz no es soapenv:Envelope (SOAP 1.1): {root.tag!r}. {context}")

    body = next((c for c in root if c.tag == f"{{{SOAP11_NS}}}Body"), None)
    if body is None:
        raise EnvelopeGuardError(f"[envelope_guard] Envelope sin Body. {context}")

    payload = [c for c in body if isinstance(c.tag, str)]
    if len(payload) != 1 or payload[0].tag != f"{{{SUM_NS}}}RegFactuSistemaFacturacion":
        raise EnvelopeGuardError(
            "[envelope_guard] Body debe contener exactamente sum:RegFactuSistemaFacturacion.\n"
            f"  {context}\n"
            f"  actual: {[c.tag for c in payload]}"
        )

    children: List[str] = [_local(c.tag) for c in payload[0] if isinstance(c.tag, str)]
    if children != ["Cabecera", "RegistroFactura"]:
        raise EnvelopeGuardError(
            "[envelope_guard] Hijos de RegFactuSistemaFacturacion incorrectos.\n"
            f"  {context}\n"
            f"  actual:   {children}\n"
            f"  esperado: ['Cabecera', 'RegistroFactura']"
        )


def assert_registro_alta_order(xml_bytes: bytes, *, context: str = "") -> None:
    """Hijos de RegistroAlta en orden de esquema, sin desconocidos ni repetidos, obligatorios presentes."""
    alta = _load_registro_alta(xml_bytes, context=context)
    if etree.QName(alta).namespace != SUM1_NS:
        raise EnvelopeGuardError(f"[envelope_guard] Namespace de RegistroAlta inválido. {context}")

    children: List[str] = [_local(c.tag) for c in alta if isinstance(c.tag, str)]
    unknown = [c for c in children if c not in REGISTRO_ALTA_ORDER]
    if unknown:
        raise EnvelopeGuardError(f"[envelope_guard] Elementos desconocidos en RegistroAlta: {unknown}. {context}")

    positions = [REGISTRO_ALTA_ORDER.index(c) for c in children]
    if positions != sorted(positions) or len(set(positions)) != len(positions):
        raise EnvelopeGuardError(
            "[envelope_guard] Orden RegistroAlta incorrecto.\n"
            f"  {context}\n"
            f"  actual: {children}"
        )

    missing = [name for name in REGISTRO_ALTA_REQUIRED if name not in children]
    if missing:
        raise EnvelopeGuardError(f"[envelope_guard] Faltan elementos obligatorios en RegistroAlta: {missing}. {context}")


def assert_single_chain_variant(xml_bytes: bytes, *, context: str = "") -> None:
    alta = _load_registro_alta(xml_bytes, context=context)
    chain = next((c for c in alta if _local(c.tag) == "Encadenamiento"), None)
    if chain is None:
        raise EnvelopeGuardError(f"[envelope_guard] RegistroAlta sin Encadenamiento. {context}")

    variants = [_local(c.tag) for c in chain if isinstance(c.tag, str)]
    if variants not in (["PrimerRegistro"], ["RegistroAnterior"]):
        raise EnvelopeGuardError(
            f"[envelope_guard] Encadenamiento debe tener PrimerRegistro o RegistroAnterior (uno solo): {variants}. {context}"
        )


def assert_no_empty_elements(xml_bytes: bytes, *, context: str = "") -> None:
    alta = _load_registro_alta(xml_bytes, context=context)
    empty = [
        _local(el.tag)
        for el in alta.iter()
        if isinstance(el.tag, str) and len(el) == 0 and not (el.text or "").strip()
    ]
    if empty:
        raise EnvelopeGuardError(f"[envelope_guard] Elementos vacíos en RegistroAlta: {empty}. {context}")


def run_envelope_guardrails(xml_bytes: bytes, *, context: str = "") -> None:
    """Guardrails estructurales (no muta el XML). Lanza EnvelopeGuardError si falla alguno."""
    assert_soap_envelope_structure(xml_bytes, context=context)
    assert_registro_alta_order(xml_bytes, context=context)
    assert_single_chain_variant(xml_bytes, context=context)
    assert_no_empty_elements(xml_bytes, context=context)
