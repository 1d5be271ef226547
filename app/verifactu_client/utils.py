"""
Utilidades de formato para VeriFactu (importes, fechas, flags)
"""
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from typing import Any, Optional

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_WIRE_DATE_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")
# Caracteres no admitidos por XML 1.0
_XML_ILLEGAL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")

AMOUNT_INTEGER_DIGITS = 12

_TRUE_TOKENS = {"s", "si", "sí", "true", "1", "yes", "y"}
_FALSE_TOKENS = {"n", "no", "false", "0"}


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def clean_text(value: Any) -> Optional[str]:
    """Devuelve el texto sin espacios extremos, o None si está vacío."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def to_decimal(value: Any) -> Optional[Decimal]:
    """
    Convierte números o strings numéricos a Decimal.

    Acepta separador decimal "," y separador de miles. Devuelve None si el
    valor no es numérico (nunca lanza).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        d = Decimal(str(value))
        return d if d.is_finite() else None
    raw = str(value).strip()
    if not raw:
        return None
    if not re.fullmatch(r"[+-]?[\d.,]+", raw):
        return None
    cleaned = raw
    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "")
            cleaned = cleaned.replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")
    try:
        d = Decimal(cleaned)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def fmt_amount(value: Any, places: int = 2) -> str:
    """Importe/porcentaje con dos decimales fijos, redondeo half-up (lejos de cero)."""
    d = to_decimal(value)
    if d is None:
        raise ValueError(f"Importe no numérico: {value!r}")
    q = Decimal("1." + ("0" * places))
    with localcontext() as ctx:
        ctx.prec = max(ctx.prec, d.adjusted() + places + 2)
        out = d.quantize(q, rounding=ROUND_HALF_UP)
        if out == 0:
            out = abs(out)
    return str(out)


def amount_fits(value: Decimal, integer_digits: int = AMOUNT_INTEGER_DIGITS) -> bool:
    """True si el importe cabe en `integer_digits` dígitos enteros (formato AEAT 12,2)."""
    return abs(value) < Decimal(10) ** integer_digits


def has_illegal_xml_chars(value: Any) -> bool:
    return isinstance(value, str) and _XML_ILLEGAL_RE.search(value) is not None


def parse_date(value: Any) -> Optional[date]:
    """Acepta date/datetime, 'YYYY-MM-DD' o 'DD-MM-YYYY'. None si no parsea."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    m = _ISO_DATE_RE.match(raw)
    try:
        if m:
            return date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        m = _WIRE_DATE_RE.match(raw)
        if m:
            return date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
    except ValueError:
        return None
    return None


def fmt_date(value: Any) -> str:
    """Fecha en formato de la AEAT: DD-MM-YYYY."""
    d = parse_date(value)
    if d is None:
        raise ValueError(f"Fecha inválida: {value!r}")
    return d.strftime("%d-%m-%Y")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def fmt_timestamp(value: datetime) -> str:
    """ISO-8601 con huso horario, sin fracciones de segundo."""
    return value.replace(microsecond=0).isoformat()


def parse_flag(value: Any) -> Optional[bool]:
    """bool, 'S'/'N', 'true'/'false'... -> bool. None si no es interpretable."""
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    if isinstance(value, int):
        if value in (0, 1):
            return bool(value)
        return None
    token = str(value).strip().lower()
    if token in _TRUE_TOKENS:
        return True
    if token in _FALSE_TOKENS:
        return False
    return None


def fmt_flag(value: bool) -> str:
    return "S" if value else "N"
