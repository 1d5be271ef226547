"""
Resolución del encadenamiento (Encadenamiento) de un RegistroAlta.

Un registro es primero de la cadena (PrimerRegistro=S) o referencia al
registro inmediatamente anterior con sus cuatro campos completos. Cualquier
otra forma se rechaza: la AEAT usa la cadena para detectar huecos.
"""
from typing import Any, Mapping, Union

from .exceptions import ChainError
from .models import ChainedTo, ChainLink, ChainBlock, FirstInChain, InvoiceRegistrationRecord, PreviousRecord
from .utils import clean_text, parse_date

_PREVIOUS_FIELDS = ("issuerTaxId", "seriesNumber", "issueDate", "hash")


def resolve_chain(record: Union[InvoiceRegistrationRecord, Mapping[str, Any]]) -> ChainLink:
    """
    Devuelve FirstInChain o ChainedTo.

    Acepta el registro tipado o el dict crudo. Si `chain.isFirst` es verdadero
    se ignora `previous`.

    Raises:
        ChainError: bloque ausente, vacío o `previous` incompleto
    """
    if isinstance(record, InvoiceRegistrationRecord):
        block = record.chain
    elif isinstance(record, Mapping):
        block = ChainBlock.from_raw(record.get("chain"))
    else:
        block = None

    if block is None:
        raise ChainError("chain", "falta el bloque chain (isFirst o previous)")

    if block.is_first:
        return FirstInChain()

    previous = block.previous
    if previous is None:
        raise ChainError("chain", "chain debe indicar isFirst=true o previous")

    values = {key: clean_text(previous.get(key)) for key in _PREVIOUS_FIELDS}
    if not isinstance(previous.get("issueDate"), str) and previous.get("issueDate") is not None:
        # date/datetime ya tipados
        values["issueDate"] = previous.get("issueDate")

    missing = [key for key in _PREVIOUS_FIELDS if values[key] is None]
    if missing:
        raise ChainError(
            f"chain.previous.{missing[0]}",
            "registro anterior incompleto, faltan: " + ", ".join(f"chain.previous.{k}" for k in missing),
        )

    issue_date = parse_date(values["issueDate"])
    if issue_date is None:
        raise ChainError("chain.previous.issueDate", f"fecha inválida: {values['issueDate']!r}")

    return ChainedTo(
        PreviousRecord(
            issuer_tax_id=values["issuerTaxId"],
            series_number=values["seriesNumber"],
            issue_date=issue_date,
            hash=values["hash"],
        )
    )
