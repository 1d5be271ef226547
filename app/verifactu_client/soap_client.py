"""
Cliente SOAP 1.1 (mTLS) para el servicio VeriFactu de la AEAT

Un envío = una Session nueva, un POST y cierre. Sin reintentos: los errores
transitorios (red, timeout) se reportan tipados y el reintento, si lo hay,
es cosa del caller.
"""
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Union

import requests
from lxml import etree
from urllib3.exceptions import ReadTimeoutError

from .artifacts import make_run_dir, persist_http_exchange
from .config import TransportConfig
from .exceptions import ConfigError, NetworkError, TransportTimeoutError
from .models import TransportResult
from .pkcs12_utils import PKCS12Error, cleanup_pem_files, p12_to_temp_pem_files

logger = logging.getLogger(__name__)

SOAP11_CONTENT_TYPE = "text/xml; charset=utf-8"
# urllib3 read(amt) bloquea hasta reunir amt bytes: se lee de a uno para poder cortar en el deadline
_BODY_CHUNK = 1


def soap_headers(body: bytes) -> Dict[str, str]:
    """Headers SOAP 1.1: SOAPAction vacío y Content-Length en bytes UTF-8."""
    return {
        "Content-Type": SOAP11_CONTENT_TYPE,
        "SOAPAction": "",
        "Content-Length": str(len(body)),
        "Accept": "text/xml, */*",
    }


def _iter_body(resp: Any) -> Iterator[bytes]:
    """iter_content del body; un timeout de lectura a mitad del body se reporta como ReadTimeout."""
    try:
        yield from resp.iter_content(chunk_size=_BODY_CHUNK)
    except requests.exceptions.ConnectionError as e:
        if e.args and isinstance(e.args[0], ReadTimeoutError):
            raise requests.exceptions.ReadTimeout(e) from e
        raise


class AeatTransport:
    """
    Transporte mTLS hacia VeriFactu.

    Args:
        session_factory: callable que devuelve un requests.Session (inyectable en tests)
    """

    def __init__(self, session_factory: Optional[Callable[[], Any]] = None):
        self.session_factory = session_factory or requests.Session

    def send(self, xml: Union[str, bytes], config: TransportConfig, *, label: Optional[str] = None) -> TransportResult:
        """
        POST del envelope y devuelve status + body tal cual.

        Raises:
            ConfigError: certificado/contraseña ausentes o inutilizables (no se toca la red)
            NetworkError: DNS, conexión rechazada, handshake TLS, timeout de conexión
            TransportTimeoutError: respuesta no completada dentro de config.timeout
                (plazo total de reloj, no por lectura de socket)
        """
        if not config.cert_bytes:
            raise ConfigError("Falta el certificado cliente (VERIFACTU_CERT_PATH o VERIFACTU_CERT_BASE64)")
        if not config.passphrase:
            raise ConfigError("Falta la contraseña del certificado (VERIFACTU_CERT_PASSWORD)")

        body = xml.encode("utf-8") if isinstance(xml, str) else xml
        headers = soap_headers(body)

        try:
            cert_path, key_path = p12_to_temp_pem_files(config.cert_bytes, config.passphrase)
        except PKCS12Error as e:
            raise ConfigError(f"Certificado inutilizable: {e}") from e

        url = config.url
        started = time.monotonic()
        deadline = started + config.timeout
        session = None
        resp = None
        content: Optional[bytes] = None
        error_message: Optional[str] = None
        logger.info(f"Enviando SOAP a endpoint: {url} ({len(body)} bytes)")
        try:
            session = self.session_factory()
            resp = session.post(
                url,
                data=body,
                headers=headers,
                cert=(cert_path, key_path),
                verify=config.verify,
                timeout=(config.connect_timeout, config.timeout),
                stream=True,
            )
            chunks = []
            for chunk in _iter_body(resp):
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    error_message = f"Respuesta de la AEAT no completada en {config.timeout}s"
                    raise TransportTimeoutError(error_message, timeout=config.timeout)
            content = b"".join(chunks)
        except requests.exceptions.ConnectTimeout as e:
            error_message = f"Timeout de conexión ({config.connect_timeout}s) hacia {config.host}"
            raise NetworkError(error_message, cause=e) from e
        except requests.exceptions.ReadTimeout as e:
            error_message = f"Sin respuesta de la AEAT en {config.timeout}s"
            raise TransportTimeoutError(error_message, timeout=config.timeout) from e
        except requests.exceptions.SSLError as e:
            error_message = f"Fallo TLS con {config.host}: {e}"
            raise NetworkError(error_message, cause=e) from e
        except requests.exceptions.ConnectionError as e:
            error_message = f"No se pudo conectar con {config.host}: {e}"
            raise NetworkError(error_message, cause=e) from e
        except requests.exceptions.Timeout as e:
            error_message = f"Timeout hacia {config.host}"
            raise TransportTimeoutError(error_message, timeout=config.timeout) from e
        except requests.exceptions.RequestException as e:
            error_message = f"Error HTTP hacia {config.host}: {e}"
            raise NetworkError(error_message, cause=e) from e
        finally:
            elapsed = time.monotonic() - started
            try:
                if resp is not None:
                    resp.close()
                if session is not None:
                    session.close()
            finally:
                cleanup_pem_files(cert_path, key_path)
            if error_message:
                logger.warning(f"Envío fallido tras {elapsed:.2f}s: {error_message}")
            if config.dump_http:
                self._dump(config, label, headers, body, resp, content, elapsed, error_message)

        body_text = content.decode("utf-8", errors="replace") if content else ""
        logger.info(f"Respuesta AEAT: HTTP {resp.status_code} en {elapsed:.2f}s")
        return TransportResult(
            status_code=resp.status_code,
            body_text=body_text,
            elapsed_s=elapsed,
            url=url,
            headers=dict(resp.headers or {}),
        )

    def _dump(
        self,
        config: TransportConfig,
        label: Optional[str],
        headers: Dict[str, str],
        body: bytes,
        resp: Any,
        content: Optional[bytes],
        elapsed: float,
        error_message: Optional[str],
    ) -> None:
        try:
            run_dir = make_run_dir("send", config.env, series_number=label, artifacts_dir=config.artifacts_dir)
        except OSError as exc:
            logger.warning(f"No se pudo crear directorio de artifacts: {exc}")
            return
        persist_http_exchange(
            run_dir,
            url=config.url,
            headers=headers,
            request_body=body,
            response_status=resp.status_code if resp is not None else None,
            response_headers=dict(resp.headers) if resp is not None else None,
            response_body=content,
            elapsed_s=elapsed,
            error_message=error_message,
        )
        logger.info(f"Artifacts HTTP guardados en: {Path(run_dir).name}")


def summarize_response(body_text: str) -> Dict[str, Any]:
    """
    Extrae campos clave de la respuesta SOAP de la AEAT (best effort).

    No forma parte del contrato de transporte: solo para logs y para la
    respuesta del front door. Nunca lanza.
    """
    result: Dict[str, Any] = {
        "estado_envio": None,
        "estado_registro": None,
        "codigo_error": None,
        "descripcion_error": None,
        "csv": None,
        "fault": None,
    }
    if not body_text or not body_text.strip():
        return result
    try:
        root = etree.fromstring(body_text.strip().encode("utf-8"))
    except etree.XMLSyntaxError:
        return result

    def find_text(name: str) -> Optional[str]:
        nodes = root.xpath(f'//*[local-name()="{name}"]')
        if nodes:
            val = nodes[0].text
            return val.strip() if val else None
        return None

    # Busca por local-name para tolerar prefijos
    result["estado_envio"] = find_text("EstadoEnvio")
    result["estado_registro"] = find_text("EstadoRegistro")
    result["codigo_error"] = find_text("CodigoErrorRegistro")
    result["descripcion_error"] = find_text("DescripcionErrorRegistro")
    result["csv"] = find_text("CSV")
    result["fault"] = find_text("faultstring")
    return result
