"""
Configuración para cliente VeriFactu (AEAT)

TransportConfig se carga una vez al arrancar el proceso y se pasa
explícitamente a cada envío. Es inmutable: varios envíos concurrentes pueden
compartirla sin coordinación.
"""
import base64
import binascii
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from dotenv import load_dotenv

from .exceptions import ConfigError

load_dotenv()

logger = logging.getLogger(__name__)

VERIFACTU_PATH = "/wlpl/TIKE-CONT/ws/SistemaFacturacion/VerifactuSOAP"

ENDPOINTS: Dict[str, Dict[str, str]] = {
    "test": {
        "host": "prewww1.aeat.es",
        "seal_host": "prewww10.aeat.es",
    },
    "prod": {
        "host": "www1.agenciatributaria.gob.es",
        "seal_host": "www10.agenciatributaria.gob.es",
    },
}

DEFAULT_TIMEOUT = 30.0
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_PREVIEW_CHARS = 2000


def _env(environ: Mapping[str, str], key: str) -> Optional[str]:
    value = (environ.get(key) or "").strip()
    return value or None


def _env_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = _env(environ, key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{key} debe ser numérico (segundos), recibido: {raw!r}")
    if value <= 0:
        raise ConfigError(f"{key} debe ser > 0, recibido: {raw!r}")
    return value


def _env_bool(environ: Mapping[str, str], key: str, default: bool = False) -> bool:
    raw = _env(environ, key)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes", "s", "si", "sí")


def normalize_env(env: Optional[str]) -> str:
    env_norm = (env or "test").strip().lower()
    if env_norm in ("pre", "preprod", "homologacion", "sandbox"):
        env_norm = "test"
    if env_norm in ("production", "produccion", "producción"):
        env_norm = "prod"
    if env_norm not in ENDPOINTS:
        raise ConfigError(f"VERIFACTU_ENV inválido: {env!r}. Usar 'test' o 'prod'.")
    return env_norm


@dataclass(frozen=True)
class TransportConfig:
    """Parámetros de conexión mTLS hacia la AEAT."""
    cert_bytes: bytes = b""
    passphrase: str = field(default="", repr=False)
    host: str = ENDPOINTS["test"]["host"]
    path: str = VERIFACTU_PATH
    timeout: float = DEFAULT_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    verify: Union[bool, str] = True
    env: str = "test"
    dump_http: bool = False
    artifacts_dir: Optional[str] = None

    def __repr__(self) -> str:
        return (
            f"TransportConfig(env={self.env!r}, url={self.url!r}, "
            f"cert_bytes=<{len(self.cert_bytes)} bytes>, timeout={self.timeout})"
        )

    @property
    def url(self) -> str:
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"https://{self.host}{path}"


def _read_certificate(environ: Mapping[str, str]) -> bytes:
    cert_b64 = _env(environ, "VERIFACTU_CERT_BASE64")
    if cert_b64:
        try:
            return base64.b64decode("".join(cert_b64.split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigError(f"VERIFACTU_CERT_BASE64 no es base64 válido: {e}")

    cert_path = _env(environ, "VERIFACTU_CERT_PATH")
    if not cert_path:
        logger.warning("Sin certificado configurado (VERIFACTU_CERT_PATH / VERIFACTU_CERT_BASE64): los envíos fallarán")
        return b""

    p = Path(cert_path).expanduser()
    if not p.exists():
        raise ConfigError(f"Certificado no encontrado: {cert_path}")
    if not p.is_file():
        raise ConfigError(f"La ruta del certificado no es un archivo: {cert_path}")
    if p.suffix.lower() not in (".p12", ".pfx"):
        logger.warning(f"Extensión inusual para certificado PKCS#12: {p.suffix}")
    try:
        return p.read_bytes()
    except OSError as e:
        raise ConfigError(f"No se pudo leer el certificado {p.name}: {e}")


def load_transport_config(env: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> TransportConfig:
    """
    Carga TransportConfig desde variables de entorno (y .env vía python-dotenv).

    Variables:
        VERIFACTU_ENV: test | prod (default test)
        VERIFACTU_CERT_PATH o VERIFACTU_CERT_BASE64: certificado PKCS#12
        VERIFACTU_CERT_PASSWORD: contraseña del certificado
        VERIFACTU_SEAL_CERT: 1 para usar los hosts de certificado de sello
        VERIFACTU_HOST / VERIFACTU_PATH: override del endpoint
        VERIFACTU_TIMEOUT / VERIFACTU_CONNECT_TIMEOUT: segundos
        VERIFACTU_CA_BUNDLE_PATH: bundle CA alternativo
        VERIFACTU_DUMP_HTTP / VERIFACTU_ARTIFACTS_DIR: volcado de request/response

    Raises:
        ConfigError: valores presentes pero inválidos (ruta inexistente,
            base64 corrupto, timeout no numérico, env desconocido)
    """
    environ = os.environ if environ is None else environ
    env_norm = normalize_env(env or _env(environ, "VERIFACTU_ENV"))

    endpoint = ENDPOINTS[env_norm]
    default_host = endpoint["seal_host"] if _env_bool(environ, "VERIFACTU_SEAL_CERT") else endpoint["host"]

    ca_bundle = _env(environ, "VERIFACTU_CA_BUNDLE_PATH")
    if ca_bundle and not Path(ca_bundle).expanduser().exists():
        raise ConfigError(f"CA bundle no encontrado: {ca_bundle}")

    config = TransportConfig(
        cert_bytes=_read_certificate(environ),
        passphrase=_env(environ, "VERIFACTU_CERT_PASSWORD") or "",
        host=_env(environ, "VERIFACTU_HOST") or default_host,
        path=_env(environ, "VERIFACTU_PATH") or VERIFACTU_PATH,
        timeout=_env_float(environ, "VERIFACTU_TIMEOUT", DEFAULT_TIMEOUT),
        connect_timeout=_env_float(environ, "VERIFACTU_CONNECT_TIMEOUT", DEFAULT_CONNECT_TIMEOUT),
        verify=str(Path(ca_bundle).expanduser()) if ca_bundle else True,
        env=env_norm,
        dump_http=_env_bool(environ, "VERIFACTU_DUMP_HTTP"),
        artifacts_dir=_env(environ, "VERIFACTU_ARTIFACTS_DIR"),
    )
    logger.info(f"Config VeriFactu cargada: env={config.env} endpoint={config.url}")
    return config


def get_totals_tolerance(environ: Optional[Mapping[str, str]] = None) -> Decimal:
    environ = os.environ if environ is None else environ
    raw = _env(environ, "VERIFACTU_TOTALS_TOLERANCE")
    if raw is None:
        return Decimal("0.01")
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise ConfigError(f"VERIFACTU_TOTALS_TOLERANCE inválido: {raw!r}")


def get_preview_chars(environ: Optional[Mapping[str, str]] = None) -> int:
    environ = os.environ if environ is None else environ
    raw = _env(environ, "VERIFACTU_RESPONSE_PREVIEW_CHARS")
    if raw is None:
        return DEFAULT_PREVIEW_CHARS
    try:
        return max(0, int(raw))
    except ValueError:
        raise ConfigError(f"VERIFACTU_RESPONSE_PREVIEW_CHARS inválido: {raw!r}")
