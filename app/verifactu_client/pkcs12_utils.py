"""
Utilidades para conversión de certificados PKCS#12 (P12/PFX) a PEM temporales

requests/urllib3 no aceptan P12 directamente en `cert=`: el P12 (bytes en
TransportConfig) sigue siendo la fuente de verdad y los PEM se escriben en
archivos temporales con permisos 600, que se borran al terminar cada envío.

NOTA: Fallback a OpenSSL con -legacy
-------------------------------------
Algunos certificados emitidos por la FNMT usan algoritmos legacy
(pbeWithSHA1And3-KeyTripleDES-CBC / RC2) que cryptography no carga con
OpenSSL 3.x. En ese caso se usa el binario `openssl` con `-legacy`.
"""
import logging
import os
import shutil
import subprocess
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

logger = logging.getLogger(__name__)

_PASS_ENV_VAR = "VERIFACTU_P12_PASS_TMP"


class PKCS12Error(Exception):
    """Excepción para errores en conversión PKCS#12"""
    pass


def _find_openssl_binary() -> Optional[str]:
    homebrew_openssl = "/opt/homebrew/bin/openssl"
    if os.path.exists(homebrew_openssl) and os.access(homebrew_openssl, os.X_OK):
        return homebrew_openssl
    return shutil.which("openssl")


def _mkstemp(prefix: str, suffix: str = ".pem") -> str:
    fd, path = tempfile.mkstemp(suffix=suffix, prefix=prefix)
    os.close(fd)
    os.chmod(path, 0o600)
    return path


def _unlink_quietly(paths: List[str]) -> None:
    for path in paths:
        try:
            if path and os.path.exists(path):
                os.unlink(path)
        except OSError as e:
            logger.warning(f"No se pudo eliminar archivo temporal {Path(path).name}: {e}")


def check_certificate_validity(certificate: x509.Certificate, now: Optional[datetime] = None) -> None:
    """
    Raises:
        PKCS12Error: si el certificado está expirado o aún no es válido
    """
    now = now or datetime.now(timezone.utc)
    not_after = certificate.not_valid_after_utc
    not_before = certificate.not_valid_before_utc
    if now > not_after:
        raise PKCS12Error(f"Certificado expirado el {not_after.date().isoformat()}")
    if now < not_before:
        raise PKCS12Error(f"Certificado aún no válido (desde {not_before.date().isoformat()})")


def _openssl_extract(openssl_bin: str, p12_path: str, out_path: str, passphrase: str, *parts: str) -> None:
    env = os.environ.copy()
    env[_PASS_ENV_VAR] = passphrase
    cmd = [openssl_bin, "pkcs12", "-legacy", "-in", p12_path, *parts, "-out", out_path, "-passin", f"env:{_PASS_ENV_VAR}"]
    result = subprocess.run(cmd, env=env, capture_output=True, text=True, timeout=30)
    if result.returncode != 0:
        # NO incluir la contraseña en el error
        error_output = result.stderr or result.stdout or "Sin salida"
        raise PKCS12Error(f"OpenSSL falló ({' '.join(parts)}): {error_output[:500]}")


def _p12_to_pem_openssl_fallback(p12_data: bytes, passphrase: str, cert_pem_path: str, key_pem_path: str) -> None:
    """Convierte con `openssl pkcs12 -legacy` cuando cryptography no puede."""
    openssl_bin = _find_openssl_binary()
    if not openssl_bin:
        raise PKCS12Error("OpenSSL no encontrado en el sistema (necesario para P12 con algoritmos legacy)")

    p12_path = _mkstemp("verifactu_p12_", ".p12")
    try:
        Path(p12_path).write_bytes(p12_data)
        _openssl_extract(openssl_bin, p12_path, cert_pem_path, passphrase, "-clcerts", "-nokeys")
        _openssl_extract(openssl_bin, p12_path, key_pem_path, passphrase, "-nocerts", "-nodes")
    finally:
        _unlink_quietly([p12_path])

    cert_content = Path(cert_pem_path).read_bytes()
    if b"BEGIN CERTIFICATE" not in cert_content:
        raise PKCS12Error("El PEM generado por OpenSSL no contiene 'BEGIN CERTIFICATE'")
    key_content = Path(key_pem_path).read_bytes()
    if b"PRIVATE KEY" not in key_content:
        raise PKCS12Error("El PEM generado por OpenSSL no contiene una clave privada")

    try:
        certificate = x509.load_pem_x509_certificate(cert_content)
    except ValueError as e:
        raise PKCS12Error(f"Certificado PEM ilegible tras OpenSSL: {e}") from e
    check_certificate_validity(certificate)
    logger.info("Certificado P12 convertido a PEM usando OpenSSL (fallback legacy)")


def p12_to_temp_pem_files(p12_data: bytes, passphrase: str) -> Tuple[str, str]:
    """
    Convierte un PKCS#12 (bytes) a dos archivos PEM temporales (cert, key).

    Los archivos se crean con permisos 600. El caller debe llamar a
    cleanup_pem_files.

    Raises:
        PKCS12Error: P12 vacío, contraseña incorrecta, archivo corrupto,
            sin clave/certificado, o certificado fuera de vigencia
    """
    if not p12_data:
        raise PKCS12Error("Certificado P12 vacío")
    if not passphrase:
        raise PKCS12Error("Falta la contraseña del certificado P12")

    cert_path = _mkstemp("verifactu_cert_")
    key_path = _mkstemp("verifactu_key_")

    try:
        try:
            private_key, certificate, _additional = pkcs12.load_key_and_certificates(
                p12_data, passphrase.encode("utf-8")
            )
        except ValueError as e:
            logger.debug(f"cryptography falló: {str(e)[:200]}. Intentando fallback con OpenSSL -legacy...")
            try:
                _p12_to_pem_openssl_fallback(p12_data, passphrase, cert_path, key_path)
            except PKCS12Error as openssl_error:
                raise PKCS12Error(
                    "Contraseña del certificado P12 incorrecta o el archivo está corrupto. "
                    f"OpenSSL fallback también falló: {str(openssl_error)[:200]}"
                ) from e
            except (OSError, subprocess.SubprocessError) as openssl_error:
                raise PKCS12Error(f"Error inesperado en fallback OpenSSL: {str(openssl_error)[:200]}") from e
            return cert_path, key_path

        if private_key is None:
            raise PKCS12Error("No se pudo extraer la clave privada del archivo P12")
        if certificate is None:
            raise PKCS12Error("No se pudo extraer el certificado del archivo P12")
        check_certificate_validity(certificate)

        Path(cert_path).write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
        Path(key_path).write_bytes(
            private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        # NO loggear paths completos ni contraseñas
        logger.debug(
            f"Certificado P12 convertido a PEM temporales: cert={Path(cert_path).name}, key={Path(key_path).name}"
        )
        return cert_path, key_path
    except BaseException:
        _unlink_quietly([cert_path, key_path])
        raise


def cleanup_pem_files(cert_path: str, key_path: str) -> None:
    """Limpia archivos PEM temporales creados por p12_to_temp_pem_files."""
    _unlink_quietly([cert_path, key_path])

