"""
Excepciones personalizadas para el cliente VeriFactu
"""
from typing import List, Optional


class VerifactuException(Exception):
    """Excepción base para errores VeriFactu"""
    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class VerifactuValidationError(VerifactuException):
    """Error de validación del registro (campos obligatorios, formato, etc.)"""
    def __init__(self, message: str, errors: Optional[List] = None, code: Optional[str] = "validation"):
        self.errors = list(errors or [])
        super().__init__(message, code)


class ChainError(VerifactuException):
    """Encadenamiento inválido: ni PrimerRegistro ni RegistroAnterior completo"""
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message, "chain")


class ConfigError(VerifactuException):
    """Certificado, contraseña o endpoint mal configurados"""
    def __init__(self, message: str):
        super().__init__(message, "config")


class TransportError(VerifactuException):
    """Error de transporte hacia la AEAT (no hubo respuesta HTTP)"""
    pass


class NetworkError(TransportError):
    """Fallo DNS, TCP o handshake TLS"""
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        super().__init__(message, "network")


class TransportTimeoutError(TransportError):
    """Timeout de lectura: la conexión se abortó sin respuesta"""
    def __init__(self, message: str, timeout: Optional[float] = None):
        self.timeout = timeout
        super().__init__(message, "timeout")
