"""
Módulo cliente para VeriFactu (AEAT, España)
Registro de facturas (RegistroAlta) y envío SOAP con certificado cliente.
"""
from .config import TransportConfig, load_transport_config, ENDPOINTS
from .chain import resolve_chain
from .validator import RecordValidator, validate_record
from .xml_generator import EnvelopeBuilder, build_envelope, wrap_soap_envelope
from .soap_client import AeatTransport, summarize_response
from .pkcs12_utils import p12_to_temp_pem_files, cleanup_pem_files, PKCS12Error
from .models import (
    FieldError,
    InvoiceRegistrationRecord,
    FirstInChain,
    ChainedTo,
    TransportResult,
)
from .exceptions import (
    VerifactuException,
    VerifactuValidationError,
    ChainError,
    ConfigError,
    TransportError,
    NetworkError,
    TransportTimeoutError,
)

__all__ = [
    'TransportConfig',
    'load_transport_config',
    'ENDPOINTS',
    'resolve_chain',
    'RecordValidator',
    'validate_record',
    'EnvelopeBuilder',
    'build_envelope',
    'wrap_soap_envelope',
    'AeatTransport',
    'summarize_response',
    'p12_to_temp_pem_files',
    'cleanup_pem_files',
    'PKCS12Error',
    'FieldError',
    'InvoiceRegistrationRecord',
    'FirstInChain',
    'ChainedTo',
    'TransportResult',
    'VerifactuException',
    'VerifactuValidationError',
    'ChainError',
    'ConfigError',
    'TransportError',
    'NetworkError',
    'TransportTimeoutError',
]
