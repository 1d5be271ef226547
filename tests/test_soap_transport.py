from pathlib import Path
import json
import os
import socket
import ssl
import sys
import threading
import time

import pytest
import requests
from urllib3.exceptions import ReadTimeoutError

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.verifactu_client.config import TransportConfig
from app.verifactu_client.exceptions import ConfigError, NetworkError, TransportTimeoutError
from app.verifactu_client import soap_client
from app.verifactu_client.pkcs12_utils import cleanup_pem_files, p12_to_temp_pem_files
from app.verifactu_client.soap_client import AeatTransport, summarize_response
from _records import make_p12

ENVELOPE = '<?xml version="1.0" encoding="UTF-8"?><soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/"><soapenv:Body><x>ñ</x></soapenv:Body></soapenv:Envelope>'


@pytest.fixture(scope="module")
def p12_bytes():
    return make_p12("secret")


def _config(p12_bytes, **overrides):
    values = dict(cert_bytes=p12_bytes, passphrase="secret", host="prewww1.aeat.es", timeout=5, connect_timeout=2)
    values.update(overrides)
    return TransportConfig(**values)


class _MockSession:
    def __init__(self, *, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []
        self.closed = False

    def post(self, url, **kwargs):
        cert_path, key_path = kwargs["cert"]
        self.calls.append(
            {
                "url": url,
                "cert_exists": os.path.exists(cert_path) and os.path.exists(key_path),
                "cert_paths": (cert_path, key_path),
                **kwargs,
            }
        )
        if self.exc is not None:
            raise self.exc
        return self.response

    def close(self):
        self.closed = True


class _MockResponse:
    def __init__(self, status_code=200, content=b"<ok/>", *, exc=None):
        self.status_code = status_code
        self.content = content
        self.headers = {"Content-Type": "text/xml"}
        self.exc = exc
        self.closed = False

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i : i + chunk_size]
        if self.exc is not None:
            raise self.exc

    def close(self):
        self.closed = True


def _response(status_code=200, content=b"<ok/>", **kwargs):
    return _MockResponse(status_code, content, **kwargs)


def test_send_posts_soap11_headers_and_returns_raw_body(p12_bytes):
    session = _MockSession(response=_response(200, "<r>respuesta ñ</r>".encode("utf-8")))
    transport = AeatTransport(session_factory=lambda: session)

    result = transport.send(ENVELOPE, _config(p12_bytes))

    call = session.calls[0]
    assert call["url"] == "https://prewww1.aeat.es/wlpl/TIKE-CONT/ws/SistemaFacturacion/VerifactuSOAP"
    assert call["headers"]["Content-Type"] == "text/xml; charset=utf-8"
    assert call["headers"]["SOAPAction"] == ""
    assert call["headers"]["Content-Length"] == str(len(ENVELOPE.encode("utf-8")))
    assert call["data"] == ENVELOPE.encode("utf-8")
    assert call["timeout"] == (2, 5)
    assert call["stream"] is True
    assert call["cert_exists"] is True
    assert result.status_code == 200
    assert result.body_text == "<r>respuesta ñ</r>"


def test_session_closed_and_temp_pem_files_removed(p12_bytes):
    session = _MockSession(response=_response())
    AeatTransport(session_factory=lambda: session).send(ENVELOPE, _config(p12_bytes))

    assert session.closed is True
    cert_path, key_path = session.calls[0]["cert_paths"]
    assert not os.path.exists(cert_path)
    assert not os.path.exists(key_path)


@pytest.mark.parametrize("status", [200, 400, 500, 503])
def test_any_http_status_is_transport_success(p12_bytes, status):
    session = _MockSession(response=_response(status, b"<soapenv:Fault/>"))
    result = AeatTransport(session_factory=lambda: session).send(ENVELOPE, _config(p12_bytes))
    assert result.status_code == status
    assert result.body_text == "<soapenv:Fault/>"


@pytest.mark.parametrize(
    "overrides",
    [{"cert_bytes": b""}, {"passphrase": ""}, {"passphrase": "wrong"}, {"cert_bytes": b"not a p12"}],
)
def test_missing_or_unusable_certificate_raises_config_error_without_network(p12_bytes, overrides):
    def factory():
        raise AssertionError("no debe crear sesión")

    with pytest.raises(ConfigError):
        AeatTransport(session_factory=factory).send(ENVELOPE, _config(p12_bytes, **overrides))


def test_expired_certificate_raises_config_error():
    def factory():
        raise AssertionError("no debe crear sesión")

    with pytest.raises(ConfigError) as exc_info:
        AeatTransport(session_factory=factory).send(ENVELOPE, _config(make_p12("secret", expired=True)))
    assert "expirado" in exc_info.value.message


@pytest.mark.parametrize(
    "exc,expected",
    [
        (requests.exceptions.ReadTimeout("read timed out"), TransportTimeoutError),
        (requests.exceptions.ConnectTimeout("connect timed out"), NetworkError),
        (requests.exceptions.SSLError("handshake failure"), NetworkError),
        (requests.exceptions.ConnectionError("Name or service not known"), NetworkError),
    ],
)
def test_transport_failures_are_classified(p12_bytes, exc, expected):
    session = _MockSession(exc=exc)

    with pytest.raises(expected) as exc_info:
        AeatTransport(session_factory=lambda: session).send(ENVELOPE, _config(p12_bytes))

    assert session.closed is True
    if expected is NetworkError:
        assert exc_info.value.cause is exc


def test_unreachable_host_fails_fast_with_network_error(p12_bytes):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()

    config = _config(p12_bytes, host=f"127.0.0.1:{port}", timeout=3, connect_timeout=2)
    started = time.monotonic()
    with pytest.raises(NetworkError):
        AeatTransport().send(ENVELOPE, config)
    assert time.monotonic() - started < config.connect_timeout + config.timeout


def test_dump_http_writes_request_response_and_meta(p12_bytes, tmp_path: Path):
    session = _MockSession(response=_response(200, b"<ok/>"))
    config = _config(p12_bytes, dump_http=True, artifacts_dir=str(tmp_path))

    AeatTransport(session_factory=lambda: session).send(ENVELOPE, config, label="A-2025-0001")

    run_dirs = list(tmp_path.iterdir())
    assert len(run_dirs) == 1
    assert "inv_A-2025-0001" in run_dirs[0].name
    assert (run_dirs[0] / "request.xml").read_bytes() == ENVELOPE.encode("utf-8")
    assert (run_dirs[0] / "response.xml").read_bytes() == b"<ok/>"
    meta = json.loads((run_dirs[0] / "meta.json").read_text(encoding="utf-8"))
    assert meta["http_status"] == 200
    assert meta["soapaction_header"] == ""


def test_summarize_response_extracts_aeat_fields():
    body = (
        '<env:Envelope xmlns:env="http://schemas.xmlsoap.org/soap/envelope/"><env:Body>'
        '<tikR:RespuestaRegFactuSistemaFacturacion xmlns:tikR="urn:r" xmlns:tik="urn:t">'
        "<tikR:EstadoEnvio>Incorrecto</tikR:EstadoEnvio>"
        "<tikR:RespuestaLinea><tikR:EstadoRegistro>Incorrecto</tikR:EstadoRegistro>"
        "<tikR:CodigoErrorRegistro>1100</tikR:CodigoErrorRegistro>"
        "<tikR:DescripcionErrorRegistro>Valor o tipo incorrecto</tikR:DescripcionErrorRegistro>"
        "</tikR:RespuestaLinea></tikR:RespuestaRegFactuSistemaFacturacion></env:Body></env:Envelope>"
    )
    summary = summarize_response(body)
    assert summary["estado_envio"] == "Incorrecto"
    assert summary["codigo_error"] == "1100"
    assert summary["descripcion_error"] == "Valor o tipo incorrecto"


def test_summarize_response_tolerates_non_xml():
    assert summarize_response("<html>Bad gateway")["estado_envio"] is None
    assert summarize_response("")["fault"] is None


def test_session_factory_failure_still_removes_pem_files(p12_bytes, monkeypatch):
    created = []

    def tracking_p12_to_pem(data, passphrase):
        paths = p12_to_temp_pem_files(data, passphrase)
        created.extend(paths)
        return paths

    def broken_factory():
        raise RuntimeError("sin sesión")

    monkeypatch.setattr(soap_client, "p12_to_temp_pem_files", tracking_p12_to_pem)

    with pytest.raises(RuntimeError):
        AeatTransport(session_factory=broken_factory).send(ENVELOPE, _config(p12_bytes))

    assert len(created) == 2
    assert not any(os.path.exists(path) for path in created)


def test_read_timeout_while_streaming_body_is_timeout(p12_bytes):
    stalled = requests.exceptions.ConnectionError(ReadTimeoutError(None, "/", "Read timed out."))
    response = _response(200, b"<ok", exc=stalled)
    session = _MockSession(response=response)

    with pytest.raises(TransportTimeoutError):
        AeatTransport(session_factory=lambda: session).send(ENVELOPE, _config(p12_bytes))

    assert response.closed is True
    assert session.closed is True


def _drip_server(cert_path, key_path, body: bytes, interval: float):
    """Servidor TLS local que responde 200 enviando el body de a un byte."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(cert_path, key_path)
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]

    def serve():
        try:
            conn, _ = listener.accept()
            with ctx.wrap_socket(conn, server_side=True) as tls:
                request = b""
                while b"</soapenv:Envelope>" not in request:
                    data = tls.recv(4096)
                    if not data:
                        return
                    request += data
                head = (
                    "HTTP/1.1 200 OK\r\nContent-Type: text/xml\r\n"
                    f"Content-Length: {len(body)}\r\nConnection: close\r\n\r\n"
                )
                tls.sendall(head.encode("ascii"))
                for byte in body:
                    time.sleep(interval)
                    tls.sendall(bytes([byte]))
        except OSError:
            pass
        finally:
            listener.close()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    return port, thread


@pytest.mark.filterwarnings("ignore::urllib3.exceptions.InsecureRequestWarning")
def test_slow_drip_response_is_cut_at_total_timeout(p12_bytes):
    server_cert, server_key = p12_to_temp_pem_files(p12_bytes, "secret")
    try:
        port, _ = _drip_server(server_cert, server_key, b"<ok/>" + b" " * 10, interval=0.3)
        config = _config(p12_bytes, host=f"127.0.0.1:{port}", timeout=1, connect_timeout=1, verify=False)

        started = time.monotonic()
        with pytest.raises(TransportTimeoutError):
            AeatTransport().send(ENVELOPE, config)
        elapsed = time.monotonic() - started
    finally:
        cleanup_pem_files(server_cert, server_key)

    assert elapsed < 2.5
