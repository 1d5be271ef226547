from pathlib import Path
import base64
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.verifactu_client.config import (
    VERIFACTU_PATH,
    get_preview_chars,
    get_totals_tolerance,
    load_transport_config,
)
from app.verifactu_client.exceptions import ConfigError


def test_defaults_point_to_test_endpoint():
    config = load_transport_config(environ={})
    assert config.env == "test"
    assert config.url == f"https://prewww1.aeat.es{VERIFACTU_PATH}"
    assert config.cert_bytes == b""
    assert config.passphrase == ""
    assert config.verify is True


def test_prod_and_seal_certificate_hosts():
    assert load_transport_config("prod", environ={}).host == "www1.agenciatributaria.gob.es"
    sealed = load_transport_config(environ={"VERIFACTU_ENV": "prod", "VERIFACTU_SEAL_CERT": "1"})
    assert sealed.host == "www10.agenciatributaria.gob.es"
    assert load_transport_config(environ={"VERIFACTU_SEAL_CERT": "true"}).host == "prewww10.aeat.es"


def test_certificate_from_path_and_base64(tmp_path: Path):
    p12 = tmp_path / "cert.p12"
    p12.write_bytes(b"\x30\x82p12")

    from_path = load_transport_config(
        environ={"VERIFACTU_CERT_PATH": str(p12), "VERIFACTU_CERT_PASSWORD": "secret"}
    )
    assert from_path.cert_bytes == b"\x30\x82p12"
    assert from_path.passphrase == "secret"

    encoded = base64.b64encode(b"otro").decode("ascii")
    from_b64 = load_transport_config(
        environ={"VERIFACTU_CERT_BASE64": encoded, "VERIFACTU_CERT_PATH": str(p12)}
    )
    assert from_b64.cert_bytes == b"otro"


def test_passphrase_not_in_repr(tmp_path: Path):
    p12 = tmp_path / "cert.p12"
    p12.write_bytes(b"x")
    config = load_transport_config(environ={"VERIFACTU_CERT_PATH": str(p12), "VERIFACTU_CERT_PASSWORD": "supersecreto"})
    assert "supersecreto" not in repr(config)


@pytest.mark.parametrize(
    "environ",
    [
        {"VERIFACTU_CERT_PATH": "/no/existe/cert.p12"},
        {"VERIFACTU_CERT_BASE64": "%%%no-base64%%%"},
        {"VERIFACTU_TIMEOUT": "rápido"},
        {"VERIFACTU_CONNECT_TIMEOUT": "0"},
        {"VERIFACTU_ENV": "staging"},
        {"VERIFACTU_CA_BUNDLE_PATH": "/no/existe/ca.pem"},
    ],
)
def test_invalid_values_raise_config_error(environ):
    with pytest.raises(ConfigError):
        load_transport_config(environ=environ)


def test_overrides_from_environment(tmp_path: Path):
    config = load_transport_config(
        environ={
            "VERIFACTU_HOST": "127.0.0.1:8443",
            "VERIFACTU_TIMEOUT": "12.5",
            "VERIFACTU_DUMP_HTTP": "1",
            "VERIFACTU_ARTIFACTS_DIR": str(tmp_path),
        }
    )
    assert config.url.startswith("https://127.0.0.1:8443/")
    assert config.timeout == 12.5
    assert config.dump_http is True
    assert config.artifacts_dir == str(tmp_path)


def test_tolerance_and_preview_chars():
    assert str(get_totals_tolerance({})) == "0.01"
    assert str(get_totals_tolerance({"VERIFACTU_TOTALS_TOLERANCE": "0.05"})) == "0.05"
    assert get_preview_chars({}) == 2000
    assert get_preview_chars({"VERIFACTU_RESPONSE_PREVIEW_CHARS": "10"}) == 10
    with pytest.raises(ConfigError):
        get_totals_tolerance({"VERIFACTU_TOTALS_TOLERANCE": "mucho"})
