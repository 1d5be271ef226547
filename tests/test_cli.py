from pathlib import Path
import json
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from verifactu_minisender.api import main
from _records import chained_record, minimal_record


def _write(tmp_path: Path, raw: dict) -> Path:
    path = tmp_path / "registro.json"
    path.write_text(json.dumps(raw, ensure_ascii=False), encoding="utf-8")
    return path


def test_check_ok_reports_chain_variant(tmp_path: Path, capsys):
    assert main(["check", str(_write(tmp_path, chained_record()))]) == 0
    assert "OK: A-2025-0002 (ChainedTo)" in capsys.readouterr().out


def test_check_lists_every_validation_error(tmp_path: Path, capsys):
    raw = minimal_record()
    raw["recipients"] = []
    raw["totalAmount"] = "abc"

    assert main(["check", str(_write(tmp_path, raw))]) == 1
    err = capsys.readouterr().err
    assert "ERROR: recipients:" in err
    assert "ERROR: totalAmount:" in err


def test_check_totals_mismatch_can_be_disabled(tmp_path: Path):
    raw = minimal_record()
    raw["totalAmount"] = "999.00"
    path = _write(tmp_path, raw)

    assert main(["check", str(path)]) == 1
    assert main(["check", str(path), "--no-totals-check"]) == 0


def test_build_writes_envelope(tmp_path: Path):
    out = tmp_path / "envelope.xml"
    assert main(["build", str(_write(tmp_path, minimal_record())), "--out", str(out)]) == 0
    xml = out.read_text(encoding="utf-8")
    assert "<sum1:PrimerRegistro>S</sum1:PrimerRegistro>" in xml


def test_missing_input_file_is_exit_1(tmp_path: Path, capsys):
    assert main(["check", str(tmp_path / "no-existe.json")]) == 1
    assert "ERROR" in capsys.readouterr().err


def test_send_without_certificate_is_config_error(tmp_path: Path, monkeypatch, capsys):
    for key in ("VERIFACTU_CERT_PATH", "VERIFACTU_CERT_BASE64", "VERIFACTU_CERT_PASSWORD", "VERIFACTU_ENV"):
        monkeypatch.delenv(key, raising=False)

    assert main(["send", str(_write(tmp_path, minimal_record())), "--env", "test"]) == 3
    assert "ERROR (config)" in capsys.readouterr().err
