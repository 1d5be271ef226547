from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.verifactu_client.artifacts import make_run_dir, resolve_artifacts_dir


def test_resolve_artifacts_dir_uses_env_priority(monkeypatch, tmp_path: Path):
    env_dir = tmp_path / "env_verifactu"
    fallback_dir = tmp_path / "env_artifacts"
    monkeypatch.setenv("VERIFACTU_ARTIFACTS_DIR", str(env_dir))
    monkeypatch.setenv("ARTIFACTS_DIR", str(fallback_dir))

    resolved = resolve_artifacts_dir()

    assert resolved == env_dir.resolve()
    assert resolved.is_dir()


def test_resolve_artifacts_dir_falls_back_to_generic_env(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("VERIFACTU_ARTIFACTS_DIR", raising=False)
    monkeypatch.setenv("ARTIFACTS_DIR", str(tmp_path / "generic"))

    assert resolve_artifacts_dir() == (tmp_path / "generic").resolve()


def test_make_run_dir_creates_run_directory(tmp_path: Path):
    run_dir = make_run_dir(
        "verifactu_send",
        "test",
        series_number="A/2025 0001",
        artifacts_dir=tmp_path,
    )

    assert run_dir.is_dir()
    assert run_dir.parent == tmp_path.resolve()
    assert run_dir.name.startswith("run_")
    assert "verifactu_send" in run_dir.name
    assert run_dir.name.endswith("_inv_A-2025-0001")
