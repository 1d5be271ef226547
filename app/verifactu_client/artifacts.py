from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

ArtifactsPathLike = Optional[Union[str, Path]]

DEFAULT_ARTIFACTS_DIR = "artifacts"


def _safe_token(value: str, *, fallback: str) -> str:
    token = re.sub(r"[^A-Za-z0-9._-]+", "-", (value or "").strip()).strip("-")
    return token or fallback


def resolve_artifacts_dir(artifacts_dir: ArtifactsPathLike = None) -> Path:
    """Resolve artifacts base dir and ensure it exists.

    Resolution order:
    1) explicit argument
    2) VERIFACTU_ARTIFACTS_DIR
    3) ARTIFACTS_DIR
    4) ./artifacts
    """
    raw = str(artifacts_dir).strip() if artifacts_dir is not None else ""
    if not raw:
        raw = (
            (os.getenv("VERIFACTU_ARTIFACTS_DIR") or "").strip()
            or (os.getenv("ARTIFACTS_DIR") or "").strip()
            or DEFAULT_ARTIFACTS_DIR
        )

    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    path = path.resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def make_run_dir(
    prefix: str,
    env: str,
    *,
    series_number: Optional[str] = None,
    artifacts_dir: ArtifactsPathLike = None,
) -> Path:
    """Create and return a per-run artifacts directory."""
    base_dir = resolve_artifacts_dir(artifacts_dir)
    ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    parts = [
        "run",
        ts,
        _safe_token(prefix, fallback="send"),
        _safe_token(env, fallback="env"),
    ]
    if series_number:
        parts.append(f"inv_{_safe_token(str(series_number), fallback='inv')}")

    run_dir = base_dir / "_".join(parts)
    run_dir.mkdir(parents=True, exist_ok=True)
    return run_dir


def persist_http_exchange(
    run_dir: Path,
    *,
    url: str,
    headers: Dict[str, str],
    request_body: bytes,
    response_status: Optional[int],
    response_headers: Optional[Dict[str, Any]],
    response_body: Optional[bytes],
    elapsed_s: Optional[float],
    error_message: Optional[str],
) -> None:
    """Escribe request.xml, response.xml y meta.json. Nunca lanza: es solo diagnóstico."""
    try:
        (run_dir / "request.xml").write_bytes(request_body)
    except OSError as exc:
        logger.warning(f"No se pudo guardar request SOAP: {exc}")

    try:
        if response_body is not None:
            (run_dir / "response.xml").write_bytes(response_body)
        else:
            (run_dir / "response.xml").write_text(f"NO_RESPONSE\nERROR: {error_message or ''}\n", encoding="utf-8")
    except OSError as exc:
        logger.warning(f"No se pudo guardar response SOAP: {exc}")

    meta: Dict[str, Any] = {
        "timestamp": datetime.now().isoformat(),
        "post_url": url,
        "content_type": headers.get("Content-Type"),
        "soapaction_header": headers.get("SOAPAction"),
        "headers": headers,
    }
    if response_status is not None:
        meta["http_status"] = response_status
    if response_headers is not None:
        meta["response_headers"] = response_headers
    if elapsed_s is not None:
        meta["elapsed_s"] = round(elapsed_s, 3)
    if error_message:
        meta["error"] = error_message

    try:
        (run_dir / "meta.json").write_text(json.dumps(meta, ensure_ascii=False, indent=2), encoding="utf-8")
    except OSError as exc:
        logger.warning(f"No se pudo guardar metadata HTTP: {exc}")
