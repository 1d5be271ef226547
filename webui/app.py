import hmac
import logging
import os
import sys
from pathlib import Path

from flask import Flask, jsonify, request

# Asegurar imports desde repo root (evitar conflicto con webui/app.py)
SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) in sys.path:
    sys.path.remove(str(SCRIPT_DIR))
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.verifactu_client.config import get_preview_chars, get_totals_tolerance, load_transport_config
from app.verifactu_client.exceptions import ConfigError
from app.verifactu_client.soap_client import AeatTransport, summarize_response
from verifactu_minisender.core_send import Submitted, register_invoice, send_prepared_xml
from verifactu_minisender.envelope_guards import EnvelopeGuardError

APP_TITLE = "VeriFactu minisender"
DEFAULT_API_TOKEN = "DEV_TOKEN"

logger = logging.getLogger(__name__)

app = Flask(__name__)

_transport_config = None


def get_transport_config():
    """TransportConfig del proceso (se carga una vez; inmutable)."""
    global _transport_config
    if _transport_config is None:
        _transport_config = load_transport_config()
    return _transport_config


def get_transport() -> AeatTransport:
    return app.config.get("VERIFACTU_TRANSPORT") or AeatTransport()


def _expected_token() -> str:
    return app.config.get("API_TOKEN") or os.getenv("API_TOKEN") or DEFAULT_API_TOKEN


def _authorized() -> bool:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip().encode("utf-8"), _expected_token().encode("utf-8"))


@app.route("/")
def index():
    return f"{APP_TITLE}: POST /verifactu/send", 200, {"Content-Type": "text/plain; charset=utf-8"}


@app.route("/health")
@app.route("/healthz")
def health():
    return jsonify({"ok": True})


@app.route("/verifactu/send", methods=["POST"])
def verifactu_send():
    if not _authorized():
        return jsonify({"ok": False, "error": "Unauthorized"}), 401

    try:
        config = app.config.get("VERIFACTU_CONFIG") or get_transport_config()
        preview_chars = get_preview_chars()
        tolerance = get_totals_tolerance()
    except ConfigError as exc:
        logger.error(f"Configuración inválida: {exc.message}")
        return jsonify({"ok": False, "stage": "config", "error": exc.message}), 500

    if request.is_json:
        raw = request.get_json(silent=True)
        if raw is None:
            return jsonify({"ok": False, "stage": "validation", "errors": [{"field": "$", "message": "JSON inválido"}]}), 400
        try:
            outcome = register_invoice(raw, config, transport=get_transport(), tolerance=tolerance)
        except EnvelopeGuardError as exc:
            logger.error(f"Envelope generado no supera guardrails: {exc}")
            return jsonify({"ok": False, "stage": "guardrail", "error": str(exc)}), 500
    else:
        body = request.get_data()
        if not body or not body.strip():
            return jsonify({"ok": False, "stage": "validation", "errors": [{"field": "$", "message": "body vacío"}]}), 400
        outcome = send_prepared_xml(body, config, transport=get_transport())

    if isinstance(outcome, Submitted):
        payload = outcome.to_dict(preview_chars)
        payload["remote"] = summarize_response(outcome.body)
        logger.info(
            f"VeriFactu enviado: HTTP {outcome.status_code} "
            f"estado={payload['remote'].get('estado_envio')} codigo={payload['remote'].get('codigo_error')}"
        )
    else:
        payload = outcome.to_dict()
    return jsonify(payload), outcome.http_status


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, (os.getenv("VERIFACTU_LOG_LEVEL") or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.getenv("PORT") or "3000")
    try:
        app.run(host=os.getenv("HOST", "127.0.0.1"), port=port, debug=False, use_reloader=False)
    except Exception as exc:
        print(f"APP_RUN_ERROR: {exc!r}", file=sys.stderr)
        raise
