import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Optional

from app.verifactu_client.config import get_preview_chars, get_totals_tolerance, load_transport_config
from app.verifactu_client.exceptions import ConfigError
from app.verifactu_client.soap_client import summarize_response

from .core_send import (
    ChainInvalid,
    ConfigFailed,
    Prepared,
    Submitted,
    TransportFailed,
    ValidationFailed,
    prepare_envelope,
    register_invoice,
    send_prepared_xml,
)
from .envelope_guards import EnvelopeGuardError


def _configure_logging(level: Optional[str]) -> None:
    level_name = (level or os.getenv("VERIFACTU_LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_json(path: Path) -> Any:
    if str(path) == "-":
        return json.load(sys.stdin)
    return json.loads(path.read_text(encoding="utf-8"))


def _print_failure(outcome) -> int:
    if isinstance(outcome, ValidationFailed):
        for err in outcome.errors:
            print(f"ERROR: {err.field}: {err.message}", file=sys.stderr)
        return 1
    if isinstance(outcome, ChainInvalid):
        print(f"ERROR: {outcome.error.field}: {outcome.error.message}", file=sys.stderr)
        return 1
    if isinstance(outcome, ConfigFailed):
        print(f"ERROR (config): {outcome.error.message}", file=sys.stderr)
        return 3
    if isinstance(outcome, TransportFailed):
        print(f"ERROR ({outcome.error.code}): {outcome.error.message}", file=sys.stderr)
        return 4
    return 2


def _print_submitted(outcome: Submitted, preview_chars: int) -> int:
    print(f"http_status: {outcome.status_code}")
    print(f"elapsed_s: {outcome.elapsed_s:.2f}")
    summary = summarize_response(outcome.body)
    for key in ("estado_envio", "estado_registro", "codigo_error", "descripcion_error", "csv", "fault"):
        if summary.get(key) is not None:
            print(f"{key}: {summary[key]}")
    body = outcome.body
    if 0 < preview_chars < len(body):
        body = body[:preview_chars] + "..."
    print("==== RESPONSE ====")
    print(body)
    return 0


def _transport_config(args):
    config = load_transport_config(args.env)
    overrides = {}
    if args.dump_http:
        overrides["dump_http"] = True
    if args.artifacts_dir is not None:
        overrides["artifacts_dir"] = str(args.artifacts_dir)
    if args.timeout is not None:
        overrides["timeout"] = args.timeout
    return dataclasses.replace(config, **overrides) if overrides else config


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="verifactu_minisender")
    parser.add_argument("--log-level", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_check = sub.add_parser("check", help="Valida el registro JSON (sin red)")
    p_check.add_argument("record_json", type=Path)
    p_check.add_argument("--no-totals-check", action="store_true")

    p_build = sub.add_parser("build", help="Genera el envelope SOAP (sin red)")
    p_build.add_argument("record_json", type=Path)
    p_build.add_argument("--out", type=Path, default=None)
    p_build.add_argument("--no-totals-check", action="store_true")

    for name in ("send", "send-xml"):
        p = sub.add_parser(name)
        if name == "send":
            p.add_argument("record_json", type=Path)
            p.add_argument("--no-totals-check", action="store_true")
        else:
            p.add_argument("xml_file", type=Path)
        p.add_argument("--env", default=None, choices=["test", "prod"])
        p.add_argument("--dump-http", action="store_true")
        p.add_argument("--artifacts-dir", type=Path, default=None)
        p.add_argument("--timeout", type=float, default=None)

    args = parser.parse_args(argv)
    _configure_logging(args.log_level)

    if args.cmd in ("check", "build", "send"):
        try:
            raw = _load_json(args.record_json)
            tolerance = get_totals_tolerance()
        except (OSError, ValueError, ConfigError) as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
        check_totals = not args.no_totals_check

    if args.cmd in ("check", "build"):
        try:
            prepared = prepare_envelope(raw, check_totals=check_totals, tolerance=tolerance)
        except EnvelopeGuardError as exc:
            print(f"ERROR (guardrail): {exc}", file=sys.stderr)
            return 2
        if not isinstance(prepared, Prepared):
            return _print_failure(prepared)
        if args.cmd == "check":
            print(f"OK: {prepared.record.invoice_id.series_number} ({type(prepared.link).__name__})")
            return 0
        if args.out is not None:
            args.out.write_text(prepared.xml, encoding="utf-8")
            print(f"xml: {args.out}")
        else:
            print(prepared.xml)
        return 0

    try:
        config = _transport_config(args)
        preview_chars = get_preview_chars()
    except ConfigError as exc:
        print(f"ERROR (config): {exc.message}", file=sys.stderr)
        return 3

    if args.cmd == "send":
        try:
            outcome = register_invoice(raw, config, check_totals=check_totals, tolerance=tolerance)
        except EnvelopeGuardError as exc:
            print(f"ERROR (guardrail): {exc}", file=sys.stderr)
            return 2
    elif args.cmd == "send-xml":
        try:
            xml = args.xml_file.read_bytes()
        except OSError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1
        outcome = send_prepared_xml(xml, config)
    else:
        return 2

    if isinstance(outcome, Submitted):
        return _print_submitted(outcome, preview_chars)
    return _print_failure(outcome)
