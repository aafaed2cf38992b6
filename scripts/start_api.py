#!/usr/bin/env python3
"""Launch the webhook API under uvicorn once the runtime preflight passes.

The service keeps per-identity turn locks in process, so it always runs a
single worker.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping

import uvicorn

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from realty_agent.realty_core.config import get_settings
from realty_agent.realty_core.runtime_diagnostics import enforce_startup_preflight

APP_FACTORY = "realty_agent.realty_api.main:create_app"
DEFAULT_PORT = 8000


def _env_port(environ: Mapping[str, str]) -> int:
    raw = (environ.get("PORT") or "").strip()
    try:
        return int(raw) if raw else DEFAULT_PORT
    except ValueError:
        return DEFAULT_PORT


def _build_parser(environ: Mapping[str, str]) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Serve the realty assistant webhooks (Telegram, WhatsApp, Twilio).")
    parser.add_argument("--host", default=environ.get("HOST") or "0.0.0.0", help="Bind host (env HOST)")
    parser.add_argument("--port", type=int, default=_env_port(environ), help="Bind port (env PORT, default 8000)")
    parser.add_argument(
        "--forwarded-allow-ips",
        default=environ.get("FORWARDED_ALLOW_IPS") or "127.0.0.1",
        help="Proxies trusted for X-Forwarded-* headers; Twilio signatures are checked against the forwarded URL.",
    )
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development only)")
    parser.add_argument("--log-level", default="info", help="Uvicorn log level (default: info)")
    parser.add_argument(
        "--preflight-mode",
        choices=("off", "fail", "strict"),
        default=None,
        help="Override STARTUP_PREFLIGHT_MODE for this launch.",
    )
    return parser


def build_uvicorn_options(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "factory": True,
        "host": args.host,
        "port": args.port,
        "reload": args.reload,
        "workers": 1,
        "proxy_headers": True,
        "forwarded_allow_ips": args.forwarded_allow_ips,
        "log_level": args.log_level,
    }


def webhook_routes(runtime: Mapping[str, Any]) -> List[str]:
    routes: List[str] = []
    channels = runtime.get("channels") or []
    if "telegram" in channels:
        routes.append(f"telegram -> {runtime.get('telegram_webhook_path')}")
    if "whatsapp" in channels:
        routes.append("whatsapp -> /api/whatsapp/webhook")
    if "twilio" in channels:
        routes.append("twilio -> /api/twilio/webhook")
    return routes


def _report(diagnostics: Mapping[str, Any], mode: str) -> None:
    status = str(diagnostics.get("status") or "unknown").upper()
    print(f"[start_api] preflight={status} mode={mode}")
    for issue in diagnostics.get("issues") or []:
        print(f"[start_api] {issue.get('severity')}: {issue.get('code')} ({issue.get('message')})")
    for route in webhook_routes(diagnostics.get("runtime") or {}):
        print(f"[start_api] webhook {route}")


def main(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    args = _build_parser(os.environ if environ is None else environ).parse_args(argv)

    settings = get_settings()
    diagnostics = enforce_startup_preflight(settings, mode=args.preflight_mode)
    _report(diagnostics, args.preflight_mode or settings.startup_preflight_mode)

    uvicorn.run(APP_FACTORY, **build_uvicorn_options(args))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
