from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from realty_agent.realty_core.catalog import CatalogValidationError, load_catalog
from realty_agent.realty_core.config import Settings


@dataclass(frozen=True)
class DiagnosticIssue:
    severity: str
    code: str
    message: str


def normalize_preflight_mode(value: object) -> str:
    if not isinstance(value, str):
        return "off"
    normalized = value.strip().lower()
    if normalized in {"off", "fail", "strict"}:
        return normalized
    return "off"


def _summarize_issues(issues: List[dict], limit: int = 3) -> str:
    if not issues:
        return "no issues reported"
    parts = [f"{item.get('code') or 'unknown'}: {item.get('message') or ''}".rstrip(": ") for item in issues[:limit]]
    suffix = "" if len(issues) <= limit else f" (+{len(issues) - limit} more)"
    return "; ".join(parts) + suffix


def _can_write_parent(settings: Settings) -> bool:
    parent = settings.database_path.parent
    try:
        parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    marker = parent / f".write_check_{uuid4().hex}"
    try:
        marker.write_text("ok", encoding="utf-8")
        marker.unlink(missing_ok=True)
        return True
    except OSError:
        return False


def _configured_channels(settings: Settings) -> List[str]:
    channels: List[str] = []
    if settings.telegram_bot_token:
        channels.append("telegram")
    if settings.whatsapp_phone_number_id and settings.whatsapp_access_token:
        channels.append("whatsapp")
    # Twilio replies inline through TwiML, so the route works without credentials.
    channels.append("twilio")
    return channels


def build_runtime_diagnostics(settings: Settings) -> Dict[str, object]:
    issues: List[DiagnosticIssue] = []
    channels = _configured_channels(settings)

    if not settings.telegram_bot_token:
        issues.append(
            DiagnosticIssue("warning", "telegram_token_missing", "TELEGRAM_BOT_TOKEN is empty; Telegram replies are dropped.")
        )
    elif not settings.telegram_webhook_secret:
        issues.append(
            DiagnosticIssue("warning", "webhook_secret_missing", "TELEGRAM_WEBHOOK_SECRET is empty; webhook is unauthenticated.")
        )
    if bool(settings.whatsapp_phone_number_id) != bool(settings.whatsapp_access_token):
        issues.append(
            DiagnosticIssue(
                "warning",
                "whatsapp_incomplete",
                "WhatsApp needs both WHATSAPP_PHONE_NUMBER_ID and WHATSAPP_ACCESS_TOKEN.",
            )
        )
    if not settings.llm_api_key:
        issues.append(
            DiagnosticIssue("warning", "llm_key_missing", "LLM_API_KEY is empty; only rule-based replies will be sent.")
        )
    if settings.kv_provider == "upstash" and not (settings.upstash_redis_rest_url and settings.upstash_redis_rest_token):
        issues.append(
            DiagnosticIssue(
                "warning",
                "upstash_incomplete",
                "KV_PROVIDER=upstash without UPSTASH_REDIS_REST_URL/TOKEN; falling back to sqlite.",
            )
        )
    if settings.kv_provider == "memory":
        issues.append(
            DiagnosticIssue("warning", "state_not_durable", "KV_PROVIDER=memory; conversation state is lost on restart.")
        )
    if settings.calendar_provider == "google" and not settings.google_calendar_access_token:
        issues.append(
            DiagnosticIssue(
                "warning",
                "calendar_token_missing",
                "CALENDAR_PROVIDER=google but GOOGLE_CALENDAR_ACCESS_TOKEN is empty.",
            )
        )

    timezone_ok = True
    try:
        ZoneInfo(settings.display_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        timezone_ok = False
        issues.append(
            DiagnosticIssue(
                "warning",
                "timezone_invalid",
                f"DISPLAY_TIMEZONE={settings.display_timezone!r} is unknown; using Asia/Singapore.",
            )
        )

    database_parent_writable = _can_write_parent(settings)
    if not database_parent_writable:
        issues.append(
            DiagnosticIssue(
                "error",
                "database_parent_not_writable",
                f"Database parent is not writable: {settings.database_path.parent}",
            )
        )

    catalog_ok = True
    catalog_properties_count = 0
    catalog_error: Optional[str] = None
    try:
        catalog = load_catalog(settings.catalog_path)
        catalog_properties_count = len(catalog.properties)
    except (FileNotFoundError, CatalogValidationError, OSError) as exc:
        catalog_ok = False
        catalog_error = str(exc)
        issues.append(DiagnosticIssue("error", "catalog_invalid", f"Catalog is unavailable or invalid: {exc}"))

    has_errors = any(item.severity == "error" for item in issues)
    has_warnings = any(item.severity == "warning" for item in issues)
    return {
        "status": "fail" if has_errors else ("warn" if has_warnings else "ok"),
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "runtime": {
            "channels": channels,
            "telegram_webhook_path": settings.telegram_webhook_path,
            "telegram_webhook_secret_set": bool(settings.telegram_webhook_secret),
            "twilio_signature_check": bool(settings.twilio_auth_token),
            "llm_key_set": bool(settings.llm_api_key),
            "llm_model": settings.llm_model,
            "kv_provider": settings.kv_provider,
            "calendar_provider": settings.calendar_provider,
            "agent_notifications": bool(settings.agent_telegram_chat_id and settings.telegram_bot_token),
            "display_timezone": settings.display_timezone,
            "display_timezone_ok": timezone_ok,
            "database_path": str(settings.database_path),
            "database_parent_writable": database_parent_writable,
            "catalog_path": str(settings.catalog_path),
            "catalog_ok": catalog_ok,
            "catalog_properties_count": catalog_properties_count,
            "catalog_error": catalog_error,
        },
        "issues": [{"severity": item.severity, "code": item.code, "message": item.message} for item in issues],
    }


def enforce_startup_preflight(settings: Settings, mode: Optional[str] = None) -> Dict[str, object]:
    preflight_mode = normalize_preflight_mode(mode if mode is not None else settings.startup_preflight_mode)
    if preflight_mode == "off":
        return {"status": "off", "runtime": {}, "issues": []}

    diagnostics = build_runtime_diagnostics(settings)
    status = str(diagnostics.get("status") or "fail").lower()
    issues = diagnostics.get("issues")
    summary = _summarize_issues(issues if isinstance(issues, list) else [])

    if status == "fail":
        raise RuntimeError(f"Startup preflight failed ({preflight_mode}): {summary}")
    if status == "warn" and preflight_mode == "strict":
        raise RuntimeError(f"Startup preflight blocked by warnings (strict): {summary}")
    return diagnostics
