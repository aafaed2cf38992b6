from __future__ import annotations

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import List, Optional, Set

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import PlainTextResponse, Response
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from realty_agent.realty_channels import telegram as telegram_channel
from realty_agent.realty_channels import twilio as twilio_channel
from realty_agent.realty_channels import whatsapp as whatsapp_channel
from realty_agent.realty_channels.telegram import TelegramSender, TelegramUpdate
from realty_agent.realty_channels.whatsapp import WhatsAppSender
from realty_agent.realty_core.config import Settings, get_settings
from realty_agent.realty_core.conversation import (
    ConversationService,
    InboundMessage,
    OutboundReply,
    build_conversation_service,
)
from realty_agent.realty_core.db import get_connection, list_bookings, list_recent_leads, purge_processed_messages
from realty_agent.realty_core.runtime_diagnostics import build_runtime_diagnostics

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s", level=logging.INFO
)
security = HTTPBasic()
logger = logging.getLogger(__name__)
PROCESSED_MESSAGE_RETENTION_DAYS = 7
MAINTENANCE_INTERVAL_SECONDS = 3600.0
# Twilio gives up on a webhook after 15 seconds.
TWILIO_REPLY_TIMEOUT_SECONDS = 10.0


def create_app(
    settings: Settings | None = None,
    service: Optional[ConversationService] = None,
    telegram_sender: Optional[TelegramSender] = None,
    whatsapp_sender: Optional[WhatsAppSender] = None,
) -> FastAPI:
    cfg = settings or get_settings()
    conversation = service or build_conversation_service(cfg)
    tg_sender = telegram_sender or TelegramSender(
        bot_token=cfg.telegram_bot_token,
        timeout_seconds=cfg.outbound_timeout_seconds,
    )
    wa_sender = whatsapp_sender or WhatsAppSender(
        phone_number_id=cfg.whatsapp_phone_number_id,
        access_token=cfg.whatsapp_access_token,
        api_version=cfg.whatsapp_api_version,
        timeout_seconds=cfg.outbound_timeout_seconds,
    )
    webhook_path = cfg.telegram_webhook_path if cfg.telegram_webhook_path.startswith("/") else f"/{cfg.telegram_webhook_path}"
    pending_turns: Set[asyncio.Task] = set()

    if not cfg.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN is empty. Telegram updates are processed but replies are dropped.")
    if not wa_sender.is_configured():
        logger.info("WhatsApp Cloud API is not configured; WhatsApp replies are dropped.")

    async def purge_expired_records() -> None:
        purged_states = await conversation.state_store.purge_expired()
        conn = get_connection(cfg.database_path)
        try:
            purged_ids = purge_processed_messages(conn, older_than_days=PROCESSED_MESSAGE_RETENTION_DAYS)
        finally:
            conn.close()
        if purged_states or purged_ids:
            logger.info("Purge removed %s expired states and %s processed ids", purged_states, purged_ids)

    async def maintenance_loop() -> None:
        while True:
            await asyncio.sleep(MAINTENANCE_INTERVAL_SECONDS)
            try:
                await purge_expired_records()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Periodic purge failed")

    async def run_turn(inbound: InboundMessage) -> Optional[OutboundReply]:
        try:
            return await conversation.handle(inbound)
        except Exception:
            # Providers retry non-2xx responses; a failed turn must not turn into a retry storm.
            logger.exception("Turn failed on %s for %s", inbound.channel, inbound.external_user_id)
            return None

    async def process_telegram_update(update: TelegramUpdate) -> None:
        if update.callback_query_id:
            await tg_sender.answer_callback(update.callback_query_id)
        reply = await run_turn(update.inbound)
        if reply is not None:
            await tg_sender.send(update.chat_id, reply.text, reply.buttons)

    async def process_whatsapp_messages(messages: List[InboundMessage]) -> None:
        for inbound in messages:
            if cfg.whatsapp_mark_read and inbound.message_id and wa_sender.is_configured():
                await wa_sender.mark_read(inbound.message_id)
            reply = await run_turn(inbound)
            if reply is not None:
                await wa_sender.send(inbound.external_user_id, reply.text, reply.buttons)

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        await purge_expired_records()
        maintenance_task = asyncio.create_task(maintenance_loop())
        logger.info("Realty agent started; Telegram webhook at %s", webhook_path)
        yield
        maintenance_task.cancel()
        try:
            await maintenance_task
        except asyncio.CancelledError:
            pass
        if pending_turns:
            await asyncio.gather(*pending_turns)
        await conversation.aclose()
        await tg_sender.aclose()
        logger.info("Realty agent stopped")

    app = FastAPI(title="realty-agent", lifespan=lifespan)
    app.state.conversation = conversation

    def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
        if not cfg.admin_user or not cfg.admin_pass:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Admin auth is not configured. Set ADMIN_USER and ADMIN_PASS.",
            )

        user_ok = secrets.compare_digest(credentials.username, cfg.admin_user)
        pass_ok = secrets.compare_digest(credentials.password, cfg.admin_pass)
        if not (user_ok and pass_ok):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid admin credentials",
                headers={"WWW-Authenticate": "Basic"},
            )
        return credentials.username

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "service": "realty-agent"}

    @app.post(webhook_path)
    async def telegram_webhook(request: Request, background_tasks: BackgroundTasks):
        if cfg.telegram_webhook_secret:
            header_secret = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
            if not secrets.compare_digest(header_secret, cfg.telegram_webhook_secret):
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid webhook secret token.")

        try:
            payload = await request.json()
        except ValueError:
            logger.warning("Ignoring malformed Telegram payload")
            return {"ok": True}

        update = telegram_channel.parse_update(payload)
        if update is not None:
            # Runs after the acknowledgement is sent.
            background_tasks.add_task(process_telegram_update, update)
        return {"ok": True}

    @app.get("/api/whatsapp/webhook")
    async def whatsapp_verify(request: Request):
        params = request.query_params
        challenge = whatsapp_channel.verify_subscription(
            params.get("hub.mode"),
            params.get("hub.verify_token"),
            params.get("hub.challenge"),
            cfg.whatsapp_verify_token,
        )
        if challenge is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Verification failed.")
        logger.info("WhatsApp webhook verified")
        return PlainTextResponse(challenge)

    @app.post("/api/whatsapp/webhook")
    async def whatsapp_webhook(request: Request, background_tasks: BackgroundTasks):
        try:
            payload = await request.json()
        except ValueError:
            logger.warning("Ignoring malformed WhatsApp payload")
            return {"ok": True}

        messages = whatsapp_channel.extract_messages(payload)
        if messages:
            background_tasks.add_task(process_whatsapp_messages, messages)
        return {"ok": True}

    @app.post("/api/twilio/webhook")
    async def twilio_webhook(request: Request):
        form = await request.form()
        params = {key: str(value) for key, value in form.items()}
        if cfg.twilio_auth_token:
            signature = request.headers.get("X-Twilio-Signature")
            if not twilio_channel.validate_signature(cfg.twilio_auth_token, str(request.url), params, signature):
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid Twilio signature.")

        inbound = twilio_channel.parse_form(params)
        reply = None
        if inbound is not None:
            # The reply travels inline as TwiML, so wait for the turn but never past Twilio's own timeout.
            turn = asyncio.create_task(run_turn(inbound))
            pending_turns.add(turn)
            turn.add_done_callback(pending_turns.discard)
            try:
                reply = await asyncio.wait_for(asyncio.shield(turn), timeout=TWILIO_REPLY_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning(
                    "Twilio turn for %s took longer than %ss; acknowledging without a reply",
                    inbound.external_user_id,
                    TWILIO_REPLY_TIMEOUT_SECONDS,
                )
        return Response(content=twilio_channel.render_twiml(reply), media_type="application/xml")

    @app.get("/admin/bookings")
    async def admin_bookings(
        _: str = Depends(require_admin),
        limit: int = 100,
        booking_status: Optional[str] = Query(default=None, alias="status"),
    ):
        statuses = [item.strip() for item in booking_status.split(",") if item.strip()] if booking_status else None
        conn = get_connection(cfg.database_path)
        try:
            return {"items": list_bookings(conn, limit=max(1, min(limit, 500)), statuses=statuses)}
        finally:
            conn.close()

    @app.get("/admin/leads")
    async def admin_leads(_: str = Depends(require_admin), limit: int = 100):
        conn = get_connection(cfg.database_path)
        try:
            return {"items": list_recent_leads(conn, limit=max(1, min(limit, 500)))}
        finally:
            conn.close()

    @app.get("/admin/runtime/diagnostics")
    async def runtime_diagnostics(_: str = Depends(require_admin)):
        return build_runtime_diagnostics(cfg)

    return app
