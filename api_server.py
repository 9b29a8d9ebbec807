"""FastAPI webhook server for the Reminder Assistant.

This module exposes the WhatsApp webhook, the voice-response intake and a
read-only reminder listing. It only moves data in and out: every decision is
made by conversation.ConversationService.

IMPORTANT: Pydantic automatically converts datetime objects to ISO strings in responses.
"""

from datetime import datetime, timezone
from typing import List

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

import crud
import database
import schemas
from config import settings
from conversation import ConversationService
from errors import PersistenceFailure
from logger_config import setup_logger
from messaging import WhatsAppSender
from nlp_service import NLPService

logger = setup_logger(__name__, 'api.log')

# Create FastAPI application
app = FastAPI(
    title="Reminder Assistant API",
    description="Conversational WhatsApp reminder assistant with voice follow-up",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Replies we send come back through the webhook; these prefixes mark them
_OWN_MESSAGE_PREFIXES = ("✅", "⏰")


def get_sender() -> WhatsAppSender:
    return WhatsAppSender()


def get_nlp() -> NLPService:
    return NLPService()


def get_conversation(
    db: Session = Depends(database.get_db),
    sender: WhatsAppSender = Depends(get_sender),
    nlp: NLPService = Depends(get_nlp),
) -> ConversationService:
    return ConversationService(db, sender, nlp)


@app.get("/")
def root():
    """Root endpoint - service information"""
    return {
        "service": "Reminder Assistant API",
        "version": "1.0.0",
        "status": "healthy",
        "endpoints": {
            "docs": "/docs",
            "health": "/health",
            "webhook": "/webhook/whatsapp",
            "voice": "/voice/response",
            "reminders": "/reminders"
        }
    }


@app.get("/health")
def health_check():
    """Health check endpoint for monitoring"""
    return {
        "status": "healthy",
        "service": "reminder_assistant",
        "database": settings.DATABASE_URL.split("://")[0]
    }


@app.get("/webhook/whatsapp", response_class=PlainTextResponse)
def verify_webhook(request: Request):
    """Webhook verification handshake: echo the challenge when the token matches."""
    params = request.query_params
    token = params.get("hub.verify_token") or params.get("verify_token")
    challenge = params.get("hub.challenge") or params.get("challenge") or ""

    if not settings.WHATSAPP_VERIFY_TOKEN or token != settings.WHATSAPP_VERIFY_TOKEN:
        logger.warning("Webhook verification failed: token mismatch")
        raise HTTPException(status_code=403, detail="Verification token mismatch")
    return challenge


@app.post("/webhook/whatsapp")
async def receive_whatsapp(
    payload: schemas.WebhookPayload,
    db: Session = Depends(database.get_db),
    conversation: ConversationService = Depends(get_conversation),
):
    """Run one conversation turn per inbound text message.

    Request body example:
    ```json
    {"messages": [{"from": "919876543210", "type": "text", "from_me": false,
                   "text": {"body": "remind me to call mom tomorrow at 5pm"}}]}
    ```

    Always answers 200 so the gateway does not redeliver.
    """
    processed = 0
    for message in payload.messages:
        if message.type != "text" or message.text is None:
            logger.info(f"Skipping non-text message from {message.sender}")
            continue
        if message.from_me:
            continue
        body = message.text.body.strip()
        if not body or body.startswith(_OWN_MESSAGE_PREFIXES):
            continue

        try:
            user = crud.get_or_create_user(db, message.sender)
            user.last_interaction = datetime.now(timezone.utc)
            await conversation.process_message(user, body)
            processed += 1
        except Exception as e:
            logger.error(f"Error processing message from {message.sender}: {str(e)}", exc_info=True)

    return {"status": "ok", "processed": processed}


@app.post("/voice/response", response_model=schemas.VoiceResponseReply)
async def voice_response(
    request: schemas.VoiceResponseRequest,
    conversation: ConversationService = Depends(get_conversation),
):
    """Apply the caller's spoken answer to the reminder the call was about.

    Request body example:
    ```json
    {"reminder_id": "5f0c...", "speech_result": "remind me in 10 minutes"}
    ```
    """
    return await conversation.handle_voice_response(request.reminder_id, request.speech_result)


@app.get("/reminders", response_model=List[schemas.ReminderResponse])
def list_reminders(
    phone_number: str = Query(..., description="User's WhatsApp phone number"),
    db: Session = Depends(database.get_db)
):
    """List a user's non-cancelled reminders ordered by time.

    Returns list of reminders with datetime objects (serialized to ISO in JSON).
    """
    try:
        user = crud.get_user_by_phone(db, phone_number)
        if not user:
            raise HTTPException(status_code=404, detail="User not found")
        reminders = crud.get_reminders_by_user(db, user.id)
    except PersistenceFailure as e:
        raise HTTPException(status_code=503, detail=f"Storage unavailable during {e.operation}")
    return [schemas.ReminderResponse.from_reminder(r) for r in reminders]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=settings.API_HOST,
        port=settings.API_PORT,
        log_level="info"
    )
