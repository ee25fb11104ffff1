"""
Voice Survey Backend - FastAPI Application

Runs phone surveys as a webhook-driven conversation: every Twilio webhook
reloads the call's conversation state, asks OpenAI for the next turn and
answers with TwiML. No call state is held in memory between requests.

Python 3.9 compatible.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Form, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles

from call_engine.errors import WebhookInputError
from call_engine.state_machine import (
    APOLOGY_LINE,
    CallAction,
    CallInstruction,
    CallLimits,
    CallPhase,
    SurveyCallMachine,
    resolve_event,
)

from .models import CallStartRequest, CallStartResponse, PlacedCall
from .openai_service import get_openai_service
from .speech_service import DEFAULT_FALLBACK_VOICE, SpeechOutput, get_speech_service
from .storage import JsonFileConversationStore, JsonFileResponseStore, JsonFileSurveyRepository
from .twilio_service import (
    TERMINAL_CALL_STATUSES,
    TwilioService,
    get_twilio_service,
    render_twiml,
    validate_phone_e164,
    webhook_url,
)

# Load environment variables from the project .env
# Try multiple paths to ensure we find .env
env_paths = [
    Path(__file__).parent.parent / ".env",  # project root
    Path.cwd() / ".env",  # current working directory
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    load_dotenv()  # fallback to default behavior

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

DATA_DIR = os.getenv("SURVEY_DATA_DIR", "./data")
AUDIO_DIR = Path(DATA_DIR) / "audio"

# Service instances (created lazily, see get_survey_call_machine)
_call_machine: Optional[SurveyCallMachine] = None


def _mask_key(key: Optional[str]) -> str:
    """Mask API key showing only last 4 chars."""
    if not key:
        return "(not set)"
    if len(key) <= 4:
        return "****"
    return f"****{key[-4:]}"


def get_survey_call_machine() -> SurveyCallMachine:
    """Get or create the SurveyCallMachine singleton wired to file storage."""
    global _call_machine
    if _call_machine is None:
        _call_machine = SurveyCallMachine(
            conversations=JsonFileConversationStore(DATA_DIR),
            surveys=JsonFileSurveyRepository(DATA_DIR),
            responses=JsonFileResponseStore(DATA_DIR),
            generator=get_openai_service(),
            speech=get_speech_service(),
            limits=CallLimits.from_env(),
        )
    return _call_machine


def provide_call_machine() -> Optional[SurveyCallMachine]:
    """FastAPI dependency. Returns None if the machine cannot be built."""
    try:
        return get_survey_call_machine()
    except Exception as e:
        logger.error(f"Call machine unavailable: {e}", exc_info=True)
        return None


def provide_twilio_service() -> TwilioService:
    return get_twilio_service()


async def _reap_periodically(machine: SurveyCallMachine, interval_seconds: float) -> None:
    """Background loop deleting conversations abandoned without a final webhook."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            reaped = await machine.reap_stale_conversations()
            if reaped:
                logger.info(f"Reaper removed {reaped} stale conversation(s)")
        except Exception as e:
            logger.error(f"Reaper pass failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - initialize services and the reaper."""
    logger.info("=" * 60)
    logger.info("Initializing Voice Survey Backend")
    logger.info("=" * 60)

    openai_key = os.getenv("OPENAI_API_KEY")
    elevenlabs_key = os.getenv("ELEVENLABS_API_KEY")

    logger.info(f"OPENAI_API_KEY present: {bool(openai_key)} ({_mask_key(openai_key)})")
    logger.info(f"ELEVENLABS_API_KEY present: {bool(elevenlabs_key)} ({_mask_key(elevenlabs_key)})")
    logger.info(f"OPENAI_MODEL: {os.getenv('OPENAI_MODEL', 'gpt-4o-mini')}")
    logger.info(f"SURVEY_DATA_DIR: {DATA_DIR}")

    # FAIL FAST if OPENAI_API_KEY is missing
    if not openai_key:
        error_msg = (
            "OPENAI_API_KEY is required. "
            "Set it in .env or as an environment variable."
        )
        logger.error(error_msg)
        raise RuntimeError(error_msg)

    machine = get_survey_call_machine()
    logger.info("Survey call machine initialized successfully")

    twilio_service = get_twilio_service()
    if twilio_service.is_configured:
        logger.info("Twilio service initialized successfully")
    else:
        logger.warning("Twilio service NOT fully configured - outbound calls will fail gracefully")

    interval = float(os.getenv("REAPER_INTERVAL_SECONDS", "300"))
    reaper = asyncio.create_task(_reap_periodically(machine, interval))
    logger.info(f"Conversation reaper running every {interval:.0f}s")

    logger.info("=" * 60)

    yield

    # Shutdown
    reaper.cancel()
    try:
        await reaper
    except asyncio.CancelledError:
        pass
    logger.info("Shutting down Voice Survey Backend")


app = FastAPI(
    title="Voice Survey Backend",
    description="Phone surveys conducted by an LLM over Twilio webhooks",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware for the dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Synthesized speech, fetched by Twilio through <Play>
app.mount("/audio", StaticFiles(directory=str(AUDIO_DIR), check_dir=False), name="audio")


def _twiml_response(twiml: str) -> Response:
    return Response(content=twiml, media_type="application/xml")


def _apology_twiml() -> str:
    """TwiML for when nothing else is available, not even the call machine."""
    instruction = CallInstruction(
        action=CallAction.HANGUP,
        speech=SpeechOutput(text=APOLOGY_LINE, voice=os.getenv("FALLBACK_VOICE", DEFAULT_FALLBACK_VOICE)),
        phase=CallPhase.FAILED,
    )
    return render_twiml(instruction, gather_url="")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


# ============================================================
# Twilio Webhooks
# ============================================================

@app.api_route("/calls/webhook", methods=["GET", "POST"])
async def survey_call_webhook(
    request: Request,
    surveyId: Optional[str] = Query(None),
    machine: Optional[SurveyCallMachine] = Depends(provide_call_machine),
):
    """
    Twilio voice webhook for survey calls.

    - GET: the call was answered (CallSid in the query string) -> new call
    - POST: a <Gather> finished (CallSid, SpeechResult in the form body) -> ongoing turn

    Always returns 200 with TwiML. Failures become a spoken apology and a hangup.
    """
    try:
        if request.method == "POST":
            form = await request.form()
            call_id = form.get("CallSid") or request.query_params.get("CallSid")
            utterance = form.get("SpeechResult") or ""
        else:
            call_id = request.query_params.get("CallSid")
            utterance = ""

        logger.info(
            f"Webhook {request.method}: surveyId={surveyId} callId={call_id} "
            f"speech='{utterance[:50]}'"
        )

        if machine is None:
            return _twiml_response(_apology_twiml())

        try:
            event = resolve_event(
                is_new_call=request.method == "GET",
                survey_id=surveyId,
                call_id=call_id,
                utterance=utterance,
            )
        except WebhookInputError as e:
            instruction = await machine.reject(e, call_id=call_id)
            return _twiml_response(render_twiml(instruction, gather_url=""))

        instruction = await machine.handle(event)
        return _twiml_response(render_twiml(instruction, gather_url=webhook_url(event.survey_id)))

    except Exception as e:
        # Last-resort barrier - the carrier must always get TwiML back
        logger.error(f"Unhandled webhook error: {e}", exc_info=True)
        return _twiml_response(_apology_twiml())


@app.post("/calls/status")
async def survey_call_status(
    CallSid: str = Form(...),
    CallStatus: str = Form(...),
    CallDuration: str = Form(None),
    machine: Optional[SurveyCallMachine] = Depends(provide_call_machine),
):
    """
    Twilio status callback.

    When a call reaches a terminal status, any conversation state it left
    behind (caller hung up mid-survey) is deleted.
    """
    logger.info(f"Twilio status webhook: CallSid={CallSid}, status={CallStatus}, duration={CallDuration}")

    cleaned_up = False
    if CallStatus in TERMINAL_CALL_STATUSES and machine is not None:
        cleaned_up = await machine.handle_call_ended(CallSid, CallStatus)

    return {"status": "ok", "conversationRemoved": cleaned_up}


# ============================================================
# Outbound survey calls
# ============================================================

@app.post("/calls/start", response_model=CallStartResponse)
async def start_survey_calls(
    request: CallStartRequest,
    machine: Optional[SurveyCallMachine] = Depends(provide_call_machine),
    twilio_service: TwilioService = Depends(provide_twilio_service),
) -> CallStartResponse:
    """
    Place one outbound survey call per phone number.

    Errors:
        400: No numbers, or a number is not E.164
        404: Survey not found
        503: Twilio (or the call machine) not configured
    """
    logger.info(f"Call start: surveyId={request.surveyId}, numbers={len(request.phoneNumbers)}")

    if not request.phoneNumbers:
        raise HTTPException(status_code=400, detail="no_phone_numbers: phoneNumbers is empty")

    invalid = [n for n in request.phoneNumbers if not validate_phone_e164(n)]
    if invalid:
        logger.warning(f"Invalid phone E.164: {invalid}")
        raise HTTPException(
            status_code=400,
            detail=f"invalid_phone_e164: Phone must be E.164 format, got: {', '.join(invalid)}"
        )

    if machine is None:
        raise HTTPException(status_code=503, detail="service_unavailable: call machine not configured")

    if await machine.surveys.get(request.surveyId) is None:
        raise HTTPException(status_code=404, detail=f"survey_not_found: {request.surveyId}")

    if not twilio_service.is_configured:
        logger.error("Twilio service not configured")
        raise HTTPException(
            status_code=503,
            detail="twilio_not_configured: Twilio credentials are missing"
        )

    calls = []
    for number in request.phoneNumbers:
        try:
            calls.append(twilio_service.start_survey_call(request.surveyId, number))
        except Exception as e:
            logger.error(f"Call start failed for {number}: {e}", exc_info=True)
            calls.append(PlacedCall(phoneE164=number, status="failed", error=str(e)))

    placed = sum(1 for c in calls if c.callId)
    return CallStartResponse(
        surveyId=request.surveyId,
        calls=calls,
        message=f"{placed} of {len(calls)} calls initiated",
    )


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
