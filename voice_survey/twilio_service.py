"""
Twilio Service - outbound survey calls and TwiML rendering.

This service:
1. Places outbound survey calls via the Twilio REST API
2. Renders CallInstructions from the call engine as TwiML

Twilio answers with a GET to /calls/webhook?surveyId=... (new call). Each
<Gather> posts the caller's speech back to the same URL (ongoing turn).

Python 3.9 compatible.
"""

import logging
import os
import re
from typing import Optional
from urllib.parse import urlencode

from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import VoiceResponse

from call_engine.state_machine import CallAction, CallInstruction

from .models import PlacedCall
from .speech_service import SpeechOutput

logger = logging.getLogger(__name__)

# Twilio statuses after which no further webhook will arrive for a call
TERMINAL_CALL_STATUSES = {"completed", "busy", "failed", "no-answer", "canceled"}

GATHER_SPEECH_TIMEOUT = "2"
GATHER_TIMEOUT_SECONDS = 5

# Twilio abandons a voice webhook that has not answered within this many seconds
VOICE_WEBHOOK_DEADLINE_SECONDS = 15


def validate_phone_e164(phone: str) -> bool:
    """
    Validate E.164 phone format: starts with +, followed by digits only.
    Examples: +61731824583, +14155551234
    """
    if not phone:
        return False
    pattern = r'^\+[1-9]\d{6,14}$'
    return bool(re.match(pattern, phone))


def webhook_url(survey_id: str, base_url: Optional[str] = None) -> str:
    """URL of the survey webhook for `survey_id`, absolute when a base is configured."""
    if base_url is None:
        base_url = os.getenv("WEBHOOK_BASE_URL", "")
    return f"{base_url.rstrip('/')}/calls/webhook?{urlencode({'surveyId': survey_id})}"


def _add_speech(verb, speech: SpeechOutput) -> None:
    if speech.is_audio:
        verb.play(speech.audio_url)
    else:
        verb.say(speech.text, voice=speech.voice)


def render_twiml(instruction: CallInstruction, gather_url: str) -> str:
    """
    Render a call instruction as a TwiML document.

    GATHER: speak inside <Gather> and, if the caller says nothing, <Redirect>
    back to the webhook so the generator decides how to handle the silence.
    HANGUP: speak, then <Hangup/>.
    """
    response = VoiceResponse()

    if instruction.action == CallAction.GATHER:
        gather = response.gather(
            input="speech",
            speech_timeout=GATHER_SPEECH_TIMEOUT,
            timeout=GATHER_TIMEOUT_SECONDS,
            action=gather_url,
            method="POST",
        )
        _add_speech(gather, instruction.speech)
        response.redirect(gather_url, method="POST")
    else:
        _add_speech(response, instruction.speech)
        response.hangup()

    return str(response)


class TwilioService:
    """Service for placing outbound survey calls."""

    def __init__(self):
        """Initialize Twilio client.

        Does NOT crash if Twilio not configured - allows graceful degradation.
        /calls/start returns 503 if Twilio not configured.
        """
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN")
        self.phone_number = os.getenv("TWILIO_PHONE_NUMBER")
        self.webhook_base_url = os.getenv("WEBHOOK_BASE_URL", "")

        self.client: Optional[TwilioClient] = None

        if self.account_sid and self.auth_token and self.phone_number:
            self.client = TwilioClient(self.account_sid, self.auth_token)
            logger.info(f"TwilioService configured with phone: {self.phone_number}")
        else:
            logger.warning("TwilioService: Twilio credentials not configured - calls will fail")

    @property
    def is_configured(self) -> bool:
        """Check if Twilio is properly configured."""
        return self.client is not None

    def start_survey_call(self, survey_id: str, phone_e164: str) -> PlacedCall:
        """Place an outbound call that runs survey `survey_id`.

        Args:
            survey_id: Survey to conduct on the call
            phone_e164: Phone number in E.164 format

        Returns:
            PlacedCall with the Twilio Call SID

        Raises:
            RuntimeError: If Twilio or WEBHOOK_BASE_URL is not configured
            Exception: If the Twilio API call fails
        """
        if not self.is_configured:
            raise RuntimeError("Twilio not configured")

        if not self.webhook_base_url:
            raise RuntimeError("WEBHOOK_BASE_URL not configured - required for Twilio webhooks")

        voice_url = webhook_url(survey_id, self.webhook_base_url)
        status_callback = f"{self.webhook_base_url.rstrip('/')}/calls/status"

        logger.info(f"Starting survey call to {phone_e164} for survey {survey_id}")

        call = self.client.calls.create(
            to=phone_e164,
            from_=self.phone_number,
            url=voice_url,
            method="GET",
            status_callback=status_callback,
            status_callback_event=["completed"],
            status_callback_method="POST",
        )

        logger.info(f"Twilio call started: SID={call.sid}, status={call.status}")
        return PlacedCall(phoneE164=phone_e164, callId=call.sid, status=call.status)


# Singleton instance (created lazily)
_twilio_service: Optional[TwilioService] = None


def get_twilio_service() -> TwilioService:
    """Get or create the TwilioService singleton."""
    global _twilio_service
    if _twilio_service is None:
        _twilio_service = TwilioService()
    return _twilio_service
