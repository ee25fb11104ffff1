"""
Webhook state machine for voice survey calls.

A phone survey is a string of independent webhook deliveries. Nothing about a
call lives in memory between them: every invocation reloads the persisted
ConversationState, advances it by one turn and tells the carrier what to do
next.

    NEW ──────────────┐
                      ├─> AWAITING_TURN ─> generator ─┬─> CONTINUING  (gather)
    ContinuingCall ───┘                               └─> COMPLETING  (hangup)
                                                              │
                                         TERMINATED <─────────┘  (state deleted)

Any failure lands in TERMINATED as well: an apology, a hangup and a
best-effort delete of the call's state. Nothing raised here reaches the
carrier.
"""
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

from voice_survey.models import ConversationState, SurveyResponseRecord
from voice_survey.speech_service import SpeechOutput, SpeechService
from voice_survey.storage import ConversationStore, ResponseStore, SurveyRepository

from .completion import parse_completion
from .errors import (
    CallSurveyError,
    ConversationNotFoundError,
    StorageError,
    SurveyNotFoundError,
    WebhookInputError,
)

logger = logging.getLogger(__name__)

CLOSING_LINE = "Thank you for completing the survey. Goodbye!"
APOLOGY_LINE = "An application error has occurred. We apologize for the inconvenience. Goodbye."
SILENCE_LIMIT_LINE = "I haven't heard anything, so I'll end the call here. Thank you for your time. Goodbye."
TURN_LIMIT_LINE = "We've run out of time for this survey. Thank you for your time. Goodbye."


# ============================================================
# Events and instructions
# ============================================================

@dataclass(frozen=True)
class NewCall:
    """The call just connected; no conversation exists yet."""
    survey_id: str
    call_id: str


@dataclass(frozen=True)
class ContinuingCall:
    """The caller finished speaking (or stayed silent) on an ongoing call."""
    survey_id: str
    call_id: str
    utterance: str = ""


CallEvent = Union[NewCall, ContinuingCall]


def resolve_event(
    is_new_call: bool,
    survey_id: Optional[str],
    call_id: Optional[str],
    utterance: Optional[str] = None,
) -> CallEvent:
    """
    Turn raw webhook parameters into a typed event.

    Raises:
        WebhookInputError: if the survey or call identifier is missing
    """
    if not survey_id or not call_id:
        raise WebhookInputError(
            f"missing_identifier: surveyId={survey_id!r} callId={call_id!r}"
        )
    if is_new_call:
        return NewCall(survey_id=survey_id, call_id=call_id)
    return ContinuingCall(survey_id=survey_id, call_id=call_id, utterance=utterance or "")


class CallAction(str, Enum):
    GATHER = "gather"  # speak, listen for speech, redirect back here on silence
    HANGUP = "hangup"  # speak, end the call


class CallPhase(str, Enum):
    CONTINUING = "CONTINUING"
    COMPLETED = "COMPLETED"
    LIMIT_REACHED = "LIMIT_REACHED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class CallInstruction:
    """What the carrier should do after this invocation."""
    action: CallAction
    speech: SpeechOutput
    phase: CallPhase
    history_length: int = 0

    @property
    def text(self) -> str:
        return self.speech.text


@dataclass
class CallLimits:
    """Ceilings that guarantee every call terminates."""
    max_turns: int = 30
    max_silent_turns: int = 3
    conversation_ttl: timedelta = field(default_factory=lambda: timedelta(minutes=60))

    @classmethod
    def from_env(cls) -> "CallLimits":
        return cls(
            max_turns=int(os.getenv("MAX_CALL_TURNS", "30")),
            max_silent_turns=int(os.getenv("MAX_SILENT_TURNS", "3")),
            conversation_ttl=timedelta(minutes=int(os.getenv("CONVERSATION_TTL_MINUTES", "60"))),
        )


# ============================================================
# State machine
# ============================================================

class SurveyCallMachine:
    """Advances a survey call by one turn per webhook invocation."""

    def __init__(
        self,
        conversations: ConversationStore,
        surveys: SurveyRepository,
        responses: ResponseStore,
        generator,
        speech: SpeechService,
        limits: Optional[CallLimits] = None,
    ):
        self.conversations = conversations
        self.surveys = surveys
        self.responses = responses
        self.generator = generator
        self.speech = speech
        self.limits = limits or CallLimits()

    async def handle(self, event: CallEvent) -> CallInstruction:
        """Process one webhook event. Never raises."""
        try:
            instruction = await self._advance(event)
        except CallSurveyError as e:
            logger.warning(f"Call {event.call_id} ended: {type(e).__name__}: {e}")
            instruction = await self._fail(event.call_id)
        except Exception as e:
            logger.error(f"Webhook error for call {event.call_id}: {e}", exc_info=True)
            instruction = await self._fail(event.call_id)

        logger.info(
            "[CALL-SUMMARY] "
            f"callId={event.call_id} "
            f"surveyId={event.survey_id} "
            f"event={'new' if isinstance(event, NewCall) else 'turn'} "
            f"phase={instruction.phase.value} "
            f"action={instruction.action.value} "
            f"turns={instruction.history_length}"
        )
        return instruction

    async def reject(self, error: WebhookInputError, call_id: Optional[str] = None) -> CallInstruction:
        """Answer an invocation that could not be resolved into an event."""
        logger.warning(f"Rejecting webhook invocation: {error}")
        return await self._fail(call_id)

    async def handle_call_ended(self, call_id: str, status: str) -> bool:
        """Carrier reports the call is over; drop any state it left behind."""
        deleted = await self._discard_state(call_id)
        if deleted:
            logger.info(f"Removed orphaned conversation for call {call_id} (status={status})")
        return deleted

    async def reap_stale_conversations(self, now: Optional[datetime] = None) -> int:
        """
        Delete conversations older than the TTL.

        Callers can hang up without the carrier delivering a final event, so
        this is the backstop that keeps state from piling up. Unreadable
        records are removed too.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.limits.conversation_ttl
        reaped = 0

        for call_id in await self.conversations.list_call_ids():
            try:
                state = await self.conversations.get(call_id)
            except CallSurveyError as e:
                logger.warning(f"Unreadable conversation {call_id}, removing: {e}")
                state = None
            else:
                if state is None:
                    continue
                started = state.startTime
                if started.tzinfo is None:
                    started = started.replace(tzinfo=timezone.utc)
                if started > cutoff:
                    continue

            if await self._discard_state(call_id):
                reaped += 1
                logger.info(f"METRIC conversation_reaped callId={call_id}")

        return reaped

    # --------------------------------------------------------

    async def _advance(self, event: CallEvent) -> CallInstruction:
        if isinstance(event, NewCall):
            state = await self._start(event)
        else:
            state = await self._resume(event)

        limit_line = self._limit_reached(state)
        if limit_line is not None:
            await self._discard_state(state.callId)
            speech = await self.speech.speak(limit_line)
            return CallInstruction(
                CallAction.HANGUP, speech, CallPhase.LIMIT_REACHED, len(state.history)
            )

        raw = await self.generator.generate_turn(state.history, state.survey, call_id=state.callId)

        answers = parse_completion(raw)
        if answers is not None:
            return await self._complete(state, answers)
        return await self._continue(state, raw)

    async def _start(self, event: NewCall) -> ConversationState:
        survey = await self.surveys.get(event.survey_id)
        if survey is None:
            raise SurveyNotFoundError(event.survey_id)

        try:
            existing = await self.conversations.get(event.call_id)
        except StorageError as e:
            # Fresh state is written over the unreadable file on the first put
            logger.warning(f"Unreadable leftover conversation for new call {event.call_id}: {e}")
        else:
            if existing is not None:
                # Reused SID or a carrier retry of the answer webhook
                logger.warning(f"Replacing existing conversation for new call {event.call_id}")

        logger.info(f"Starting survey {survey.id} on call {event.call_id}")
        return ConversationState(
            callId=event.call_id,
            surveyId=event.survey_id,
            survey=survey,
        )

    async def _resume(self, event: ContinuingCall) -> ConversationState:
        state = await self.conversations.get(event.call_id)
        if state is None:
            raise ConversationNotFoundError(event.call_id)

        if state.surveyId != event.survey_id:
            logger.warning(
                f"Call {event.call_id} webhook surveyId={event.survey_id} "
                f"differs from conversation surveyId={state.surveyId}; using conversation"
            )

        utterance = event.utterance.strip()
        if utterance:
            state.add_caller_turn(utterance)
            state.silentTurns = 0
        else:
            # Silence goes to the generator with history unchanged
            state.silentTurns += 1
            logger.info(f"Silence on call {state.callId} (consecutive={state.silentTurns})")
        return state

    def _limit_reached(self, state: ConversationState) -> Optional[str]:
        if state.silentTurns >= self.limits.max_silent_turns:
            logger.info(f"Call {state.callId} hit silence limit ({state.silentTurns})")
            return SILENCE_LIMIT_LINE
        if state.assistant_turns >= self.limits.max_turns:
            logger.info(f"Call {state.callId} hit turn limit ({state.assistant_turns})")
            return TURN_LIMIT_LINE
        return None

    async def _complete(self, state: ConversationState, answers) -> CallInstruction:
        record = SurveyResponseRecord(callSid=state.callId, answers=answers)
        try:
            await self.responses.append(state.surveyId, record)
            logger.info(
                f"Survey {state.surveyId} completed on call {state.callId}: "
                f"{len(answers)} answers saved"
            )
        except Exception as e:
            logger.error(
                f"METRIC answers_persist_failed surveyId={state.surveyId} "
                f"callId={state.callId} answers={answers}: {e}",
                exc_info=True,
            )
        finally:
            await self._discard_state(state.callId)

        speech = await self.speech.speak(CLOSING_LINE)
        return CallInstruction(CallAction.HANGUP, speech, CallPhase.COMPLETED, len(state.history))

    async def _continue(self, state: ConversationState, text: str) -> CallInstruction:
        state.add_assistant_turn(text)
        try:
            await self.conversations.put(state)
        except Exception as e:
            # The caller still hears the question; the next turn will fail the lookup
            logger.error(
                f"METRIC conversation_persist_failed callId={state.callId}: {e}",
                exc_info=True,
            )

        speech = await self.speech.speak(text)
        return CallInstruction(CallAction.GATHER, speech, CallPhase.CONTINUING, len(state.history))

    async def _fail(self, call_id: Optional[str]) -> CallInstruction:
        if call_id:
            await self._discard_state(call_id)
        return CallInstruction(CallAction.HANGUP, self.speech.fallback(APOLOGY_LINE), CallPhase.FAILED)

    async def _discard_state(self, call_id: str) -> bool:
        """Delete conversation state. Failures are logged, never raised."""
        try:
            return await self.conversations.delete(call_id)
        except Exception as e:
            logger.error(f"METRIC conversation_delete_failed callId={call_id}: {e}")
            return False
