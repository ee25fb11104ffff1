"""
Shared fixtures: in-memory stores, a scripted turn generator and a call
machine wired to them, plus an HTTP client with the machine injected.
"""

import os
import tempfile
from typing import List, Union

import pytest
from httpx import ASGITransport, AsyncClient

# Set test configuration before importing app
os.environ["OPENAI_API_KEY"] = "test-key-for-testing"
os.environ["OPENAI_MODEL"] = "gpt-4o-mini"
os.environ.setdefault("SURVEY_DATA_DIR", tempfile.mkdtemp(prefix="voice-survey-test-"))
os.environ["WEBHOOK_BASE_URL"] = "https://surveys.example.com"

# NOTE: Twilio and ElevenLabs credentials are intentionally NOT set in tests
for _var in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER",
             "ELEVENLABS_API_KEY", "ELEVENLABS_VOICE_ID"):
    os.environ.pop(_var, None)

from call_engine.state_machine import CallLimits, SurveyCallMachine
from voice_survey.main import app, provide_call_machine
from voice_survey.models import Question, QuestionType, SurveyDefinition
from voice_survey.speech_service import SpeechService
from voice_survey.storage import (
    InMemoryConversationStore,
    InMemoryResponseStore,
    InMemorySurveyRepository,
)


class ScriptedGenerator:
    """Turn generator returning canned replies; an Exception entry is raised."""

    def __init__(self, replies: List[Union[str, Exception]] = None):
        self.replies = list(replies or [])
        self.calls = []

    def queue(self, *replies: Union[str, Exception]) -> None:
        self.replies.extend(replies)

    async def generate_turn(self, history, survey, call_id="unknown"):
        self.calls.append([turn.model_copy() for turn in history])
        if not self.replies:
            raise AssertionError("ScriptedGenerator ran out of replies")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def survey() -> SurveyDefinition:
    return SurveyDefinition(
        id="s1",
        topic="Campus dining",
        questions=[
            Question(text="How would you rate the food, from 1 to 10?", type=QuestionType.RATING, min=1, max=10),
            Question(text="Which dining hall do you use most?", type=QuestionType.SINGLE_CHOICE,
                     options=["North", "South"]),
        ],
    )


@pytest.fixture
def surveys(survey) -> InMemorySurveyRepository:
    return InMemorySurveyRepository([survey])


@pytest.fixture
def conversations() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def responses() -> InMemoryResponseStore:
    return InMemoryResponseStore()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def speech(tmp_path) -> SpeechService:
    """Speech service with no ElevenLabs credentials - fallback voice only."""
    return SpeechService(api_key="", voice_id="", audio_dir=str(tmp_path / "audio"), public_base_url="")


@pytest.fixture
def limits() -> CallLimits:
    return CallLimits(max_turns=6, max_silent_turns=3)


@pytest.fixture
def machine(conversations, surveys, responses, generator, speech, limits) -> SurveyCallMachine:
    return SurveyCallMachine(
        conversations=conversations,
        surveys=surveys,
        responses=responses,
        generator=generator,
        speech=speech,
        limits=limits,
    )


@pytest.fixture
async def client(machine):
    """Create async test client with the in-memory call machine injected."""
    app.dependency_overrides[provide_call_machine] = lambda: machine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
