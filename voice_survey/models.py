"""
Pydantic models for the voice survey service.
Python 3.9 compatible - uses typing.List, typing.Dict, typing.Optional
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuestionType(str, Enum):
    TEXT = "text"
    SINGLE_CHOICE = "single-choice"
    MULTIPLE_CHOICE = "multiple-choice"
    RATING = "rating"


class Question(BaseModel):
    text: str
    type: QuestionType = QuestionType.TEXT
    options: Optional[List[str]] = None  # single/multiple choice
    min: Optional[int] = None  # rating scale bounds
    max: Optional[int] = None

    @field_validator("type", mode="before")
    @classmethod
    def _unknown_type_is_text(cls, value):
        # Survey files written by the dashboard use a few extra labels
        # ("yes-no", "nps"); the agent only needs the prompt text for those.
        if isinstance(value, QuestionType):
            return value
        try:
            return QuestionType(str(value).lower())
        except ValueError:
            return QuestionType.TEXT


class SurveyDefinition(BaseModel):
    """Survey as loaded from the survey repository. Never mutated during a call."""
    id: str
    topic: str = ""
    questions: List[Question] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _topic_from_title(cls, data):
        if isinstance(data, dict) and not data.get("topic") and data.get("title"):
            data = {**data, "topic": data["title"]}
        return data

    @property
    def question_texts(self) -> List[str]:
        return [q.text for q in self.questions]


class Speaker(str, Enum):
    CALLER = "caller"
    ASSISTANT = "assistant"


class Turn(BaseModel):
    speaker: Speaker
    text: str


class ConversationState(BaseModel):
    """Durable state for one in-progress call, keyed by the carrier's call SID."""
    callId: str
    surveyId: str
    survey: SurveyDefinition  # snapshot taken when the call started
    history: List[Turn] = Field(default_factory=list)
    startTime: datetime = Field(default_factory=utcnow)
    silentTurns: int = 0

    def add_caller_turn(self, text: str) -> None:
        self.history.append(Turn(speaker=Speaker.CALLER, text=text))

    def add_assistant_turn(self, text: str) -> None:
        self.history.append(Turn(speaker=Speaker.ASSISTANT, text=text))

    @property
    def assistant_turns(self) -> int:
        return sum(1 for turn in self.history if turn.speaker == Speaker.ASSISTANT)


class SurveyResponseRecord(BaseModel):
    """One completed voice survey, appended to the survey's response log."""
    submittedAt: datetime = Field(default_factory=utcnow)
    type: str = "voice-ai"
    callSid: str
    answers: Dict[str, str]


# ============================================================
# Outbound call placement
# ============================================================

class CallStartRequest(BaseModel):
    surveyId: str
    phoneNumbers: List[str]


class PlacedCall(BaseModel):
    phoneE164: str
    callId: Optional[str] = None
    status: str  # Twilio status on success, "failed" otherwise
    error: Optional[str] = None


class CallStartResponse(BaseModel):
    surveyId: str
    calls: List[PlacedCall]
    message: str
