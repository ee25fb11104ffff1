"""
Call engine - completion detection and the survey call state machine.

The state machine lives in call_engine.state_machine and is imported from
there directly; it depends on voice_survey's models and storage.
"""
from .completion import (
    COMPLETION_STATUS,
    parse_completion,
    strip_code_fences,
)
from .errors import (
    CallSurveyError,
    ConversationNotFoundError,
    StorageError,
    SurveyNotFoundError,
    TurnGenerationError,
    WebhookInputError,
)

__all__ = [
    "COMPLETION_STATUS",
    "parse_completion",
    "strip_code_fences",
    "CallSurveyError",
    "ConversationNotFoundError",
    "StorageError",
    "SurveyNotFoundError",
    "TurnGenerationError",
    "WebhookInputError",
]
