"""
Error taxonomy for the call-survey engine.

Every error raised while handling a webhook invocation is one of these.
They are all caught at the SurveyCallMachine boundary and turned into the
apology/hangup instruction; the subclasses exist so logs can tell an input
problem from a lookup miss from an outage.
"""


class CallSurveyError(Exception):
    """Base class for call-survey failures."""


class WebhookInputError(CallSurveyError):
    """Webhook invocation is missing the survey or call identifier."""


class SurveyNotFoundError(CallSurveyError):
    """No survey definition exists for the requested identifier."""

    def __init__(self, survey_id: str):
        super().__init__(f"survey_not_found: {survey_id}")
        self.survey_id = survey_id


class ConversationNotFoundError(CallSurveyError):
    """An ongoing-turn event arrived for a call with no persisted state."""

    def __init__(self, call_id: str):
        super().__init__(f"conversation_not_found: {call_id}")
        self.call_id = call_id


class TurnGenerationError(CallSurveyError):
    """The language model call failed, timed out or returned nothing usable."""


class StorageError(CallSurveyError):
    """Reading or writing durable state failed."""
