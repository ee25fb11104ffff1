"""
OpenAI service - generates the next survey turn for a live call.

Each webhook invocation makes exactly ONE chat completion call:
- The full history is replayed every time (no cached context between calls)
- No retries: a retry mid-call risks the caller hearing two replies
- Output is returned raw; the call engine decides whether it is the
  terminal JSON signal or speech

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""

import json
import logging
import os
from typing import Dict, List, Optional

from openai import AsyncOpenAI

from call_engine.errors import TurnGenerationError

from .models import Speaker, SurveyDefinition, Turn

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 8.0

# Cue used when the call has just connected and nothing has been said yet
OPENING_CUE = "(The caller has just answered the phone. Greet them and begin the survey.)"

# Cue used when the caller stayed silent after the last assistant turn.
# Sent to the model only; never written to the conversation history.
SILENCE_CUE = "(The caller did not say anything.)"

SURVEY_AGENT_SYSTEM_PROMPT = """You are a friendly, patient, and conversational survey agent. Your goal is to guide a caller through a survey over the phone.
- The survey topic is: "{topic}".
- Here are the questions you need to ask, in order: {questions}
- Keep your responses concise and natural for a voice conversation: 1-2 short sentences.
- Ask only ONE question at a time.
- If the caller says something off-topic, gently guide them back to the survey.
- If the caller does not respond, briefly check they are still there and repeat the current question.
- Once you have clear answers for all the questions, your *very last* response must be a JSON object containing the answers. The JSON object must look like this: {{"status": "complete", "answers": {{"0": "answer to first question", "1": "answer to second question", ...}}}}. Do not say anything else, just output the raw JSON."""


def build_system_prompt(survey: SurveyDefinition) -> str:
    """Build the fixed instruction preamble for a survey."""
    return SURVEY_AGENT_SYSTEM_PROMPT.format(
        topic=survey.topic,
        questions=json.dumps(survey.question_texts),
    )


def build_messages(history: List[Turn], survey: SurveyDefinition) -> List[Dict[str, str]]:
    """Map conversation history onto chat messages, oldest first."""
    messages = [{"role": "system", "content": build_system_prompt(survey)}]

    if not history:
        messages.append({"role": "user", "content": OPENING_CUE})
        return messages

    for turn in history:
        role = "user" if turn.speaker == Speaker.CALLER else "assistant"
        messages.append({"role": role, "content": turn.text})

    if history[-1].speaker == Speaker.ASSISTANT:
        messages.append({"role": "user", "content": SILENCE_CUE})

    return messages


class OpenAIService:
    """Turn generator backed by OpenAI chat completions."""

    def __init__(self, client: Optional[AsyncOpenAI] = None):
        api_key = os.getenv("OPENAI_API_KEY")
        if client is None and not api_key:
            raise RuntimeError("OPENAI_API_KEY is required")

        self.model = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
        self.timeout = float(os.getenv("OPENAI_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)))
        # max_retries=0: one external call per webhook invocation
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=self.timeout, max_retries=0)
        logger.info(f"OpenAI service configured with model: {self.model}")

    async def generate_turn(
        self,
        history: List[Turn],
        survey: SurveyDefinition,
        call_id: str = "unknown",
    ) -> str:
        """
        Produce the next assistant utterance or the terminal JSON signal.

        Raises:
            TurnGenerationError: on API/transport errors, timeouts or empty output
        """
        messages = build_messages(history, survey)

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.7,
                max_tokens=300,
                timeout=self.timeout,
            )
        except Exception as e:
            logger.error(
                f"METRIC turn_generation_failed error={type(e).__name__} callId={call_id}: {e}"
            )
            raise TurnGenerationError(f"openai_error: {type(e).__name__}: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            logger.error(f"METRIC turn_generation_failed error=EmptyContent callId={call_id}")
            raise TurnGenerationError("openai_empty_response")

        content = content.strip()
        logger.info(f"Turn generated for call {call_id}: {content[:100]}")
        return content


# Singleton instance (created lazily)
_openai_service: Optional[OpenAIService] = None


def get_openai_service() -> OpenAIService:
    """Get or create the OpenAIService singleton."""
    global _openai_service
    if _openai_service is None:
        _openai_service = OpenAIService()
    return _openai_service
