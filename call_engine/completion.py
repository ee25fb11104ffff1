"""
Completion detection for generator output.

The turn generator signals the end of a survey by replying with a raw JSON
object instead of speech:

    {"status": "complete", "answers": {"0": "...", "1": "..."}}

Anything else is conversational text. A missed completion only costs one more
turn, while a false positive hangs up on the caller, so the shape check is
strict and every parse failure means "not terminal".
"""
import json
import logging
import re
from typing import Dict, Optional

logger = logging.getLogger(__name__)

COMPLETION_STATUS = "complete"

_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)


def strip_code_fences(raw: str) -> str:
    """Remove markdown code fences the model sometimes wraps JSON in."""
    return _FENCE_PATTERN.sub("", raw).strip()


def parse_completion(raw: Optional[str]) -> Optional[Dict[str, str]]:
    """
    Return the extracted answers if `raw` is the terminal signal, else None.

    Requires a top-level object with status == "complete" and a non-empty
    "answers" object. Answer keys are kept as given (question ordinals);
    values are coerced to strings.
    """
    if not raw:
        return None

    cleaned = strip_code_fences(raw)
    if not cleaned.startswith("{"):
        return None

    try:
        data = json.loads(cleaned)
    except (json.JSONDecodeError, ValueError):
        logger.debug("Generator output looked like JSON but did not parse")
        return None

    if not isinstance(data, dict):
        return None
    if data.get("status") != COMPLETION_STATUS:
        return None

    answers = data.get("answers")
    if not isinstance(answers, dict) or not answers:
        return None

    return {
        str(key): value if isinstance(value, str) else json.dumps(value)
        for key, value in answers.items()
    }
