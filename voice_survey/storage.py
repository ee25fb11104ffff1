"""
Durable state for the voice survey service.

Three stores, each behind a small async interface so the call engine never
touches the filesystem directly:

- ConversationStore: in-progress call state, keyed by call SID
- SurveyRepository: survey definitions, read-only
- ResponseStore: append-only log of completed responses per survey

In-memory implementations back the tests; the JSON file implementations keep
the on-disk layout the dashboard already reads:

    <data_dir>/surveys/<surveyId>.json
    <data_dir>/responses/<surveyId>.json      (JSON array of records)
    <data_dir>/conversations/<callSid>.json
"""

import asyncio
import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import aiofiles
import aiofiles.os
from pydantic import ValidationError

from call_engine.errors import StorageError

from .models import ConversationState, SurveyDefinition, SurveyResponseRecord

logger = logging.getLogger(__name__)

# Call SIDs and survey ids become filenames; keep them to a safe alphabet
_SAFE_KEY = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def _check_key(key: str, kind: str) -> str:
    if not key or not _SAFE_KEY.match(key):
        raise StorageError(f"invalid_{kind}: {key!r}")
    return key


async def _read_json(path: Path):
    """Read and decode a JSON file. Returns None if the file does not exist."""
    if not path.exists():
        return None
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
    except OSError as e:
        raise StorageError(f"read_failed: {path.name}: {e}") from e
    if not content.strip():
        return None
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise StorageError(f"corrupt_json: {path.name}: {e}") from e


async def _write_json_atomic(path: Path, data) -> None:
    """Write JSON via a temp file and rename so readers never see a partial file."""
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2, default=str))
        await aiofiles.os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path.exists():
            tmp_path.unlink()
        raise StorageError(f"write_failed: {path.name}: {e}") from e


# ============================================================
# Conversation state
# ============================================================

class ConversationStore(ABC):
    """Key-value store of in-progress conversations keyed by call SID."""

    @abstractmethod
    async def get(self, call_id: str) -> Optional[ConversationState]:
        ...

    @abstractmethod
    async def put(self, state: ConversationState) -> None:
        ...

    @abstractmethod
    async def delete(self, call_id: str) -> bool:
        """Delete state for a call. Returns True if a record existed."""
        ...

    @abstractmethod
    async def list_call_ids(self) -> List[str]:
        ...


class InMemoryConversationStore(ConversationStore):
    """Dict-backed store. Copies on the way in and out, like a real store would."""

    def __init__(self):
        self._states: Dict[str, ConversationState] = {}

    async def get(self, call_id: str) -> Optional[ConversationState]:
        state = self._states.get(call_id)
        return state.model_copy(deep=True) if state else None

    async def put(self, state: ConversationState) -> None:
        self._states[state.callId] = state.model_copy(deep=True)

    async def delete(self, call_id: str) -> bool:
        return self._states.pop(call_id, None) is not None

    async def list_call_ids(self) -> List[str]:
        return list(self._states.keys())


class JsonFileConversationStore(ConversationStore):
    """One JSON file per call under <data_dir>/conversations/."""

    def __init__(self, data_dir: str):
        self.directory = Path(data_dir) / "conversations"

    def _path(self, call_id: str) -> Path:
        return self.directory / f"{_check_key(call_id, 'call_id')}.json"

    async def get(self, call_id: str) -> Optional[ConversationState]:
        data = await _read_json(self._path(call_id))
        if data is None:
            return None
        try:
            return ConversationState.model_validate(data)
        except ValidationError as e:
            raise StorageError(f"corrupt_conversation: {call_id}: {e}") from e

    async def put(self, state: ConversationState) -> None:
        await _write_json_atomic(self._path(state.callId), state.model_dump(mode="json"))

    async def delete(self, call_id: str) -> bool:
        path = self._path(call_id)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"delete_failed: {call_id}: {e}") from e
        return True

    async def list_call_ids(self) -> List[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


# ============================================================
# Survey definitions
# ============================================================

class SurveyRepository(ABC):

    @abstractmethod
    async def get(self, survey_id: str) -> Optional[SurveyDefinition]:
        ...


class InMemorySurveyRepository(SurveyRepository):

    def __init__(self, surveys: Optional[List[SurveyDefinition]] = None):
        self._surveys: Dict[str, SurveyDefinition] = {s.id: s for s in surveys or []}

    async def get(self, survey_id: str) -> Optional[SurveyDefinition]:
        survey = self._surveys.get(survey_id)
        return survey.model_copy(deep=True) if survey else None


class JsonFileSurveyRepository(SurveyRepository):
    """Reads <data_dir>/surveys/<surveyId>.json as written by the dashboard."""

    def __init__(self, data_dir: str):
        self.directory = Path(data_dir) / "surveys"

    async def get(self, survey_id: str) -> Optional[SurveyDefinition]:
        path = self.directory / f"{_check_key(survey_id, 'survey_id')}.json"
        data = await _read_json(path)
        if data is None:
            return None
        if isinstance(data, dict) and "id" not in data:
            data = {**data, "id": survey_id}
        try:
            return SurveyDefinition.model_validate(data)
        except ValidationError as e:
            raise StorageError(f"corrupt_survey: {survey_id}: {e}") from e


# ============================================================
# Survey responses (append-only)
# ============================================================

class ResponseStore(ABC):

    @abstractmethod
    async def append(self, survey_id: str, record: SurveyResponseRecord) -> None:
        ...

    @abstractmethod
    async def list(self, survey_id: str) -> List[SurveyResponseRecord]:
        ...


class InMemoryResponseStore(ResponseStore):

    def __init__(self):
        self._records: Dict[str, List[SurveyResponseRecord]] = {}

    async def append(self, survey_id: str, record: SurveyResponseRecord) -> None:
        self._records.setdefault(survey_id, []).append(record.model_copy(deep=True))

    async def list(self, survey_id: str) -> List[SurveyResponseRecord]:
        return [r.model_copy(deep=True) for r in self._records.get(survey_id, [])]


class JsonFileResponseStore(ResponseStore):
    """
    Response log stored as a JSON array per survey.

    Appends are read-modify-write, so they are serialized per survey id with
    an asyncio.Lock. The lock only covers this process; run one writer
    process per data directory.
    """

    def __init__(self, data_dir: str):
        self.directory = Path(data_dir) / "responses"
        self._locks: Dict[str, asyncio.Lock] = {}

    def _path(self, survey_id: str) -> Path:
        return self.directory / f"{_check_key(survey_id, 'survey_id')}.json"

    def _lock_for(self, survey_id: str) -> asyncio.Lock:
        lock = self._locks.get(survey_id)
        if lock is None:
            lock = self._locks[survey_id] = asyncio.Lock()
        return lock

    async def _read_records(self, path: Path) -> list:
        data = await _read_json(path)
        if data is None:
            return []
        if not isinstance(data, list):
            # Never overwrite a file we cannot interpret; prior responses live there
            raise StorageError(f"corrupt_responses: {path.name} is not a JSON array")
        return data

    async def append(self, survey_id: str, record: SurveyResponseRecord) -> None:
        path = self._path(survey_id)
        async with self._lock_for(survey_id):
            records = await self._read_records(path)
            records.append(record.model_dump(mode="json"))
            await _write_json_atomic(path, records)
        logger.info(f"Response appended for survey {survey_id} (total={len(records)})")

    async def list(self, survey_id: str) -> List[SurveyResponseRecord]:
        records = await self._read_records(self._path(survey_id))
        return [SurveyResponseRecord.model_validate(r) for r in records]
