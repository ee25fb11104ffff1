"""
Speech output for live calls.

Two paths:
1. Primary: ElevenLabs synthesis, saved as an MP3 the carrier fetches via <Play>
2. Fallback: Twilio's built-in <Say> voice - no external call, cannot fail

speak() always returns something the caller will hear. Any problem on the
primary path (not configured, network error, non-2xx, empty audio, disk
error) drops to the fallback voice. There are no retries beyond that swap.

Synthesized files get a unique name per utterance and are never cleaned up
here.
"""

import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import aiofiles
import httpx

logger = logging.getLogger(__name__)

ELEVENLABS_API_BASE = "https://api.elevenlabs.io"
DEFAULT_FALLBACK_VOICE = "Polly.Joanna"
DEFAULT_TIMEOUT_SECONDS = 4.0


@dataclass(frozen=True)
class SpeechOutput:
    """How an utterance will be voiced: a playable audio URL or carrier TTS."""
    text: str
    audio_url: Optional[str] = None
    voice: Optional[str] = None

    @property
    def is_audio(self) -> bool:
        return self.audio_url is not None


class SpeechService:
    """Renders assistant utterances as audio for the caller."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        voice_id: Optional[str] = None,
        audio_dir: Optional[str] = None,
        public_base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("ELEVENLABS_API_KEY")
        self.voice_id = voice_id if voice_id is not None else os.getenv("ELEVENLABS_VOICE_ID")
        self.model_id = os.getenv("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2")
        self.fallback_voice = os.getenv("FALLBACK_VOICE", DEFAULT_FALLBACK_VOICE)
        self.timeout = float(os.getenv("TTS_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)))

        if audio_dir is None:
            audio_dir = str(Path(os.getenv("SURVEY_DATA_DIR", "./data")) / "audio")
        self.audio_dir = Path(audio_dir)

        if public_base_url is None:
            public_base_url = os.getenv("WEBHOOK_BASE_URL", "")
        self.public_base_url = public_base_url.rstrip("/")

        self._transport = transport

        if self.is_primary_configured:
            logger.info(f"SpeechService: ElevenLabs voice {self.voice_id} enabled")
        else:
            logger.warning(
                f"SpeechService: ElevenLabs not configured - using fallback voice {self.fallback_voice}"
            )

    @property
    def is_primary_configured(self) -> bool:
        return bool(self.api_key and self.voice_id and self.public_base_url)

    def audio_url_for(self, filename: str) -> str:
        return f"{self.public_base_url}/audio/{filename}"

    async def speak(self, text: str) -> SpeechOutput:
        """Voice `text`, preferring ElevenLabs. Never raises."""
        try:
            output = await self._synthesize_primary(text)
        except Exception as e:
            logger.error(f"METRIC tts_fallback reason=unexpected_{type(e).__name__}: {e}", exc_info=True)
            output = None
        if output is not None:
            return output
        return self.fallback(text)

    def fallback(self, text: str) -> SpeechOutput:
        """Carrier-native voice. No I/O, always succeeds."""
        return SpeechOutput(text=text, voice=self.fallback_voice)

    async def _synthesize_primary(self, text: str) -> Optional[SpeechOutput]:
        """Attempt ElevenLabs synthesis. Returns None on any failure."""
        if not self.is_primary_configured:
            return None
        if not text.strip():
            return None

        url = f"{ELEVENLABS_API_BASE}/v1/text-to-speech/{self.voice_id}"
        headers = {
            "xi-api-key": self.api_key,
            "Content-Type": "application/json",
            "Accept": "audio/mpeg",
        }
        payload = {"text": text, "model_id": self.model_id}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    headers=headers,
                    json=payload,
                    params={"output_format": "mp3_22050_32"},
                )
        except httpx.HTTPError as e:
            logger.warning(f"METRIC tts_fallback reason={type(e).__name__}: {e}")
            return None

        if response.status_code != 200:
            logger.warning(
                f"METRIC tts_fallback reason=status_{response.status_code}: "
                f"{response.text[:200]}"
            )
            return None

        audio = response.content
        if not audio:
            logger.warning("METRIC tts_fallback reason=empty_audio")
            return None

        filename = f"{uuid.uuid4().hex}.mp3"
        try:
            self.audio_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.audio_dir / filename, "wb") as f:
                await f.write(audio)
        except OSError as e:
            logger.warning(f"METRIC tts_fallback reason=write_failed: {e}")
            return None

        logger.debug(f"Synthesized {len(audio)} bytes to {filename}")
        return SpeechOutput(text=text, audio_url=self.audio_url_for(filename))


# Singleton instance (created lazily)
_speech_service: Optional[SpeechService] = None


def get_speech_service() -> SpeechService:
    """Get or create the SpeechService singleton."""
    global _speech_service
    if _speech_service is None:
        _speech_service = SpeechService()
    return _speech_service
