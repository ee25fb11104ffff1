"""
Tests for speech output (voice_survey.speech_service).

These tests verify that:
1. Without ElevenLabs configuration every utterance uses the fallback voice
2. Successful synthesis writes a uniquely named MP3 and returns its public URL
3. Any primary failure (HTTP error status, network error, empty body) falls back
"""

import httpx
import pytest

from voice_survey.speech_service import SpeechService


def elevenlabs_service(tmp_path, handler) -> SpeechService:
    return SpeechService(
        api_key="el-test-key",
        voice_id="voice123",
        audio_dir=str(tmp_path / "audio"),
        public_base_url="https://surveys.example.com/",
        transport=httpx.MockTransport(handler),
    )


class TestFallback:

    @pytest.mark.asyncio
    async def test_unconfigured_uses_fallback(self, speech):
        output = await speech.speak("How would you rate the food?")

        assert not output.is_audio
        assert output.text == "How would you rate the food?"
        assert output.voice == "Polly.Joanna"

    @pytest.mark.asyncio
    async def test_missing_public_url_uses_fallback(self, tmp_path):
        service = SpeechService(api_key="k", voice_id="v", audio_dir=str(tmp_path), public_base_url="")
        assert service.is_primary_configured is False
        assert not (await service.speak("Hello")).is_audio


class TestElevenLabsPrimary:

    @pytest.mark.asyncio
    async def test_success_writes_unique_audio_files(self, tmp_path):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=b"ID3fake-mp3-bytes")

        service = elevenlabs_service(tmp_path, handler)

        first = await service.speak("Hello there")
        second = await service.speak("Hello there")

        assert first.is_audio and second.is_audio
        assert first.audio_url != second.audio_url
        assert first.audio_url.startswith("https://surveys.example.com/audio/")
        assert first.audio_url.endswith(".mp3")

        files = sorted((tmp_path / "audio").iterdir())
        assert len(files) == 2
        assert files[0].read_bytes() == b"ID3fake-mp3-bytes"

        assert seen[0].url.path == "/v1/text-to-speech/voice123"
        assert seen[0].headers["xi-api-key"] == "el-test-key"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 429, 500])
    async def test_error_status_falls_back(self, tmp_path, status):
        service = elevenlabs_service(tmp_path, lambda request: httpx.Response(status, text="nope"))

        output = await service.speak("Which dining hall do you use most?")

        assert not output.is_audio
        assert output.text == "Which dining hall do you use most?"

    @pytest.mark.asyncio
    async def test_network_error_falls_back(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("unreachable", request=request)

        output = await elevenlabs_service(tmp_path, handler).speak("Hello")

        assert not output.is_audio
        assert output.text == "Hello"

    @pytest.mark.asyncio
    async def test_empty_audio_falls_back(self, tmp_path):
        service = elevenlabs_service(tmp_path, lambda request: httpx.Response(200, content=b""))
        assert not (await service.speak("Hello")).is_audio

    @pytest.mark.asyncio
    async def test_every_utterance_is_audible(self, tmp_path):
        service = elevenlabs_service(tmp_path, lambda request: httpx.Response(503))
        for text in ["One", "Two", "Three"]:
            output = await service.speak(text)
            assert output.is_audio or output.text == text
