"""
Tests for the survey webhook endpoints (voice_survey.main).

These tests verify that:
1. GET answers a new call with a <Gather> and a redirect back to the webhook
2. POST advances the conversation and hangs up on completion
3. Every failure path still returns 200 TwiML with an apology and a hangup
4. The status callback removes orphaned conversation state
"""

import pytest

from call_engine.state_machine import APOLOGY_LINE, CLOSING_LINE
from call_engine.errors import TurnGenerationError
from voice_survey.main import app, provide_call_machine

FIRST_QUESTION = "Hi! How would you rate the food, from 1 to 10?"
REDIRECT_URL = "https://surveys.example.com/calls/webhook?surveyId=s1"


async def start_call(client, call_id="CA100"):
    return await client.get("/calls/webhook", params={"surveyId": "s1", "CallSid": call_id})


class TestHealth:

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "version": "1.0.0"}


class TestSurveyWebhook:

    @pytest.mark.asyncio
    async def test_new_call_gathers_first_question(self, client, generator, conversations):
        generator.queue(FIRST_QUESTION)

        response = await start_call(client)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        body = response.text
        assert "<Gather" in body
        assert 'input="speech"' in body
        assert f'<Say voice="Polly.Joanna">{FIRST_QUESTION}</Say>' in body
        assert "<Redirect" in body and REDIRECT_URL in body
        assert "<Hangup" not in body
        assert await conversations.get("CA100") is not None

    @pytest.mark.asyncio
    async def test_speech_turn_to_completion(self, client, generator, conversations, responses):
        generator.queue(FIRST_QUESTION, '{"status":"complete","answers":{"0":"Eight"}}')
        await start_call(client)

        response = await client.post(
            "/calls/webhook?surveyId=s1",
            data={"CallSid": "CA100", "SpeechResult": "Eight"},
        )

        assert response.status_code == 200
        assert CLOSING_LINE in response.text
        assert "<Hangup" in response.text
        assert "<Gather" not in response.text
        assert generator.calls[1][-1].text == "Eight"
        assert [r.callSid for r in await responses.list("s1")] == ["CA100"]
        assert await conversations.get("CA100") is None

    @pytest.mark.asyncio
    async def test_redirect_without_speech_is_a_silent_turn(self, client, generator, conversations):
        generator.queue(FIRST_QUESTION, "Are you still there?")
        await start_call(client)

        response = await client.post("/calls/webhook?surveyId=s1", data={"CallSid": "CA100"})

        assert "<Gather" in response.text
        assert "Are you still there?" in response.text
        assert (await conversations.get("CA100")).silentTurns == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url,data", [
        ("/calls/webhook", {"CallSid": "CA100", "SpeechResult": "hi"}),
        ("/calls/webhook?surveyId=s1", {"SpeechResult": "hi"}),
    ])
    async def test_missing_identifier_apologizes(self, client, generator, url, data):
        response = await client.post(url, data=data)

        assert response.status_code == 200
        assert APOLOGY_LINE in response.text
        assert "<Hangup" in response.text
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_unknown_conversation_apologizes(self, client, generator):
        response = await client.post(
            "/calls/webhook?surveyId=s1",
            data={"CallSid": "CA-never-started", "SpeechResult": "hello"},
        )

        assert response.status_code == 200
        assert APOLOGY_LINE in response.text
        assert "<Hangup" in response.text

    @pytest.mark.asyncio
    async def test_generator_failure_apologizes(self, client, generator, conversations):
        generator.queue(TurnGenerationError("openai_error: timeout"))

        response = await start_call(client)

        assert response.status_code == 200
        assert APOLOGY_LINE in response.text
        assert await conversations.get("CA100") is None

    @pytest.mark.asyncio
    async def test_unavailable_machine_apologizes(self, client):
        app.dependency_overrides[provide_call_machine] = lambda: None

        response = await start_call(client)

        assert response.status_code == 200
        assert APOLOGY_LINE in response.text
        assert "<Hangup" in response.text


class TestStatusCallback:

    @pytest.mark.asyncio
    async def test_terminal_status_removes_conversation(self, client, generator, conversations):
        generator.queue(FIRST_QUESTION)
        await start_call(client)

        response = await client.post(
            "/calls/status",
            data={"CallSid": "CA100", "CallStatus": "completed", "CallDuration": "42"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "conversationRemoved": True}
        assert await conversations.get("CA100") is None

    @pytest.mark.asyncio
    async def test_non_terminal_status_keeps_conversation(self, client, generator, conversations):
        generator.queue(FIRST_QUESTION)
        await start_call(client)

        response = await client.post("/calls/status", data={"CallSid": "CA100", "CallStatus": "in-progress"})

        assert response.json()["conversationRemoved"] is False
        assert await conversations.get("CA100") is not None
