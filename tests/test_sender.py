import json

import httpx
import pytest

from leadflow.errors import DispatchError
from leadflow.schemas.conversation import ActionType, OutboundAction
from leadflow.services.sender_service import EvolutionSender, LoggingSender

CONTACT = "5584996250203"


def make_action(action_type: ActionType = ActionType.SEND_TEXT, **payload) -> OutboundAction:
    return OutboundAction(
        contact=CONTACT,
        action_type=action_type,
        payload=payload or {"text": "Olá!"},
        source_message_id="MSG0001",
    )


def make_sender(handler) -> EvolutionSender:
    return EvolutionSender(
        "https://evo.example.com/",
        "secret-key",
        "leadflow",
        transport=httpx.MockTransport(handler),
    )


class TestEvolutionSender:
    @pytest.mark.asyncio
    async def test_sends_text(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"key": {"id": "OUT1"}})

        await make_sender(handler).send(make_action())

        assert len(requests) == 1
        request = requests[0]
        assert str(request.url) == "https://evo.example.com/message/sendText/leadflow"
        assert request.headers["apikey"] == "secret-key"
        assert json.loads(request.content) == {"number": CONTACT, "text": "Olá!"}

    @pytest.mark.asyncio
    async def test_sends_audio(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={})

        await make_sender(handler).send(make_action(ActionType.SEND_AUDIO, audio_url="https://cdn/a.ogg"))

        assert requests[0].url.path == "/message/sendWhatsAppAudio/leadflow"
        assert json.loads(requests[0].content)["audio"] == "https://cdn/a.ogg"

    @pytest.mark.asyncio
    async def test_provider_error_raises(self):
        sender = make_sender(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(DispatchError) as exc_info:
            await sender.send(make_action())

        assert "500" in exc_info.value.message
        assert exc_info.value.contact == CONTACT

    @pytest.mark.asyncio
    async def test_transport_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(DispatchError):
            await make_sender(handler).send(make_action())

    @pytest.mark.asyncio
    async def test_empty_text_is_not_sent(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        with pytest.raises(DispatchError):
            await make_sender(handler).send(make_action(text=""))
        assert requests == []


class TestLoggingSender:
    @pytest.mark.asyncio
    async def test_keeps_sent_actions(self):
        sender = LoggingSender()
        action = make_action()

        await sender.send(action)

        assert sender.sent == [action]
