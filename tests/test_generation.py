import json

import httpx
import pytest

from talkback.errors import TransportError
from talkback.generation import OpenAIChatGenerator, build_chat_messages
from talkback.models import Attachment, Message


def _sse(*deltas):
    lines = []
    for delta in deltas:
        payload = {"choices": [{"delta": {"content": delta}}]}
        lines.append(f"data: {json.dumps(payload)}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines)


async def _collect(generator, history):
    return b"".join([chunk async for chunk in generator.generate(history, "Be brief.")])


def test_build_chat_messages():
    history = [
        Message(role="user", content="Look at this", attachments=(Attachment(filename="a.png"),)),
        Message(role="assistant", content="Nice picture"),
    ]

    messages = build_chat_messages(history, "Be brief.")

    assert messages[0] == {"role": "system", "content": "Be brief."}
    assert messages[1]["content"] == "Look at this\n\n[Attached files: a.png]"
    assert messages[2] == {"role": "assistant", "content": "Nice picture"}
    assert build_chat_messages(history)[0]["role"] == "user"


@pytest.mark.asyncio
async def test_streams_deltas():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, text=_sse("Hel", "lo ", "wörld"), headers={"content-type": "text/event-stream"}
        )

    generator = OpenAIChatGenerator(
        base_url="http://llm.local/", model="tiny", api_key="k",
        transport=httpx.MockTransport(handler),
    )

    result = await _collect(generator, [Message(role="user", content="hi")])

    assert result.decode("utf-8") == "Hello wörld"
    assert seen["url"] == "http://llm.local/v1/chat/completions"
    assert seen["auth"] == "Bearer k"
    assert seen["body"]["model"] == "tiny"
    assert seen["body"]["stream"] is True
    assert seen["body"]["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_error_status_raises_transport_error():
    generator = OpenAIChatGenerator(
        base_url="http://llm.local",
        transport=httpx.MockTransport(lambda request: httpx.Response(500, text="overloaded")),
    )

    with pytest.raises(TransportError):
        await _collect(generator, [Message(role="user", content="hi")])


@pytest.mark.asyncio
async def test_connection_error_raises_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    generator = OpenAIChatGenerator(
        base_url="http://llm.local", transport=httpx.MockTransport(handler)
    )

    with pytest.raises(TransportError, match="Cannot connect"):
        await _collect(generator, [Message(role="user", content="hi")])
