import pytest

from supportpilot.openai_client import CompletionUsage, stream_chat_completion

from conftest import FakeOpenAI


@pytest.mark.asyncio
async def test_stream_yields_deltas_and_captures_usage():
    client = FakeOpenAI(deltas=["Hel", "", "lo"], total_tokens=12)
    usage = CompletionUsage()

    deltas = [d async for d in stream_chat_completion(client, "gpt-4o-mini", [{"role": "user", "content": "hi"}], usage)]

    assert deltas == ["Hel", "lo"]
    assert usage.total_tokens == 12
    request = client.requests[0]
    assert request["stream_options"] == {"include_usage": True}
    assert request["temperature"] == 0.2
