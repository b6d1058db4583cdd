"""
OpenAI client construction and streaming helpers.
"""
from dataclasses import dataclass
from typing import AsyncGenerator, Dict, List, Optional

from openai import AsyncOpenAI

from .config import Settings
from .logging_config import logger


@dataclass
class CompletionUsage:
    """Filled in by `stream_chat_completion` once the provider reports usage."""
    total_tokens: Optional[int] = None


def build_openai_client(settings: Settings) -> Optional[AsyncOpenAI]:
    """
    Build the async OpenAI client, or None when no API key is configured.
    Without a client the chat assistant answers with a configuration notice.
    """
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY is not set; generation and OpenAI embeddings are disabled")
        return None
    return AsyncOpenAI(api_key=settings.openai_api_key)


async def stream_chat_completion(
    client: AsyncOpenAI,
    model_name: str,
    messages: List[Dict[str, str]],
    usage: Optional[CompletionUsage] = None,
) -> AsyncGenerator[str, None]:
    """
    Stream responses from the OpenAI chat completions API.

    Args:
        client: The OpenAI client
        model_name: The OpenAI model to use
        messages: The conversation messages, system prompt first
        usage: Receives the total token count from the final stream chunk

    Yields:
        Text deltas from the streaming response
    """
    logger.info("Sent request to OpenAI API", model=model_name, message_count=len(messages))
    stream = await client.chat.completions.create(
        model=model_name,
        messages=messages,
        temperature=0.2,
        stream=True,
        stream_options={"include_usage": True},
    )

    async for chunk in stream:
        if usage is not None and getattr(chunk, "usage", None) is not None:
            usage.total_tokens = chunk.usage.total_tokens
        if not chunk.choices:
            continue
        delta = chunk.choices[0].delta.content or ""
        if delta:
            yield delta
