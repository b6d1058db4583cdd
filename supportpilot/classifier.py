"""
Intent classification for inbound visitor messages.
"""
from typing import Optional

from openai import AsyncOpenAI

from .logging_config import logger
from .prompts import build_classifier_prompt

CLASSIFIER_CATEGORIES = (
    "SUPPORT_QUESTION",
    "GREETING",
    "ESCALATION_REQUEST",
    "COMPLAINT",
    "SPAM",
    "OTHER",
)


def normalize_intent(raw: Optional[str]) -> str:
    """Map raw model output onto a known category; anything unexpected is OTHER."""
    intent = (raw or "").strip().upper()
    if intent in CLASSIFIER_CATEGORIES:
        return intent
    return "OTHER"


class IntentClassifier:
    def __init__(self, client: Optional[AsyncOpenAI], model: str = "gpt-4o-mini"):
        self.client = client
        self.model = model

    async def classify(self, message: str) -> str:
        """
        Classify one message into a CLASSIFIER_CATEGORIES value.

        Raises:
            RuntimeError: No OpenAI client is configured
            openai.OpenAIError: The provider call failed
        """
        if self.client is None:
            raise RuntimeError("Intent classifier is not configured")

        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": build_classifier_prompt(message)}],
            temperature=0,
            max_tokens=10,
        )
        raw = response.choices[0].message.content if response.choices else ""
        intent = normalize_intent(raw)

        if intent == "OTHER" and (raw or "").strip().upper() != "OTHER":
            logger.warning("Unexpected classification", response=raw, defaulting_to="OTHER")
        else:
            logger.info("Message classified", message=message[:50], intent=intent)
        return intent
