"""Narrators turning technical status lines into user-facing messages."""

from __future__ import annotations

from typing import Any, Sequence

from openai import AsyncOpenAI

from cadenza.core.config import NarrationConfig
from cadenza.models.notifications import ConversationMessage

SYSTEM_PROMPT = """You are a chatbot that interacts with a user who has requested you to create a music video.
You will be given a system message that contains the current status of the process.
Transfer the current status to the user as briefly, literally and completely as possible, without omitting or adding any information.

Rules:
Reproduce the information from the current status exactly as it appears, including all details, lists, steps and numbers, except for technical error messages (see below).
Do NOT summarize, explain, paraphrase or infer. Do NOT omit any piece of information.
Keep the formatting of lists and line breaks. Only improve formatting if it is illegible.
Include all technical terms, hashes and URLs exactly as given, in the same order.
If you do not know how to handle the current status, reproduce it as it is.

Technical errors:
If the status contains stack traces, UUIDs, file paths, raw JSON or other internal details, keep only the action and the
human-meaningful reason (for example: "Failed to order credits for plan. Reason: forbidden.")."""

STATUS_PREFIX = "Message to process: "


class PassthroughNarrator:
    """INarrator that returns the latest status verbatim."""

    async def rephrase(self, history: Sequence[ConversationMessage]) -> str:
        return history[-1].content if history else ""


class OpenAINarrator:
    """INarrator backed by an OpenAI chat completion."""

    def __init__(self, config: NarrationConfig, client: AsyncOpenAI | None = None) -> None:
        self._config = config
        self._client = client or AsyncOpenAI(api_key=config.openai_api_key or None)

    @staticmethod
    def build_messages(history: Sequence[ConversationMessage]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
        for item in history:
            content = f"{STATUS_PREFIX}{item.content}" if item.role == "system" else item.content
            messages.append({"role": item.role, "content": content})
        return messages

    async def rephrase(self, history: Sequence[ConversationMessage]) -> str:
        response = await self._client.chat.completions.create(
            model=self._config.model,
            messages=self.build_messages(history),
            max_tokens=self._config.max_tokens,
            temperature=self._config.temperature,
        )
        content = response.choices[0].message.content if response.choices else None
        return (content or "").strip()
