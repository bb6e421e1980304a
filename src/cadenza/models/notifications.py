"""User-facing narration records."""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class NotificationKind(StrEnum):
    REASONING = "reasoning"
    ANSWER = "answer"
    FINAL_ANSWER = "final-answer"
    TRANSACTION = "transaction"
    AGENT_TRANSACTION = "nvm-transaction-agent"
    REDEMPTION = "nvm-transaction"
    ERROR = "error"
    WARNING = "warning"
    CALL_AGENT = "callAgent"


class Artifacts(BaseModel):
    mime_type: str
    parts: list[Any] = Field(default_factory=list)


class Notification(BaseModel):
    """One narration record for a task's event stream."""

    task_id: str
    kind: NotificationKind
    message: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    artifacts: Optional[Artifacts] = None

    def to_sse(self) -> str:
        payload: dict[str, Any] = {"content": self.message, "type": str(self.kind), **self.metadata}
        if self.artifacts is not None:
            payload["artifacts"] = {"mimeType": self.artifacts.mime_type, "parts": self.artifacts.parts}
        return f"data: {json.dumps(payload, default=str)}\n\n"


class ConversationMessage(BaseModel):
    id: str
    role: str  # "user" | "assistant" | "system"
    content: str
