"""Protocol interfaces for all Cadenza collaborators.

All inter-layer communication uses these Protocols: structural typing,
no inheritance required, easy to fake in tests.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, Sequence, runtime_checkable

from cadenza.core.types import AccessCredential
from cadenza.models.notifications import ConversationMessage, Notification
from cadenza.models.payments import BalanceSnapshot, ChainEvent, OrderResult
from cadenza.models.pipeline import DispatchAck, Step, Task

SignalHandler = Callable[[Any], Awaitable[None]]
EventHandler = Callable[[Any], Awaitable[None]]


# ---------------------------------------------------------------------------
# Ledger (steps, tasks, plans)
# ---------------------------------------------------------------------------

@runtime_checkable
class ILedger(Protocol):
    """Shared step/task ledger, plan registry and event subscription."""

    async def get_step(self, step_id: str) -> Step: ...

    async def update_step(self, step_id: str, patch: dict[str, Any]) -> None: ...

    async def create_steps(self, parent_step_id: str, task_id: str, steps: Sequence[Step]) -> None: ...

    async def create_task(
        self,
        agent_id: str,
        payload: dict[str, Any],
        credential: AccessCredential,
        on_signal: SignalHandler,
    ) -> DispatchAck: ...

    async def get_task(self, agent_id: str, task_id: str, credential: AccessCredential) -> Task: ...

    async def get_service_access_config(self, agent_id: str) -> AccessCredential: ...

    async def get_plan_balance(self, plan_id: str) -> BalanceSnapshot: ...

    async def order_plan(self, plan_id: str) -> OrderResult: ...

    async def get_plan_descriptor(self, plan_id: str) -> dict[str, Any] | None: ...

    async def subscribe(self, handler: EventHandler, event_types: Sequence[str]) -> None: ...

    async def log_message(self, task_id: str, level: str, message: str) -> None: ...


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

@runtime_checkable
class IChain(Protocol):
    """EVM access for the orchestrator's signing wallet."""

    @property
    def wallet_address(self) -> str: ...

    async def block_number(self) -> int: ...

    async def pending_nonce(self) -> int: ...

    async def token_decimals(self, token: str) -> int: ...

    async def token_symbol(self, token: str) -> str: ...

    async def token_balance(self, token: str, wallet: str) -> int: ...

    async def pair_reserves(self, token_in: str, token_out: str) -> tuple[int, int]: ...

    async def approve(self, token: str, spender: str, amount: int, nonce: int) -> str: ...

    async def swap_exact_output(
        self,
        amount_out: int,
        max_amount_in: int,
        path: Sequence[str],
        recipient: str,
        deadline: int,
        nonce: int,
    ) -> str: ...

    async def transfer(self, token: str, recipient: str, amount: int, nonce: int) -> str: ...

    async def transfer_single_events(
        self,
        contract: str,
        operator: str,
        from_block: int,
        from_address: str | None = None,
        to_address: str | None = None,
    ) -> list[ChainEvent]: ...


# ---------------------------------------------------------------------------
# Narration
# ---------------------------------------------------------------------------

@runtime_checkable
class INotificationSink(Protocol):
    """Destination for user-facing narration records."""

    async def publish(self, notification: Notification) -> None: ...


@runtime_checkable
class INarrator(Protocol):
    """Rephrases the latest status message for the user."""

    async def rephrase(self, history: Sequence[ConversationMessage]) -> str: ...


# ---------------------------------------------------------------------------
# Persistence: Cache Backend
# ---------------------------------------------------------------------------

@runtime_checkable
class ICacheBackend(Protocol):
    """Redis-compatible cache interface."""

    def get(self, key: str) -> str | None: ...

    def setex(self, key: str, ttl: int, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def ping(self) -> bool: ...


# ---------------------------------------------------------------------------
# Persistence: File Store
# ---------------------------------------------------------------------------

@runtime_checkable
class IFileStore(Protocol):
    """S3-compatible file storage interface."""

    def read(self, path: str) -> bytes: ...

    def write(self, path: str, data: bytes, content_type: str = "application/octet-stream") -> str: ...

    def url(self, path: str) -> str: ...


# ---------------------------------------------------------------------------
# Media
# ---------------------------------------------------------------------------

@runtime_checkable
class IMediaCompiler(Protocol):
    """Probing and merging of video clips and audio tracks."""

    async def probe_duration(self, source: str) -> float: ...

    async def concat_videos(self, sources: Sequence[str], output_path: str) -> None: ...

    async def add_audio(
        self, video_path: str, audio_source: str, output_path: str, duration: float | None = None
    ) -> None: ...
