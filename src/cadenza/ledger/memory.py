"""In-memory ledger for unit tests and local simulation.

Steps, tasks and plans live in dicts. Remote agents are simulated by
per-agent responders that decide each dispatched task's outcome; completion
signals are delivered from background asyncio tasks, like the real ledger's
websocket callbacks.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from cadenza.core.exceptions import CadenzaError, StepTransitionError, TransientRemoteError
from cadenza.core.protocols import EventHandler, SignalHandler
from cadenza.core.types import AccessCredential
from cadenza.models.payments import BalanceSnapshot, OrderResult
from cadenza.models.pipeline import DispatchAck, Step, StepStatus, Task, TaskStatus


@dataclass
class ScriptedTask:
    """How a simulated agent answers one dispatched task."""

    status: TaskStatus = TaskStatus.COMPLETED
    output_artifacts: list[Any] = field(default_factory=list)
    output: str = ""
    ack_status: int = 201
    duplicate_signals: int = 0


Responder = Callable[[dict[str, Any]], "ScriptedTask | Awaitable[ScriptedTask]"]


class MemoryLedger:
    """Dict-backed ILedger."""

    def __init__(self, credits_per_order: int = 100) -> None:
        self.steps: dict[str, Step] = {}
        self.tasks: dict[str, Task] = {}
        self.balances: dict[str, BalanceSnapshot] = {}
        self.descriptors: dict[str, dict[str, Any]] = {}
        self.responders: dict[str, Responder] = {}
        self.dispatched: list[tuple[str, dict[str, Any]]] = []
        self.orders: list[str] = []
        self.logs: list[tuple[str, str, str]] = []
        self.failures: dict[str, int] = {}
        self.order_success = True
        self.credits_per_order = credits_per_order
        self._handlers: list[EventHandler] = []
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # test helpers
    # ------------------------------------------------------------------

    def _maybe_fail(self, operation: str) -> None:
        remaining = self.failures.get(operation, 0)
        if remaining > 0:
            self.failures[operation] = remaining - 1
            raise TransientRemoteError(f"{operation} unavailable")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def add_step(self, step: Step, publish: bool = False) -> Step:
        self.steps[step.step_id] = step
        if publish:
            self.publish_step(step)
        return step

    def publish_step(self, step: Step) -> None:
        event = json.dumps({"step_id": step.step_id, "task_id": step.task_id})
        for handler in list(self._handlers):
            self._spawn(handler(event))

    async def drain(self) -> None:
        """Wait until no signal delivery or event handler is in flight."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # steps
    # ------------------------------------------------------------------

    async def get_step(self, step_id: str) -> Step:
        self._maybe_fail("get_step")
        try:
            return self.steps[step_id].model_copy(deep=True)
        except KeyError:
            raise CadenzaError(f"Unknown step {step_id}") from None

    async def update_step(self, step_id: str, patch: dict[str, Any]) -> None:
        self._maybe_fail("update_step")
        current = self.steps.get(step_id)
        if current is None:
            raise CadenzaError(f"Unknown step {step_id}")
        if current.status != StepStatus.PENDING:
            raise StepTransitionError(f"Step {step_id} already {current.status}")
        updated = current.model_copy(update=patch)
        self.steps[step_id] = updated

        if updated.status == StepStatus.COMPLETED:
            for successor in list(self.steps.values()):
                if successor.predecessor != step_id:
                    continue
                successor.input_artifacts = list(updated.output_artifacts)
                successor.input_query = updated.input_query
                self.publish_step(successor)

    async def create_steps(self, parent_step_id: str, task_id: str, steps: Sequence[Step]) -> None:
        self._maybe_fail("create_steps")
        for step in steps:
            self.steps[step.step_id] = step.model_copy(update={"task_id": task_id})

    def successors_of(self, step_id: str) -> list[Step]:
        return [s for s in self.steps.values() if s.predecessor == step_id]

    # ------------------------------------------------------------------
    # tasks
    # ------------------------------------------------------------------

    async def create_task(
        self,
        agent_id: str,
        payload: dict[str, Any],
        credential: AccessCredential,
        on_signal: SignalHandler,
    ) -> DispatchAck:
        self._maybe_fail("create_task")
        self.dispatched.append((agent_id, payload))
        responder = self.responders.get(agent_id)
        if responder is None:
            return DispatchAck(status=404, data={"error": f"no agent {agent_id}"})

        outcome = responder(payload)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if outcome.ack_status != 201:
            return DispatchAck(status=outcome.ack_status, data={"error": "rejected"})

        task_id = f"task-{uuid.uuid4()}"
        self.tasks[task_id] = Task(
            task_id=task_id,
            agent_id=agent_id,
            status=outcome.status,
            input_query=payload.get("input_query", ""),
            output=outcome.output,
            output_artifacts=outcome.output_artifacts,
        )
        self._spawn(self._deliver(task_id, outcome, on_signal))
        return DispatchAck(status=201, data={"task_id": task_id})

    async def _deliver(self, task_id: str, outcome: ScriptedTask, on_signal: SignalHandler) -> None:
        await asyncio.sleep(0)
        signal = json.dumps({"task_id": task_id, "task_status": str(outcome.status)})
        for _ in range(1 + outcome.duplicate_signals):
            await on_signal(signal)

    async def get_task(self, agent_id: str, task_id: str, credential: AccessCredential) -> Task:
        self._maybe_fail("get_task")
        try:
            return self.tasks[task_id]
        except KeyError:
            raise CadenzaError(f"Unknown task {task_id}") from None

    async def get_service_access_config(self, agent_id: str) -> AccessCredential:
        self._maybe_fail("get_service_access_config")
        return {"agent_id": agent_id, "access_token": f"token-{agent_id}"}

    # ------------------------------------------------------------------
    # plans
    # ------------------------------------------------------------------

    async def get_plan_balance(self, plan_id: str) -> BalanceSnapshot:
        self._maybe_fail("get_plan_balance")
        return self.balances.get(plan_id, BalanceSnapshot(balance=0))

    async def order_plan(self, plan_id: str) -> OrderResult:
        self._maybe_fail("order_plan")
        self.orders.append(plan_id)
        if not self.order_success:
            return OrderResult(success=False)
        current = self.balances.get(plan_id, BalanceSnapshot(balance=0))
        self.balances[plan_id] = BalanceSnapshot(
            balance=current.balance + self.credits_per_order, is_owner=current.is_owner
        )
        return OrderResult(success=True, agreement_id=f"agreement-{uuid.uuid4()}")

    async def get_plan_descriptor(self, plan_id: str) -> Optional[dict[str, Any]]:
        self._maybe_fail("get_plan_descriptor")
        return self.descriptors.get(plan_id)

    # ------------------------------------------------------------------
    # events and logs
    # ------------------------------------------------------------------

    async def subscribe(self, handler: EventHandler, event_types: Sequence[str]) -> None:
        self._handlers.append(handler)

    async def log_message(self, task_id: str, level: str, message: str) -> None:
        self.logs.append((task_id, level, message))
