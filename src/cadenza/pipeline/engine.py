"""Routes ``step-updated`` events to the stage handlers."""

from __future__ import annotations

import logging
from typing import Any

from cadenza.core.exceptions import StepFailedError
from cadenza.core.protocols import ILedger
from cadenza.models.notifications import NotificationKind
from cadenza.models.pipeline import StageName, Step, StepEvent, StepStatus
from cadenza.notifications.notifier import Notifier
from cadenza.pipeline.stages import StageHandlers

logger = logging.getLogger(__name__)

STEP_UPDATED = "step-updated"


class PipelineEngine:
    """Consumes step events and dispatches Pending steps by stage name.

    Each step moves ``Pending -> Completed | Failed`` exactly once; events for
    steps that already left Pending are ignored. No exception escapes
    ``on_step_event``. A handler error that escapes the stage is narrated as
    an error, the step is written Failed and the task's narration state is
    released, the same way a stage reports its own failures.
    """

    def __init__(self, ledger: ILedger, handlers: StageHandlers, notifier: Notifier) -> None:
        self._ledger = ledger
        self._handlers = handlers
        self._notifier = notifier

    async def start(self) -> None:
        await self._ledger.subscribe(self.on_step_event, [STEP_UPDATED])
        logger.info("Pipeline engine subscribed to %s events", STEP_UPDATED)

    async def on_step_event(self, data: Any) -> None:
        try:
            event = StepEvent.parse(data)
            logger.info("Received event for step %s", event.step_id)
            step = await self._ledger.get_step(event.step_id)
        except Exception:
            logger.exception("Could not load step for event %r", data)
            return

        if step.status != StepStatus.PENDING:
            logger.warning("Step %s is not in Pending status (%s). Skipping...", step.step_id, step.status)
            return

        try:
            await self.dispatch(step)
        except Exception as exc:
            error = StepFailedError(step.step_id, step.name, f"unexpected error: {exc}")
            logger.exception("%s", error)
            await self._abort(step, str(error))

    async def dispatch(self, step: Step) -> bool:
        """Run the handler for ``step``; False when the name is not a stage."""
        stage = step.stage
        match stage:
            case StageName.INIT:
                await self._handlers.init(step)
            case StageName.CALL_SONG_GENERATOR:
                await self._handlers.call_song_generator(step)
            case StageName.GENERATE_MUSIC_SCRIPT:
                await self._handlers.generate_music_script(step)
            case StageName.CALL_IMAGES_GENERATOR:
                await self._handlers.call_images_generator(step)
            case StageName.CALL_VIDEO_GENERATOR:
                await self._handlers.call_video_generator(step)
            case StageName.COMPILE_VIDEO:
                await self._handlers.compile_video(step)
            case None:
                logger.warning("Unrecognized step name: %s", step.name)
                return False
        return True

    async def _abort(self, step: Step, message: str) -> None:
        try:
            await self._notifier.report(step.task_id, message, NotificationKind.ERROR)
        except Exception:
            logger.exception("Could not narrate failure of step %s", step.step_id)
        try:
            current = await self._ledger.get_step(step.step_id)
            if current.status == StepStatus.PENDING:
                await self._ledger.update_step(step.step_id, {"status": StepStatus.FAILED, "output": message})
        except Exception:
            logger.exception("Could not mark step %s as Failed", step.step_id)
        finally:
            try:
                await self._notifier.release(step.task_id)
            except Exception:
                logger.exception("Could not release narration state for task %s", step.task_id)
