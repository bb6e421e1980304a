"""Read back and validate the output of completed remote tasks."""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from cadenza.core.exceptions import ValidationError
from cadenza.core.protocols import ILedger
from cadenza.core.types import AccessCredential
from cadenza.models.artifacts import ImageResult, ScriptResult, SongArtifact
from cadenza.models.pipeline import Task

logger = logging.getLogger(__name__)


class TaskOutputReader:
    """Fetches a finished task from the ledger and parses its artifacts."""

    def __init__(self, ledger: ILedger) -> None:
        self._ledger = ledger

    async def _first_artifact(self, agent_id: str, task_id: str, credential: AccessCredential) -> tuple[Task, Any]:
        task = await self._ledger.get_task(agent_id, task_id, credential)
        if not task.output_artifacts:
            raise ValidationError(task_id, "no output artifacts")
        return task, task.output_artifacts[0]

    async def song(self, agent_id: str, task_id: str, credential: AccessCredential, idea: str = "") -> SongArtifact:
        _, artifact = await self._first_artifact(agent_id, task_id, credential)
        if not isinstance(artifact, dict):
            raise ValidationError(task_id, "song artifact is not an object")
        try:
            song = SongArtifact.model_validate({**artifact, "idea": idea})
        except PydanticValidationError as exc:
            raise ValidationError(task_id, str(exc)) from exc
        if not song.song_url:
            raise ValidationError(task_id, "song has no URL")
        return song

    async def script(self, agent_id: str, task_id: str, credential: AccessCredential) -> tuple[ScriptResult, str]:
        """Parsed script plus the task's free-text output."""
        task, artifact = await self._first_artifact(agent_id, task_id, credential)
        if not isinstance(artifact, dict):
            raise ValidationError(task_id, "script artifact is not an object")
        try:
            return ScriptResult.model_validate(artifact), task.output
        except PydanticValidationError as exc:
            raise ValidationError(task_id, str(exc)) from exc

    async def image(
        self,
        agent_id: str,
        task_id: str,
        credential: AccessCredential,
        subject_id: str,
        subject_type: str,
    ) -> ImageResult:
        _, url = await self._first_artifact(agent_id, task_id, credential)
        if not isinstance(url, str) or not url:
            raise ValidationError(task_id, f"no image URL for {subject_type} {subject_id}")
        return ImageResult(id=subject_id, subject_type=subject_type, url=url)

    async def video(self, agent_id: str, task_id: str, credential: AccessCredential) -> str:
        logger.info("Validating video generation task %s", task_id)
        _, url = await self._first_artifact(agent_id, task_id, credential)
        if not isinstance(url, str) or not url:
            raise ValidationError(task_id, "no video URL")
        return url
