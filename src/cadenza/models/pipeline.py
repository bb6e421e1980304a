"""Step, task and event models shared with the ledger."""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class StepStatus(StrEnum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class TaskStatus(StrEnum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class StageName(StrEnum):
    """Closed vocabulary of pipeline stages, in execution order."""

    INIT = "init"
    CALL_SONG_GENERATOR = "callSongGenerator"
    GENERATE_MUSIC_SCRIPT = "generateMusicScript"
    CALL_IMAGES_GENERATOR = "callImagesGenerator"
    CALL_VIDEO_GENERATOR = "callVideoGenerator"
    COMPILE_VIDEO = "compileVideo"

    @classmethod
    def parse(cls, name: str) -> Optional["StageName"]:
        """Exact-match lookup; unknown names return None."""
        try:
            return cls(name)
        except ValueError:
            return None


# Successor chain synthesized by the init stage.
PIPELINE_STAGES: tuple[StageName, ...] = (
    StageName.CALL_SONG_GENERATOR,
    StageName.GENERATE_MUSIC_SCRIPT,
    StageName.CALL_IMAGES_GENERATOR,
    StageName.CALL_VIDEO_GENERATOR,
    StageName.COMPILE_VIDEO,
)


class Step(BaseModel):
    """A unit of pipeline progress as stored in the ledger."""

    step_id: str
    task_id: str
    predecessor: Optional[str] = None
    name: str
    status: StepStatus = StepStatus.PENDING
    input_query: str = ""
    input_artifacts: list[Any] = Field(default_factory=list)
    output: str = ""
    output_artifacts: list[Any] = Field(default_factory=list)
    cost: int = 0
    is_last: bool = False

    @property
    def stage(self) -> Optional[StageName]:
        return StageName.parse(self.name)

    @property
    def first_input(self) -> dict[str, Any]:
        """The single artifact record handed over by the predecessor."""
        if self.input_artifacts and isinstance(self.input_artifacts[0], dict):
            return self.input_artifacts[0]
        return {}


class Task(BaseModel):
    """A unit of work delegated to one remote agent."""

    task_id: str
    agent_id: str = ""
    status: TaskStatus = TaskStatus.PENDING
    input_query: str = ""
    output: str = ""
    output_artifacts: list[Any] = Field(default_factory=list)


class TaskSignal(BaseModel):
    """Asynchronous completion signal for a dispatched task."""

    task_id: str
    status: TaskStatus

    @classmethod
    def parse(cls, data: "TaskSignal | str | bytes | dict[str, Any]") -> "TaskSignal":
        if isinstance(data, TaskSignal):
            return data
        if isinstance(data, (str, bytes)):
            data = json.loads(data)
        return cls(task_id=data["task_id"], status=data.get("task_status", data.get("status")))


class DispatchAck(BaseModel):
    """Synchronous acknowledgement of a task creation request."""

    status: int
    data: dict[str, Any] = Field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.status == 201

    @property
    def task_id(self) -> Optional[str]:
        return self.data.get("task_id")


class StepEvent(BaseModel):
    """A ``step-updated`` notification delivered by the ledger."""

    step_id: str
    task_id: Optional[str] = None
    event_type: str = "step-updated"

    @classmethod
    def parse(cls, data: "StepEvent | str | bytes | dict[str, Any]") -> "StepEvent":
        if isinstance(data, StepEvent):
            return data
        if isinstance(data, (str, bytes)):
            return cls.model_validate_json(data)
        return cls.model_validate(data)
