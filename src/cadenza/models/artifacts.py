"""Stage artifacts exchanged between pipeline steps.

Field names follow the camelCase wire format of the remote agents; models
accept either spelling and dump with aliases.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SongArtifact(WireModel):
    """Output of the song generator."""

    title: str
    song_url: str
    duration: float
    tags: list[str] = Field(default_factory=list)
    lyrics: str = ""
    idea: str = ""


class Character(WireModel):
    name: str
    image_prompt: str = ""
    image_url: Optional[str] = None


class Setting(WireModel):
    id: str
    image_prompt: str = ""
    image_url: Optional[str] = None


class ScenePrompt(WireModel):
    prompt: str
    characters_in_scene: list[str] = Field(default_factory=list)
    setting_id: Optional[str] = None
    duration: Optional[float] = None


class ScriptArtifact(WireModel):
    """Output of the music script generator, merged with the song."""

    title: str
    song_url: str
    duration: float
    script: str
    prompts: list[ScenePrompt] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    settings: list[Setting] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    lyrics: str = ""


class ImageResult(BaseModel):
    """One generated image, keyed back to its character or setting."""

    id: str
    subject_type: str  # "character" | "setting"
    url: str


class StoryboardArtifact(WireModel):
    """Images stage output: script plus resolved image URLs."""

    title: str
    song_url: str
    duration: float
    prompts: list[ScenePrompt] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    settings: list[Setting] = Field(default_factory=list)


class ClipsArtifact(WireModel):
    """Video stage output: generated clip URLs in scene order."""

    title: str
    song_url: str
    duration: float
    generated_videos: list[str] = Field(default_factory=list)


class ScriptResult(WireModel):
    """Raw output of the music script generator task."""

    script: str
    transformed_scenes: list[ScenePrompt] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    settings: list[Setting] = Field(default_factory=list)
