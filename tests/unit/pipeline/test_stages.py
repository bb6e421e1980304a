"""Tests for the stage handlers against the in-memory ledger and chain."""

from __future__ import annotations

import itertools
import json
import random
from pathlib import Path

import pytest

from cadenza.core.config import AgentsConfig, PipelineConfig
from cadenza.core.exceptions import MediaCompileError
from cadenza.models.notifications import NotificationKind
from cadenza.models.payments import BalanceSnapshot
from cadenza.models.pipeline import PIPELINE_STAGES, Step, StepStatus, TaskStatus
from cadenza.pipeline.engine import PipelineEngine
from cadenza.pipeline.stages import StageHandlers, has_song_metadata, slugify
from cadenza.tasks.fanout import FanOutExecutor
from cadenza.tasks.invoker import TaskInvoker
from cadenza.tasks.validation import TaskOutputReader
from tests.fakes import MemoryFileStore, ScriptedTask

TASK = "task-1"
SONG_AGENT, SCRIPT_AGENT, MEDIA_AGENT = "did:nv:song-agent", "did:nv:script-agent", "did:nv:media-agent"
SONG_PLAN, SCRIPT_PLAN, MEDIA_PLAN = "did:nv:01", "did:nv:02", "did:nv:03"

AGENTS = AgentsConfig(
    song_generator_id=SONG_AGENT,
    song_generator_plan_id=SONG_PLAN,
    script_generator_id=SCRIPT_AGENT,
    script_generator_plan_id=SCRIPT_PLAN,
    video_generator_id=MEDIA_AGENT,
    video_generator_plan_id=MEDIA_PLAN,
)

SONG = {
    "title": "Neon Rain",
    "songUrl": "https://cdn/song.mp3",
    "duration": 30,
    "tags": ["synthwave"],
    "lyrics": "rain on the neon",
}

SCRIPT_OUTPUT = {
    "script": "INT. ROOFTOP - NIGHT",
    "transformedScenes": [
        {"prompt": "Ava looks up", "charactersInScene": ["Ava"], "settingId": "roof", "duration": 5},
        {"prompt": "Ben dances", "charactersInScene": ["Ben"], "settingId": "street", "duration": 5},
    ],
    "characters": [{"name": "Ava", "imagePrompt": "a singer"}, {"name": "Ben", "imagePrompt": "a dancer"}],
    "settings": [{"id": "roof", "imagePrompt": "a rooftop"}],
}


def storyboard(prompts: int = 3) -> dict:
    return {
        "title": "Neon Rain",
        "songUrl": "https://cdn/song.mp3",
        "duration": 30,
        "prompts": [
            {"prompt": f"scene {i}", "charactersInScene": ["Ava"], "settingId": "roof" if i == 0 else "nowhere"}
            for i in range(prompts)
        ],
        "characters": [{"name": "Ava", "imageUrl": "https://cdn/ava.png"}],
        "settings": [{"id": "roof", "imageUrl": "https://cdn/roof.png"}],
    }


def media_responder(fail_ids: set[str] = frozenset()):
    def respond(payload: dict) -> ScriptedTask:
        artifact = payload["input_artifacts"][0]
        if artifact["id"] in fail_ids:
            return ScriptedTask(status=TaskStatus.FAILED)
        if artifact["inference_type"] == "text2image":
            return ScriptedTask(output_artifacts=[f"https://cdn/{artifact['id']}.png"])
        return ScriptedTask(output_artifacts=[f"https://cdn/clip-{artifact['id']}.mp4"])

    return respond


class FakeCompiler:
    def __init__(self, unreadable: set[str] = frozenset()) -> None:
        self.unreadable = unreadable
        self.concat_calls: list[list[str]] = []
        self.audio_calls: list[tuple[str, float | None]] = []

    async def probe_duration(self, source: str) -> float:
        if source in self.unreadable:
            raise MediaCompileError(f"cannot read {source}")
        return 5.0

    async def concat_videos(self, sources, output_path: str) -> None:
        self.concat_calls.append(list(sources))
        Path(output_path).write_bytes(b"merged")

    async def add_audio(self, video_path, audio_source, output_path, duration=None) -> None:
        self.audio_calls.append((audio_source, duration))
        Path(output_path).write_bytes(b"final-video")


@pytest.fixture
def funded(ledger):
    for plan in (SONG_PLAN, SCRIPT_PLAN, MEDIA_PLAN):
        ledger.balances[plan] = BalanceSnapshot(balance=1000)
    ledger.responders[SONG_AGENT] = lambda payload: ScriptedTask(output_artifacts=[dict(SONG)])
    ledger.responders[SCRIPT_AGENT] = lambda payload: ScriptedTask(
        output_artifacts=[SCRIPT_OUTPUT], output="Script generated"
    )
    ledger.responders[MEDIA_AGENT] = media_responder()
    return ledger


@pytest.fixture
def compiler():
    return FakeCompiler()


@pytest.fixture
def file_store():
    return MemoryFileStore()


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def handlers(funded, notifier, settlement, retry, compiler, file_store, work_dir):
    ids = itertools.count(1)
    return StageHandlers(
        ledger=funded,
        notifier=notifier,
        settlement=settlement,
        invoker=TaskInvoker(funded),
        fanout=FanOutExecutor(retry),
        reader=TaskOutputReader(funded),
        compiler=compiler,
        file_store=file_store,
        agents=AGENTS,
        config=PipelineConfig(work_dir=str(work_dir)),
        retry=retry,
        step_ids=lambda: f"step-{next(ids)}",
        rng=random.Random(0),
    )


async def run(handler, ledger, step: Step) -> Step:
    ledger.add_step(step)
    await handler(await ledger.get_step(step.step_id))
    await ledger.drain()
    return ledger.steps[step.step_id]


class TestInit:
    @pytest.mark.asyncio
    async def test_creates_successor_chain(self, handlers, funded):
        step = await run(
            handlers.init, funded,
            Step(step_id="init", task_id=TASK, name="init", input_query="a song about rain"),
        )
        assert step.status == StepStatus.COMPLETED
        assert step.output == "a song about rain"

        chain, current = [], "init"
        while successors := funded.successors_of(current):
            assert len(successors) == 1
            chain.append(successors[0])
            current = successors[0].step_id
        assert [s.name for s in chain] == [stage.value for stage in PIPELINE_STAGES]
        assert [s.is_last for s in chain] == [False, False, False, False, True]
        assert all(s.status == StepStatus.PENDING for s in chain)
        assert chain[0].input_query == "a song about rain"


class TestSong:
    @pytest.mark.asyncio
    async def test_completes_with_song(self, handlers, funded, sink):
        step = await run(
            handlers.call_song_generator, funded,
            Step(step_id="s", task_id=TASK, name="callSongGenerator", input_query="rainy city"),
        )
        assert step.status == StepStatus.COMPLETED
        assert step.output == "Neon Rain"
        assert step.output_artifacts[0]["songUrl"] == "https://cdn/song.mp3"
        assert step.output_artifacts[0]["idea"] == "rainy city"
        assert funded.dispatched[0][1]["input_artifacts"] == []
        answer = sink.of_kind(NotificationKind.ANSWER)[0]
        assert answer.artifacts.parts == ["https://cdn/song.mp3"]

    @pytest.mark.asyncio
    async def test_forwards_user_song_metadata(self, handlers, funded):
        metadata = [{"lyrics": "my words", "title": "Mine", "tags": ["folk"]}]
        await run(
            handlers.call_song_generator, funded,
            Step(step_id="s", task_id=TASK, name="callSongGenerator", input_artifacts=metadata),
        )
        assert funded.dispatched[0][1]["input_artifacts"] == metadata

    @pytest.mark.asyncio
    async def test_agent_failure_fails_step_after_retries(self, handlers, funded):
        funded.responders[SONG_AGENT] = lambda payload: ScriptedTask(status=TaskStatus.FAILED)
        step = await run(
            handlers.call_song_generator, funded,
            Step(step_id="s", task_id=TASK, name="callSongGenerator"),
        )
        assert step.status == StepStatus.FAILED
        assert "Song generation task failed" in step.output
        assert len(funded.dispatched) == 3
        assert funded.successors_of("s") == []

    @pytest.mark.asyncio
    async def test_settlement_failure_skips_dispatch(self, handlers, funded):
        funded.balances[SONG_PLAN] = BalanceSnapshot(balance=0)
        step = await run(
            handlers.call_song_generator, funded,
            Step(step_id="s", task_id=TASK, name="callSongGenerator"),
        )
        assert step.status == StepStatus.FAILED
        assert funded.dispatched == []

    @pytest.mark.asyncio
    async def test_result_write_is_retried(self, handlers, funded, sink):
        funded.failures["update_step"] = 1
        step = await run(
            handlers.call_song_generator, funded,
            Step(step_id="s", task_id=TASK, name="callSongGenerator"),
        )
        assert step.status == StepStatus.COMPLETED
        assert step.output == "Neon Rain"
        warnings = [n.message for n in sink.of_kind(NotificationKind.WARNING)]
        assert any(m.startswith("Saving step result failed (attempt 1/3)") for m in warnings)

    @pytest.mark.asyncio
    async def test_unsaved_result_is_narrated_and_failed(self, handlers, funded, notifier, sink):
        funded.failures["update_step"] = 3
        funded.add_step(Step(step_id="s", task_id=TASK, name="callSongGenerator"))
        await PipelineEngine(funded, handlers, notifier).on_step_event(
            json.dumps({"step_id": "s", "task_id": TASK})
        )
        await funded.drain()
        step = funded.steps["s"]
        assert step.status == StepStatus.FAILED
        assert "update_step unavailable" in step.output
        errors = sink.of_kind(NotificationKind.ERROR)
        assert len(errors) == 1
        assert errors[0].message == step.output
        assert TASK not in notifier._locks


def test_has_song_metadata_requires_all_fields():
    assert has_song_metadata(Step(step_id="s", task_id=TASK, name="x",
                                  input_artifacts=[{"lyrics": "l", "title": "t", "tags": ["a"]}]))
    assert not has_song_metadata(Step(step_id="s", task_id=TASK, name="x",
                                      input_artifacts=[{"lyrics": "l", "title": "t"}]))


class TestScript:
    @pytest.mark.asyncio
    async def test_merges_song_and_script(self, handlers, funded):
        step = await run(
            handlers.generate_music_script, funded,
            Step(step_id="sc", task_id=TASK, name="generateMusicScript", input_artifacts=[SONG]),
        )
        assert step.status == StepStatus.COMPLETED
        assert step.output == "Script generated"
        artifact = step.output_artifacts[0]
        assert artifact["title"] == "Neon Rain"
        assert artifact["songUrl"] == "https://cdn/song.mp3"
        assert artifact["lyrics"] == "rain on the neon"
        assert artifact["script"] == "INT. ROOFTOP - NIGHT"
        assert [p["prompt"] for p in artifact["prompts"]] == ["Ava looks up", "Ben dances"]
        assert len(artifact["characters"]) == 2

    @pytest.mark.asyncio
    async def test_invalid_input_fails(self, handlers, funded):
        step = await run(
            handlers.generate_music_script, funded,
            Step(step_id="sc", task_id=TASK, name="generateMusicScript"),
        )
        assert step.status == StepStatus.FAILED
        assert funded.dispatched == []


class TestImages:
    def script_step(self) -> Step:
        artifact = {**SONG, "script": SCRIPT_OUTPUT["script"], "prompts": SCRIPT_OUTPUT["transformedScenes"],
                    "characters": SCRIPT_OUTPUT["characters"], "settings": SCRIPT_OUTPUT["settings"]}
        return Step(step_id="im", task_id=TASK, name="callImagesGenerator", input_artifacts=[artifact])

    @pytest.mark.asyncio
    async def test_attaches_urls_by_subject(self, handlers, funded):
        step = await run(handlers.call_images_generator, funded, self.script_step())
        assert step.status == StepStatus.COMPLETED
        assert step.cost == 3
        artifact = step.output_artifacts[0]
        assert [c["imageUrl"] for c in artifact["characters"]] == [
            "https://cdn/character-0.png", "https://cdn/character-1.png",
        ]
        assert artifact["settings"][0]["imageUrl"] == "https://cdn/setting-0.png"
        kinds = {p["input_artifacts"][0]["inference_type"] for _, p in funded.dispatched}
        assert kinds == {"text2image"}

    @pytest.mark.asyncio
    async def test_any_image_failure_fails_stage(self, handlers, funded):
        funded.responders[MEDIA_AGENT] = media_responder({"character-1"})
        step = await run(handlers.call_images_generator, funded, self.script_step())
        assert step.status == StepStatus.FAILED
        assert "Image generation failed" in step.output
        assert step.output_artifacts == []


class TestVideo:
    @pytest.mark.asyncio
    async def test_generates_clips_in_scene_order(self, handlers, funded):
        step = await run(
            handlers.call_video_generator, funded,
            Step(step_id="v", task_id=TASK, name="callVideoGenerator", input_artifacts=[storyboard(3)]),
        )
        assert step.status == StepStatus.COMPLETED
        assert step.cost == 15
        assert step.output_artifacts[0]["generatedVideos"] == [
            "https://cdn/clip-0.mp4", "https://cdn/clip-1.mp4", "https://cdn/clip-2.mp4",
        ]
        first = next(p for _, p in funded.dispatched if p["input_artifacts"][0]["id"] == "0")
        assert first["input_artifacts"][0]["images"] == ["https://cdn/roof.png", "https://cdn/ava.png"]
        assert first["input_artifacts"][0]["inference_type"] == "text2video"

    @pytest.mark.asyncio
    async def test_tolerates_up_to_three_failures(self, handlers, funded, sink):
        funded.responders[MEDIA_AGENT] = media_responder({"1", "2", "3"})
        step = await run(
            handlers.call_video_generator, funded,
            Step(step_id="v", task_id=TASK, name="callVideoGenerator", input_artifacts=[storyboard(5)]),
        )
        assert step.status == StepStatus.COMPLETED
        assert step.output_artifacts[0]["generatedVideos"] == ["https://cdn/clip-0.mp4", "https://cdn/clip-4.mp4"]
        assert step.cost == 10
        dropped = [
            n.message for n in sink.of_kind(NotificationKind.WARNING)
            if n.message.startswith("Continuing without")
        ]
        assert len(dropped) == 1
        assert dropped[0].startswith('Continuing without 3 of 5 scenes: scene 2 ("scene 1")')
        assert 'scene 4 ("scene 3")' in dropped[0]

    @pytest.mark.asyncio
    async def test_more_than_three_failures_fail_stage(self, handlers, funded):
        funded.responders[MEDIA_AGENT] = media_responder({"0", "1", "2", "3"})
        step = await run(
            handlers.call_video_generator, funded,
            Step(step_id="v", task_id=TASK, name="callVideoGenerator", input_artifacts=[storyboard(5)]),
        )
        assert step.status == StepStatus.FAILED
        assert "4 of 5" in step.output


class TestCompile:
    def clips_step(self, videos: list[str]) -> Step:
        artifact = {"title": "Neon Rain", "songUrl": "https://cdn/song.mp3", "duration": 30,
                    "generatedVideos": videos}
        return Step(step_id="c", task_id=TASK, name="compileVideo", input_artifacts=[artifact], is_last=True)

    @pytest.mark.asyncio
    async def test_publishes_final_video(self, handlers, funded, compiler, file_store, work_dir, sink):
        compiler.unreadable = {"https://cdn/bad.mp4"}
        step = await run(
            handlers.compile_video, funded,
            self.clips_step(["https://cdn/a.mp4", "https://cdn/bad.mp4", "https://cdn/b.mp4"]),
        )
        assert step.status == StepStatus.COMPLETED
        assert step.cost == 1
        assert step.output_artifacts == ["memory://files/videos/task-1/neon_rain.mp4"]
        assert compiler.concat_calls == [["https://cdn/a.mp4", "https://cdn/b.mp4"]]
        assert compiler.audio_calls == [("https://cdn/song.mp3", 30.0)]
        assert file_store.read("videos/task-1/neon_rain.mp4") == b"final-video"
        assert file_store.content_types["videos/task-1/neon_rain.mp4"] == "video/mp4"
        assert list(work_dir.iterdir()) == []
        final = sink.of_kind(NotificationKind.FINAL_ANSWER)[0]
        assert final.artifacts.parts == step.output_artifacts

    @pytest.mark.asyncio
    async def test_no_videos_fails(self, handlers, funded):
        step = await run(handlers.compile_video, funded, self.clips_step([]))
        assert step.status == StepStatus.FAILED
        assert "No generated videos" in step.output

    @pytest.mark.asyncio
    async def test_all_unreadable_fails(self, handlers, funded, compiler):
        compiler.unreadable = {"https://cdn/a.mp4"}
        step = await run(handlers.compile_video, funded, self.clips_step(["https://cdn/a.mp4"]))
        assert step.status == StepStatus.FAILED
        assert compiler.concat_calls == []


def test_slugify():
    assert slugify("Neon Rain!") == "neon_rain_"


@pytest.mark.asyncio
async def test_full_pipeline_runs_to_final_video(handlers, funded, notifier, file_store):
    await PipelineEngine(funded, handlers, notifier).start()
    funded.add_step(
        Step(step_id="init", task_id=TASK, name="init", input_query="a song about rain"),
        publish=True,
    )
    await funded.drain()

    statuses = {s.name: s.status for s in funded.steps.values()}
    assert statuses == {name: StepStatus.COMPLETED for name in ["init", *[s.value for s in PIPELINE_STAGES]]}
    final = next(s for s in funded.steps.values() if s.is_last)
    assert final.output_artifacts == ["memory://files/videos/task-1/neon_rain.mp4"]
