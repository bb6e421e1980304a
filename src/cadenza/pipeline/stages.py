"""Stage handlers: one coroutine per pipeline step name.

Every handler follows the same shape: narrate, secure credit, delegate to a
remote agent (single task or fan-out), then write the step outcome. Any
failure after retries is narrated and written as a Failed step; nothing is
raised back into the engine.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import uuid
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError

from cadenza.core.config import AgentsConfig, PipelineConfig
from cadenza.core.exceptions import SettlementError
from cadenza.core.protocols import IFileStore, ILedger, IMediaCompiler
from cadenza.core.retry import OnError, RetryPolicy
from cadenza.core.types import AccessCredential
from cadenza.models.artifacts import (
    ClipsArtifact,
    ImageResult,
    ScenePrompt,
    ScriptArtifact,
    Setting,
    SongArtifact,
    StoryboardArtifact,
)
from cadenza.models.notifications import Artifacts, NotificationKind
from cadenza.models.pipeline import PIPELINE_STAGES, Step, StepStatus
from cadenza.notifications.notifier import Notifier
from cadenza.payments.settlement import SettlementProtocol
from cadenza.tasks.fanout import FanOutExecutor, SubTask
from cadenza.tasks.invoker import TaskInvoker
from cadenza.tasks.validation import TaskOutputReader

logger = logging.getLogger(__name__)

_SONG_METADATA = ("lyrics", "title", "tags")


def new_step_id() -> str:
    return f"step-{uuid.uuid4()}"


def slugify(title: str) -> str:
    return re.sub(r"[^a-z0-9]", "_", title, flags=re.IGNORECASE).lower()


def has_song_metadata(step: Step) -> bool:
    """True when the user supplied lyrics, title and tags up front."""
    first = step.first_input
    return all(first.get(key) for key in _SONG_METADATA)


class StageHandlers:
    """Holds the collaborators shared by all stage handlers."""

    def __init__(
        self,
        ledger: ILedger,
        notifier: Notifier,
        settlement: SettlementProtocol,
        invoker: TaskInvoker,
        fanout: FanOutExecutor,
        reader: TaskOutputReader,
        compiler: IMediaCompiler,
        file_store: IFileStore,
        agents: AgentsConfig,
        config: PipelineConfig,
        retry: Optional[RetryPolicy] = None,
        step_ids: Callable[[], str] = new_step_id,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._ledger = ledger
        self._notifier = notifier
        self._settlement = settlement
        self._invoker = invoker
        self._fanout = fanout
        self._reader = reader
        self._compiler = compiler
        self._file_store = file_store
        self._agents = agents
        self._config = config
        self._retry = retry or RetryPolicy(config.max_retries)
        self._step_ids = step_ids
        self._rng = rng or random.Random()

    # ------------------------------------------------------------------
    # shared plumbing
    # ------------------------------------------------------------------

    async def _complete(
        self,
        step: Step,
        output: str,
        output_artifacts: Sequence[Any],
        cost: int = 0,
    ) -> None:
        patch = {
            "status": StepStatus.COMPLETED,
            "output": output,
            "output_artifacts": list(output_artifacts),
            "cost": cost,
        }
        await self._retry.run(
            lambda: self._ledger.update_step(step.step_id, patch),
            self._warn_on_retry(step, "Saving step result"),
        )
        logger.info("Step %s (%s) completed", step.step_id, step.name)

    async def _fail(self, step: Step, message: str) -> None:
        """Narrate ``message`` and write the step Failed. Creates no successors.

        A failed step ends the task's pipeline, so the task's narration state
        is released here.
        """
        try:
            await self._notifier.report(step.task_id, message, NotificationKind.ERROR)
            await self._retry.run(
                lambda: self._ledger.update_step(
                    step.step_id,
                    {"status": StepStatus.FAILED, "output": message},
                ),
            )
        finally:
            await self._notifier.release(step.task_id)

    def _warn_on_retry(self, step: Step, action: str) -> OnError:
        async def narrate(exc: Exception, attempt: int, max_retries: int) -> None:
            await self._notifier.report(
                step.task_id,
                f"{action} failed (attempt {attempt + 1}/{max_retries + 1}): {exc}. Retrying...",
                NotificationKind.WARNING,
            )

        return narrate

    async def _settle(self, step: Step, plan_id: str, required: int, agent_name: str) -> bool:
        try:
            await self._settlement.ensure_balance(step.task_id, plan_id, required, agent_name)
        except SettlementError as exc:
            logger.error("Settlement failed for step %s: %s", step.step_id, exc)
            await self._fail(step, str(exc))
            return False
        return True

    async def _credential(self, step: Step, agent_id: str) -> Optional[AccessCredential]:
        try:
            return await self._retry.run(
                lambda: self._ledger.get_service_access_config(agent_id),
                self._warn_on_retry(step, "Fetching agent access"),
            )
        except Exception as exc:
            await self._fail(step, f"Could not get access to agent {agent_id}: {exc}")
            return None

    # ------------------------------------------------------------------
    # init
    # ------------------------------------------------------------------

    async def init(self, step: Step) -> None:
        """Create the whole successor chain, then complete the init step."""
        ids = [self._step_ids() for _ in PIPELINE_STAGES]
        predecessors = [step.step_id, *ids[:-1]]
        successors = [
            Step(
                step_id=step_id,
                task_id=step.task_id,
                predecessor=predecessor,
                name=stage.value,
                is_last=index == len(PIPELINE_STAGES) - 1,
            )
            for index, (step_id, predecessor, stage) in enumerate(zip(ids, predecessors, PIPELINE_STAGES))
        ]

        await self._notifier.start_conversation(step.task_id, step.input_query)
        await self._notifier.report(
            step.task_id,
            "I have received the user's request. I will now create the entire workflow pipeline.\n"
            "First step: Song Generator.\n"
            "Second step: Music Script Generator.\n"
            "Third step: Images Generator.\n"
            "Fourth step: Video Generator.\n"
            "Fifth step: Compile Video.",
        )
        logger.info(
            "Creating steps for task %s: %s", step.task_id, ", ".join(s.name for s in successors)
        )
        try:
            await self._ledger.create_steps(step.step_id, step.task_id, successors)
        except Exception as exc:
            await self._fail(step, f"Could not create workflow steps: {exc}")
            return
        await self._complete(step, step.input_query, step.input_artifacts)

    # ------------------------------------------------------------------
    # song
    # ------------------------------------------------------------------

    async def call_song_generator(self, step: Step) -> None:
        agent_id = self._agents.song_generator_id
        plan_id = self._agents.song_generator_plan_id
        await self._notifier.report(
            step.task_id,
            "First step: Song generation. I will outsource this task to a Song Generator Agent.",
        )
        if not await self._settle(step, plan_id, 1, "Song Generator"):
            return
        credential = await self._credential(step, agent_id)
        if credential is None:
            return

        prompt = step.input_query
        payload = {
            "input_query": prompt,
            "name": step.name,
            "input_artifacts": step.input_artifacts if has_song_metadata(step) else [],
        }
        await self._notifier.report(
            step.task_id,
            f'Calling Song Generator Agent to generate a song based on the user\'s request: "{prompt}".',
            NotificationKind.CALL_AGENT,
        )
        from_block = await self._settlement.block_number()

        async def validate(task_id: str) -> SongArtifact:
            return await self._reader.song(agent_id, task_id, credential, idea=prompt)

        try:
            song = await self._retry.run(
                lambda: self._invoker.invoke(agent_id, payload, validate, credential),
                self._warn_on_retry(step, "Song generation"),
            )
        except Exception as exc:
            await self._fail(step, f"Song generation task failed: {exc}")
            return

        await self._settlement.report_redemption(step.task_id, plan_id, from_block)
        await self._notifier.report(
            step.task_id,
            f"Song {song.title} generated successfully: {song.song_url}",
            NotificationKind.ANSWER,
            {"agentDid": agent_id},
            Artifacts(mime_type="audio/mp3", parts=[song.song_url]),
        )
        await self._complete(step, song.title, [song.to_wire()])

    # ------------------------------------------------------------------
    # script
    # ------------------------------------------------------------------

    async def generate_music_script(self, step: Step) -> None:
        agent_id = self._agents.script_generator_id
        plan_id = self._agents.script_generator_plan_id
        await self._notifier.report(step.task_id, "Second step: Music Script Generator.")
        try:
            song = SongArtifact.model_validate(step.first_input)
        except PydanticValidationError as exc:
            await self._fail(step, f"Music script task failed: invalid song input: {exc}")
            return

        if not await self._settle(step, plan_id, 1, "Music Script Generator"):
            return
        credential = await self._credential(step, agent_id)
        if credential is None:
            return

        payload = {
            "input_query": step.input_query,
            "name": step.name,
            "input_artifacts": step.input_artifacts,
        }
        await self._notifier.report(
            step.task_id,
            "Calling Music Script Generator Agent to generate a music script based on the user's "
            f'request: "{step.input_query}".',
            NotificationKind.CALL_AGENT,
        )
        from_block = await self._settlement.block_number()

        async def validate(task_id: str):
            return await self._reader.script(agent_id, task_id, credential)

        try:
            result, output = await self._retry.run(
                lambda: self._invoker.invoke(agent_id, payload, validate, credential),
                self._warn_on_retry(step, "Music script generation"),
            )
        except Exception as exc:
            await self._fail(step, f"Music script task failed: {exc}")
            return

        await self._settlement.report_redemption(step.task_id, plan_id, from_block)
        artifact = ScriptArtifact(
            title=song.title,
            song_url=song.song_url,
            duration=song.duration,
            script=result.script,
            prompts=result.transformed_scenes,
            characters=result.characters,
            settings=result.settings,
            tags=song.tags,
            lyrics=song.lyrics,
        )
        await self._notifier.report(
            step.task_id,
            f"Script and prompts generated successfully for song {song.title}.",
            NotificationKind.ANSWER,
            {"agentDid": agent_id},
            Artifacts(mime_type="text/plain", parts=[result.script]),
        )
        await self._complete(step, output or f"Music script generated for song {song.title}", [artifact.to_wire()])

    # ------------------------------------------------------------------
    # images
    # ------------------------------------------------------------------

    async def call_images_generator(self, step: Step) -> None:
        agent_id = self._agents.video_generator_id
        plan_id = self._agents.video_generator_plan_id
        try:
            script = ScriptArtifact.model_validate(step.first_input)
        except PydanticValidationError as exc:
            await self._fail(step, f"Image generation failed: invalid script input: {exc}")
            return

        characters, settings = script.characters, script.settings
        total = len(characters) + len(settings)
        await self._notifier.report(
            step.task_id,
            f"Third step: Images Generator. Generating {len(characters)} characters and "
            f"{len(settings)} settings...",
        )
        if not await self._settle(step, plan_id, total, "Images Generator"):
            return
        credential = await self._credential(step, agent_id)
        if credential is None:
            return

        labels: dict[str, str] = {}

        def image_task(key: str, prompt: str, subject_id: str, subject_type: str) -> SubTask[ImageResult]:
            payload = {
                "name": step.name,
                "input_query": prompt,
                "input_artifacts": [{"inference_type": "text2image", "id": key}],
            }

            async def validate(task_id: str) -> ImageResult:
                return await self._reader.image(agent_id, task_id, credential, subject_id, subject_type)

            labels[key] = f'{subject_type} "{subject_id}"'
            return SubTask(key, lambda: self._invoker.invoke(agent_id, payload, validate, credential))

        specs = [
            image_task(f"character-{i}", c.image_prompt, c.name, "character")
            for i, c in enumerate(characters)
        ] + [
            image_task(f"setting-{i}", s.image_prompt, s.id, "setting")
            for i, s in enumerate(settings)
        ]

        async def on_retry(spec: SubTask, exc: Exception, attempt: int, max_retries: int) -> None:
            await self._notifier.report(
                step.task_id,
                f"Image generation failed for {labels[spec.key]} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {exc}. Retrying...",
                NotificationKind.WARNING,
            )

        await self._notifier.report(
            step.task_id,
            f"Calling Images Generator Agent to generate {len(characters)} images for characters "
            f"and {len(settings)} images for settings...",
            NotificationKind.CALL_AGENT,
        )
        try:
            outcome = await self._fanout.run(specs, self._config.image_failure_threshold, on_retry)
        except Exception as exc:
            await self._fail(step, f"Image generation failed: {exc}")
            return

        for image in outcome.results:
            if image.subject_type == "character":
                for character in characters:
                    if character.name == image.id:
                        character.image_url = image.url
            else:
                for setting in settings:
                    if setting.id == image.id:
                        setting.image_url = image.url

        urls = [c.image_url for c in characters] + [s.image_url for s in settings]
        await self._notifier.report(
            step.task_id,
            "All image generation tasks completed successfully.",
            NotificationKind.ANSWER,
            artifacts=Artifacts(mime_type="image/png", parts=[u for u in urls if u]),
        )
        storyboard = StoryboardArtifact(
            title=script.title,
            song_url=script.song_url,
            duration=script.duration,
            prompts=script.prompts,
            characters=characters,
            settings=settings,
        )
        await self._complete(step, "All image generation tasks completed", [storyboard.to_wire()], cost=total)

    # ------------------------------------------------------------------
    # video
    # ------------------------------------------------------------------

    def _pick_setting(self, scene: ScenePrompt, settings: Sequence[Setting]) -> Optional[Setting]:
        for setting in settings:
            if setting.id == scene.setting_id:
                return setting
        return self._rng.choice(list(settings)) if settings else None

    async def call_video_generator(self, step: Step) -> None:
        agent_id = self._agents.video_generator_id
        plan_id = self._agents.video_generator_plan_id
        try:
            storyboard = StoryboardArtifact.model_validate(step.first_input)
        except PydanticValidationError as exc:
            await self._fail(step, f"Video generation step failed: invalid storyboard input: {exc}")
            return

        scenes = storyboard.prompts
        await self._notifier.report(
            step.task_id,
            f"Fourth step: Video Generator. Creating video generation tasks for {len(scenes)} scenes, "
            "each executed concurrently using the same subscription plan. "
            "This task may take a while to complete.",
        )
        if not await self._settle(step, plan_id, len(scenes), "Video Generator"):
            return
        credential = await self._credential(step, agent_id)
        if credential is None:
            return

        image_urls = {c.name: c.image_url for c in storyboard.characters}

        def video_task(index: int, scene: ScenePrompt) -> SubTask[str]:
            setting = self._pick_setting(scene, storyboard.settings)
            images = [setting.image_url] if setting is not None else []
            images += [image_urls.get(name) for name in scene.characters_in_scene if name in image_urls]
            payload = {
                "name": step.name,
                "input_query": scene.prompt,
                "input_artifacts": [
                    {
                        "inference_type": "text2video",
                        "id": str(index),
                        "images": [url for url in images if url],
                        "duration": scene.duration,
                    }
                ],
            }

            async def validate(task_id: str) -> str:
                return await self._reader.video(agent_id, task_id, credential)

            return SubTask(str(index), lambda: self._invoker.invoke(agent_id, payload, validate, credential))

        specs = [video_task(i, scene) for i, scene in enumerate(scenes)]

        async def on_retry(spec: SubTask, exc: Exception, attempt: int, max_retries: int) -> None:
            await self._notifier.report(
                step.task_id,
                f'Video generation failed for prompt "{scenes[int(spec.key)].prompt}" '
                f"(attempt {attempt + 1}/{max_retries + 1}): {exc}. Retrying...",
                NotificationKind.WARNING,
            )

        await self._notifier.report(
            step.task_id,
            f"Calling Video Generator Agent to generate videos for {len(scenes)} scenes...",
            NotificationKind.CALL_AGENT,
        )
        try:
            outcome = await self._fanout.run(specs, self._config.video_failure_threshold, on_retry)
        except Exception as exc:
            await self._fail(step, f"Video generation step failed: {exc}")
            return

        logger.info(
            "Video generation for task %s: %d succeeded, %d failed",
            step.task_id, outcome.succeeded, outcome.failed,
        )
        if outcome.errors:
            dropped = "; ".join(
                f'scene {int(key) + 1} ("{scenes[int(key)].prompt}"): {exc}'
                for key, exc in sorted(outcome.errors.items(), key=lambda item: int(item[0]))
            )
            await self._notifier.report(
                step.task_id,
                f"Continuing without {len(outcome.errors)} of {outcome.total} scenes: {dropped}",
                NotificationKind.WARNING,
            )
        await self._notifier.report(
            step.task_id,
            "Video generation completed. The final set is complete and ready for merging with the audio track.",
            NotificationKind.ANSWER,
        )
        clips = ClipsArtifact(
            title=storyboard.title,
            song_url=storyboard.song_url,
            duration=storyboard.duration,
            generated_videos=outcome.results,
        )
        await self._complete(
            step,
            f"Video generation completed with {len(outcome.results)} successful videos",
            [clips.to_wire()],
            cost=len(outcome.results) * self._config.video_credit_cost,
        )

    # ------------------------------------------------------------------
    # compile
    # ------------------------------------------------------------------

    async def _probe_all(self, sources: Sequence[str]) -> list[str]:
        durations = await asyncio.gather(
            *(self._compiler.probe_duration(source) for source in sources), return_exceptions=True
        )
        valid = []
        for source, duration in zip(sources, durations):
            if isinstance(duration, Exception):
                logger.warning("Skipping %s, failed to retrieve duration: %s", source, duration)
                continue
            valid.append(source)
        return valid

    async def compile_video(self, step: Step) -> None:
        first = step.first_input
        title = first.get("title") or "music_video"
        await self._notifier.report(
            step.task_id,
            f'Fifth step: Compile Video. Compiling video clips with audio for "{title}"...',
        )

        work_dir = Path(self._config.work_dir)
        token = uuid.uuid4().hex
        merged = work_dir / f"final_compilation_{token}.mp4"
        final = work_dir / f"final_with_audio_{token}.mp4"
        try:
            clips = ClipsArtifact.model_validate(first)
            if not clips.generated_videos:
                raise ValueError("No generated videos found for compilation.")
            if clips.duration <= 0:
                raise ValueError("Invalid or missing song duration for compilation.")
            if not clips.song_url:
                raise ValueError("No song/audio URL provided for final compilation.")

            valid = await self._probe_all(clips.generated_videos)
            if not valid:
                raise ValueError("No valid videos with durations were found.")

            await self._compiler.concat_videos(valid, str(merged))
            await self._compiler.add_audio(str(merged), clips.song_url, str(final), clips.duration)

            await self._notifier.report(
                step.task_id, f'Compilation completed for "{title}". Uploading...'
            )
            key = f"videos/{step.task_id}/{slugify(title)}.mp4"
            data = await asyncio.to_thread(final.read_bytes)
            stored = await asyncio.to_thread(self._file_store.write, key, data, "video/mp4")
            video_url = self._file_store.url(stored)
        except Exception as exc:
            await self._fail(step, f"Compilation failed: {exc}")
            return
        finally:
            for path in (merged, final):
                path.unlink(missing_ok=True)

        await self._notifier.report(
            step.task_id,
            f"The final video for '{title}' is ready. Here is the link: {video_url}",
            NotificationKind.FINAL_ANSWER,
            artifacts=Artifacts(mime_type="video/mp4", parts=[video_url]),
        )
        await self._complete(step, "Video clip compilation completed", [video_url], cost=1)
        await self._notifier.release(step.task_id)
