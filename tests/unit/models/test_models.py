"""Tests for the pipeline, payment and artifact models."""

from __future__ import annotations

from decimal import Decimal

import pytest

from cadenza.models.artifacts import ClipsArtifact, ScriptArtifact, SongArtifact
from cadenza.models.payments import (
    BalanceSnapshot,
    ChainEvent,
    PlanDescriptor,
    SettlementReceipt,
    token_id_from_plan_id,
)
from cadenza.models.pipeline import DispatchAck, StageName, Step, StepEvent, TaskSignal, TaskStatus
from tests.fakes.plans import CREDIT_CONTRACT, EXT_OWNER, EXT_TOKEN, make_ddo


class TestStageName:
    def test_exact_names(self):
        assert StageName.parse("callVideoGenerator") is StageName.CALL_VIDEO_GENERATOR
        assert StageName.parse("init") is StageName.INIT

    @pytest.mark.parametrize("name", ["CallVideoGenerator", "compile_video", "", "foo"])
    def test_unknown_or_miscased(self, name):
        assert StageName.parse(name) is None

    def test_step_stage_property(self):
        assert Step(step_id="s", task_id="t", name="compileVideo").stage is StageName.COMPILE_VIDEO


class TestStep:
    def test_first_input_dict(self):
        step = Step(step_id="s", task_id="t", name="x", input_artifacts=[{"a": 1}, {"b": 2}])
        assert step.first_input == {"a": 1}

    @pytest.mark.parametrize("artifacts", [[], ["https://x/video.mp4"]])
    def test_first_input_non_dict(self, artifacts):
        assert Step(step_id="s", task_id="t", name="x", input_artifacts=artifacts).first_input == {}


class TestSignals:
    def test_task_signal_from_json(self):
        signal = TaskSignal.parse('{"task_id": "t1", "task_status": "Failed"}')
        assert (signal.task_id, signal.status) == ("t1", TaskStatus.FAILED)

    def test_task_signal_accepts_status_key(self):
        assert TaskSignal.parse({"task_id": "t1", "status": "Completed"}).status == TaskStatus.COMPLETED

    def test_step_event_defaults(self):
        event = StepEvent.parse(b'{"step_id": "s1"}')
        assert event.step_id == "s1"
        assert event.task_id is None
        assert event.event_type == "step-updated"

    def test_dispatch_ack(self):
        ack = DispatchAck(status=201, data={"task_id": "t9"})
        assert ack.accepted and ack.task_id == "t9"
        assert not DispatchAck(status=500).accepted


class TestPlanDescriptor:
    def test_from_ddo(self):
        descriptor = PlanDescriptor.from_ddo("did:nv:0c2d", make_ddo())
        assert descriptor.token_address == EXT_TOKEN
        assert descriptor.token_symbol == "USDC"
        assert descriptor.price == Decimal("2")
        assert descriptor.owner_wallet == EXT_OWNER
        assert descriptor.credit_contract == CREDIT_CONTRACT
        assert descriptor.credit_token_id == 0x0C2D

    def test_missing_fields(self):
        descriptor = PlanDescriptor.from_ddo("did:nv:zz", make_ddo(token=None, price=None, owner=None, contract=None))
        assert descriptor.token_address is None
        assert descriptor.price is None
        assert descriptor.owner_wallet is None
        assert descriptor.credit_contract is None
        assert descriptor.credit_token_id is None

    def test_unparseable_price(self):
        assert PlanDescriptor.from_ddo("did:nv:01", make_ddo(price="two")).price is None

    def test_token_id(self):
        assert token_id_from_plan_id("did:nv:ff") == 255


class TestBalance:
    def test_owner_always_covers(self):
        assert BalanceSnapshot(balance=0, is_owner=True).covers(10)

    def test_threshold(self):
        assert BalanceSnapshot(balance=5).covers(5)
        assert not BalanceSnapshot(balance=4).covers(5)

    def test_receipt_confirmation(self):
        receipt = SettlementReceipt(plan_id="p", balance=0, required=1)
        assert receipt.confirmed
        receipt.ordered = True
        assert not receipt.confirmed
        receipt.mint_event = ChainEvent(
            tx_hash="0x1", block_number=1, operator="0xo", from_address="0x0",
            to_address="0xw", token_id=1, value=100,
        )
        assert receipt.confirmed


class TestArtifacts:
    def test_song_wire_is_camel_case(self):
        song = SongArtifact(title="t", song_url="https://x/s.mp3", duration=12)
        assert song.to_wire() == {
            "title": "t", "songUrl": "https://x/s.mp3", "duration": 12.0,
            "tags": [], "lyrics": "", "idea": "",
        }

    def test_script_keeps_unknown_fields(self):
        script = ScriptArtifact.model_validate(
            {"title": "t", "songUrl": "u", "duration": 1, "script": "s", "mood": "dark"}
        )
        assert script.to_wire()["mood"] == "dark"

    def test_clips_accept_snake_case(self):
        clips = ClipsArtifact(title="t", song_url="u", duration=3, generated_videos=["a"])
        assert clips.to_wire()["generatedVideos"] == ["a"]
