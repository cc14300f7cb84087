"""
Test Session Runtime - Command execution, generation fallback, load and reset

Run with: pytest tests/test_session_runtime.py
"""

import asyncio

import pytest

from blueprint_coach.bootstrap import build_service
from blueprint_coach.contracts import CapturedField, Stage
from blueprint_coach.core.session_state import SessionState
from blueprint_coach.errors import GenerationUnavailable
from blueprint_coach.persistence import InMemoryRemoteStore
from blueprint_coach.results import Outcome
from blueprint_coach.settings import CoachSettings
from blueprint_coach.utils.clock import ManualClock
from blueprint_coach.utils.generators import Generator, TemplateGenerator

NOW = 1_700_000_000.0
STRONG_BIG_IDEA = "Students design a renewable-energy proposal for their neighborhood"


class EchoGenerator(Generator):
    """Returns the purpose and stage label so tests can tell it apart from templates"""

    def __init__(self):
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        return f"[{request.purpose}] {request.context['stage_label']}"


class FailingGenerator(Generator):
    def __init__(self, error):
        self.error = error

    async def generate(self, request):
        raise self.error


class HangingGenerator(Generator):
    """Never answers"""

    async def generate(self, request):
        await asyncio.Event().wait()


class GatedGenerator(Generator):
    """First call waits on a gate; later calls answer at once"""

    def __init__(self):
        self.gate = None
        self.calls = 0

    async def generate(self, request):
        self.calls += 1
        number = self.calls
        if number == 1:
            await self.gate.wait()
        return f"generated {number}: {request.purpose}"


def make_service(tmp_path, remote=None, generator=None, clock=None, debounce=False, **overrides):
    settings = CoachSettings(storage_root=str(tmp_path), **overrides)
    return build_service(
        settings,
        remote_store=remote if remote is not None else InMemoryRemoteStore(),
        generator=generator or TemplateGenerator(),
        clock=clock or ManualClock(start=NOW),
        recover=False,
        debounce=debounce,
    )


def codes(service):
    return [n.code for n in service.notifications.recent()]


# =============================================================================
# Persistence through the runtime
# =============================================================================

def test_saves_locally_first_then_remote_after_debounce(tmp_path):
    async def scenario():
        clock = ManualClock(start=NOW)
        remote = InMemoryRemoteStore()
        service = make_service(tmp_path, remote=remote, clock=clock, debounce=True)
        session = service.create("abc12345")

        turn = await session.submit_input(STRONG_BIG_IDEA)

        assert turn.outcome == Outcome.AWAITING_CONFIRM
        assert service.coordinator.local_store.get("abc12345")["revision"] == 1
        assert remote.records == {}

        await clock.advance(1.5)
        assert remote.records["abc12345"]["revision"] == 1
        await service.close_all()

    asyncio.run(scenario())
    print("✓ Local-first persistence test passed")


def test_flush_waits_for_outstanding_writes(tmp_path):
    async def scenario():
        remote = InMemoryRemoteStore()
        service = make_service(tmp_path, remote=remote)
        session = service.create("abc12345")

        await session.submit_input(STRONG_BIG_IDEA)
        await session.submit_input("yes")
        await session.flush()

        assert remote.records["abc12345"]["revision"] == 2
        assert remote.records["abc12345"]["stage"] == Stage.TOPIC_2.value
        assert service.coordinator.local_store.get("abc12345") == remote.records["abc12345"]

    asyncio.run(scenario())


# =============================================================================
# Generation
# =============================================================================

def test_generated_prompt_replaces_template_text(tmp_path):
    async def scenario():
        generator = EchoGenerator()
        service = make_service(tmp_path, generator=generator)
        session = service.create("abc12345")

        turn = await session.submit_input(STRONG_BIG_IDEA)

        assert turn.prompt == "[awaiting_confirm] Big Idea"
        assert turn.generated
        assert session.prompt == turn.prompt
        assert turn.snapshot["prompt"] == turn.prompt
        request = generator.requests[0]
        assert request.fallback_text.startswith(f"\"{STRONG_BIG_IDEA}\" is a strong Big Idea")

    asyncio.run(scenario())


@pytest.mark.parametrize("error", [
    RuntimeError("model crashed"),
    GenerationUnavailable("no model loaded"),
])
def test_generation_failure_falls_back_to_template(tmp_path, error):
    async def scenario():
        service = make_service(tmp_path, generator=FailingGenerator(error))
        session = service.create("abc12345")

        turn = await session.submit_input(STRONG_BIG_IDEA)

        assert not turn.generated
        assert turn.prompt.startswith(f"\"{STRONG_BIG_IDEA}\" is a strong Big Idea")
        assert turn.outcome == Outcome.AWAITING_CONFIRM

    asyncio.run(scenario())


def test_generation_timeout_uses_fallback(tmp_path):
    async def scenario():
        clock = ManualClock(start=NOW)
        service = make_service(tmp_path, generator=HangingGenerator(), clock=clock)
        session = service.create("abc12345")

        task = asyncio.create_task(session.submit_input(STRONG_BIG_IDEA))
        await clock.settle()
        assert not task.done()
        # State is already updated while the prompt is still being generated
        assert session.state.pending is not None

        await clock.advance(15)
        turn = await task

        assert not turn.generated
        assert turn.prompt.startswith(f"\"{STRONG_BIG_IDEA}\"")

    asyncio.run(scenario())
    print("✓ Generation timeout test passed")


def test_superseded_generation_is_discarded(tmp_path):
    async def scenario():
        generator = GatedGenerator()
        generator.gate = asyncio.Event()
        service = make_service(tmp_path, generator=generator)
        session = service.create("abc12345")

        first = await session.submit_input("ok", wait=False)
        for _ in range(5):
            await asyncio.sleep(0)
        assert generator.calls == 1

        second = await session.submit_input(STRONG_BIG_IDEA)
        generator.gate.set()
        await asyncio.sleep(0)

        assert first.outcome == Outcome.AWAITING_REFINE
        assert second.prompt == "generated 2: awaiting_confirm"
        assert session.prompt == "generated 2: awaiting_confirm"

    asyncio.run(scenario())


# =============================================================================
# Load and recovery
# =============================================================================

def test_load_restores_saved_session(tmp_path):
    async def scenario():
        remote = InMemoryRemoteStore()
        first = make_service(tmp_path, remote=remote)
        session = first.create("abc12345")
        await session.submit_input(STRONG_BIG_IDEA)
        await session.submit_input("yes")
        await first.close_all()

        second = make_service(tmp_path, remote=remote)
        loaded = await second.load("abc12345")

        assert loaded.state == session.state
        assert loaded.snapshot()["stage"] == Stage.TOPIC_2.value
        assert loaded.prompt.startswith("Essential Question:")

    asyncio.run(scenario())
    print("✓ Load round trip test passed")


def test_load_prefers_higher_revision(tmp_path):
    async def scenario():
        remote = InMemoryRemoteStore()
        service = make_service(tmp_path, remote=remote)
        older = SessionState(session_id="abc12345", created_at=NOW, updated_at=NOW, revision=2)
        newer = SessionState(
            session_id="abc12345",
            stage=Stage.TOPIC_2,
            fields={"topic1.value": CapturedField(key="topic1.value", value="Energy shapes communities", confirmed=True)},
            created_at=NOW,
            updated_at=NOW + 30,
            revision=5,
        )
        service.coordinator.local_store.set("abc12345", older.to_record())
        remote.records["abc12345"] = newer.to_record()

        loaded = await service.load("abc12345")
        assert loaded.state.revision == 5
        assert loaded.state.stage == Stage.TOPIC_2

        remote.online = False
        offline = await service.load("abc12345")
        assert offline.state.revision == 2

    asyncio.run(scenario())


def test_load_unreadable_record_starts_fresh_with_notice(tmp_path):
    async def scenario():
        service = make_service(tmp_path)
        (tmp_path / "abc12345.json").write_text("{broken", encoding="utf-8")

        session = await service.load("abc12345")

        assert session.state.revision == 0
        assert session.state.fields == {}
        assert "validation" in codes(service)
        notice = service.notifications.recent()[-1]
        assert "Starting a fresh blueprint" in notice.message

    asyncio.run(scenario())


def test_load_unknown_session_starts_fresh_quietly(tmp_path):
    async def scenario():
        service = make_service(tmp_path)

        session = await service.load("newid123")

        assert session.state.stage == Stage.TOPIC_1
        assert codes(service) == []

    asyncio.run(scenario())


def test_load_rolls_back_inconsistent_stage(tmp_path):
    async def scenario():
        service = make_service(tmp_path)
        stored = SessionState(
            session_id="abc12345",
            stage=Stage.JOURNEY,
            fields={"topic1.value": CapturedField(key="topic1.value", value="Energy shapes communities", confirmed=True)},
            created_at=NOW,
            updated_at=NOW,
            revision=4,
        )
        service.coordinator.local_store.set("abc12345", stored.to_record())

        session = await service.load("abc12345")

        assert session.state.stage == Stage.TOPIC_2
        assert session.state.revision == 5
        assert session.prompt.startswith("Returned to Essential Question")
        assert "validation" in codes(service)
        await service.close_all()

    asyncio.run(scenario())


# =============================================================================
# Session operations
# =============================================================================

def test_reset_clears_progress_and_saves_fresh_state(tmp_path):
    async def scenario():
        remote = InMemoryRemoteStore()
        service = make_service(tmp_path, remote=remote)
        session = service.create("abc12345")
        await session.submit_input(STRONG_BIG_IDEA)
        await session.submit_input("yes")
        await session.flush()

        turn = await session.reset()
        await session.flush()

        assert turn.outcome == Outcome.RESET
        assert session.state.fields == {}
        assert session.state.revision == 3
        assert service.coordinator.epoch("abc12345") == 1
        stored = service.coordinator.local_store.get("abc12345")
        assert stored["stage"] == Stage.TOPIC_1.value
        assert stored["fields"] == []
        assert remote.records["abc12345"]["revision"] == 3

    asyncio.run(scenario())


def test_rejected_jump_reports_reason(tmp_path):
    async def scenario():
        service = make_service(tmp_path)
        session = service.create("abc12345")

        turn = await session.request_stage_jump(Stage.DELIVERABLES)

        assert turn.outcome == Outcome.JUMP_REJECTED
        payload = turn.to_dict()
        assert "topic1.value" in payload["rejection"]["missing"]
        assert payload["prompt"] == turn.rejection.reason
        assert codes(service) == ["validation"]
        assert session.state.revision == 0

    asyncio.run(scenario())


def test_full_blueprint_walkthrough(tmp_path):
    async def scenario():
        service = make_service(tmp_path)
        session = service.create("abc12345")

        script = [
            STRONG_BIG_IDEA, "yes",
            "How might we power our town fairly?", "yes",
            "Students design a solar plan for school", "yes",
            "Launch", "Interview neighbours",
            "Build", "Prototype panels",
            "Share", "Present to council",
            "yes",
            "Prototype", "done", "yes",
        ]
        turn = None
        for text in script:
            turn = await session.submit_input(text)

        assert turn.outcome == Outcome.COMMITTED
        snapshot = session.snapshot()
        assert snapshot["stage"] == Stage.COMPLETE.value
        assert snapshot["completion_ratio"] == 1.0
        assert snapshot["status"] == "ready"
        assert snapshot["local_only"] is False
        await service.close_all()

    asyncio.run(scenario())
    print("✓ Full walkthrough test passed")


def test_service_registry(tmp_path):
    async def scenario():
        service = make_service(tmp_path)

        first = service.create("abc12345")
        second = service.create("abc12345")

        assert first is not second
        assert service.get("abc12345") is second
        assert service.open_ids() == ["abc12345"]
        assert service.coordinator.epoch("abc12345") == 1

        with pytest.raises(KeyError):
            service.get("missing1")
        with pytest.raises(ValueError):
            service.create("bad id!")

        generated = service.create()
        assert len(generated.session_id) == 8

        await service.close_all()
        assert service.open_ids() == []

    asyncio.run(scenario())
