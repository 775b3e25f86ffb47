"""Tests for the step controller."""

import asyncio
from datetime import datetime, timezone

import pytest

from verly_setup.api import InMemorySetupBackend
from verly_setup.controller import (
    MISSING_CHATBOT_MESSAGE,
    MISSING_CONFIGURATION_MESSAGE,
    PROMPT_INVALID_MESSAGE,
    PROMPT_REQUIRED_MESSAGE,
    UI_SAVED_MESSAGE,
    StepController,
)
from verly_setup.events import ToastLevel, UiEventType
from verly_setup.exceptions import InvalidStepError, InvalidTransitionError
from verly_setup.models import ServerChatbotRecord
from verly_setup.processing import MISSING_WORKSPACE_MESSAGE, SETUP_COMPLETE_MESSAGE
from verly_setup.progress import COMPLETED, IDLE
from verly_setup.session import SetupSession
from verly_setup.validation import INVALID_HOST_MESSAGE


def seeded_record(**kwargs):
    fields = {
        "id": "bot-1",
        "workspace_id": "ws-1",
        "website_url": "https://verly.ai",
        "setup_current_step": 5,
        "version": 4,
        "use_case": "sales support",
    }
    fields.update(kwargs)
    return ServerChatbotRecord(**fields)


def at_step(step, **kwargs):
    fields = {"workspace_id": "ws-1", "step": step, "chatbot_id": "bot-1", "host": "verly.ai"}
    fields.update(kwargs)
    return SetupSession(**fields)


@pytest.fixture
def controller(backend, config, cache, bus):
    return StepController(backend, config, cache=cache, bus=bus)


class TestMount:
    """Tests for mounting and rendering."""

    @pytest.mark.asyncio
    async def test_mount_renders_state(self, controller, recorder):
        await controller.mount("ws-1")

        assert controller.is_mounted
        assert controller.session.workspace_id == "ws-1"
        assert controller.step == 1
        states = recorder.of_type(UiEventType.STATE)
        assert states[-1].payload["step"] == 1
        assert states[-1].payload["stage"] == IDLE

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_inconsistent_session_is_reset(self, controller, recorder):
        await controller.mount("ws-1", session=SetupSession(workspace_id="ws-1", step=5))
        await controller.settle()

        assert controller.step == 1
        assert controller.session.workspace_id == "ws-1"
        navigations = recorder.of_type(UiEventType.NAVIGATE)
        assert [e.payload["path"] for e in navigations] == ["/ws-1/chatbot"]

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_unmount_stops_poller_and_effects(self, backend, controller):
        backend.seed(seeded_record(setup_current_step=6))
        await controller.mount("ws-1", session=at_step(6))

        assert controller.is_prompt_loading

        await controller.unmount()

        assert controller.is_mounted is False
        assert controller.poller.is_running is False
        assert controller.effects.pending == 0

    @pytest.mark.asyncio
    async def test_unmount_cancels_processing(self, config, cache, bus):
        backend = InMemorySetupBackend(latency=0.05)
        controller = StepController(backend, config, cache=cache, bus=bus)
        await controller.mount("ws-1", session=SetupSession(workspace_id="ws-1", step=2, host="verly.ai"))

        assert controller.effects.is_running("processing")

        await controller.unmount()

        assert controller.effects.pending == 0
        assert backend.chatbot_count == 0


class TestNavigation:
    """Tests for step changes."""

    @pytest.mark.asyncio
    async def test_invalid_step_numbers(self, controller):
        await controller.mount("ws-1")

        for step in (0, 8, "3", None, 2.0):
            with pytest.raises(InvalidStepError):
                controller.set_step(step)
        assert controller.step == 1

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_forbidden_jump(self, controller):
        await controller.mount("ws-1", session=at_step(3))

        with pytest.raises(InvalidTransitionError):
            controller.set_step(6)
        assert controller.step == 3

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_same_step_is_a_no_op(self, controller):
        await controller.mount("ws-1", session=at_step(3))
        before = controller.session

        controller.set_step(3)

        assert controller.session is before
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_continue_only_from_own_step(self, controller):
        await controller.mount("ws-1", session=at_step(3, customization={"DisplayName": "Bot"}))

        with pytest.raises(InvalidTransitionError):
            controller.continue_to_prompt()

        controller.continue_to_ui_config()
        assert controller.step == 4

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_stage(self, controller):
        await controller.mount("ws-1", session=at_step(3))
        assert controller.stage == COMPLETED
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_reset_cancels_effects(self, config, cache, bus):
        backend = InMemorySetupBackend(latency=0.05)
        controller = StepController(backend, config, cache=cache, bus=bus)
        await controller.mount("ws-1", session=SetupSession(workspace_id="ws-1", step=2, host="verly.ai"))

        controller.reset()
        await controller.settle()

        assert controller.step == 1
        assert controller.effects.running == []
        assert controller.stage == IDLE
        assert backend.chatbot_count == 0

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_no_stage_after_reset(self, config, cache, bus, recorder):
        backend = InMemorySetupBackend(latency=0.05)
        controller = StepController(backend, config, cache=cache, bus=bus)
        await controller.mount("ws-1", session=SetupSession(workspace_id="ws-1", step=2, host="verly.ai"))
        await asyncio.sleep(0.01)

        controller.reset()
        await controller.settle()
        stages = len(recorder.of_type(UiEventType.STAGE))
        await asyncio.sleep(0.1)

        assert stages >= 1
        assert len(recorder.of_type(UiEventType.STAGE)) == stages
        assert controller.stage == IDLE

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_no_stage_after_failed_processing(self, config, cache, bus, recorder):
        backend = InMemorySetupBackend(latency=0.01)
        for operation in ("infer_prompt", "search_sources", "generate_topics"):
            backend.fail(operation)
        controller = StepController(backend, config, cache=cache, bus=bus)
        await controller.mount("ws-1")
        controller.update_inputs(host="verly.ai")

        assert await controller.submit()
        await controller.settle()
        assert controller.step == 1
        stages = len(recorder.of_type(UiEventType.STAGE))
        await asyncio.sleep(0.1)

        assert len(recorder.of_type(UiEventType.STAGE)) == stages
        assert controller.stage == IDLE

        await controller.unmount()


class TestInputs:
    """Tests for step 1."""

    @pytest.mark.asyncio
    async def test_pasted_url(self, controller):
        await controller.mount("ws-1")

        controller.update_inputs(host="  http://www.Verly.ai/pricing?ref=1 ")

        assert controller.session.protocol == "http://"
        assert controller.session.host == "Verly.ai"

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_explicit_protocol_wins(self, controller):
        await controller.mount("ws-1")

        controller.update_inputs(protocol="https://", host="http://verly.ai")

        assert controller.session.protocol == "https://"
        assert controller.session.host == "verly.ai"

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_invalid_host_is_toasted(self, backend, controller, recorder):
        await controller.mount("ws-1")
        controller.update_inputs(host="example")

        assert await controller.submit() is False

        assert controller.step == 1
        assert recorder.toasts(ToastLevel.ERROR) == [INVALID_HOST_MESSAGE]
        assert backend.calls == []

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_missing_workspace_is_toasted(self, controller, recorder):
        await controller.mount("")
        controller.update_inputs(host="verly.ai")

        assert await controller.submit() is False
        assert recorder.toasts(ToastLevel.ERROR) == [MISSING_WORKSPACE_MESSAGE]

        await controller.unmount()

    @pytest.mark.asyncio
    async def test_submit_runs_processing(self, backend, controller, recorder):
        await controller.mount("ws-1")
        controller.update_inputs(host="verly.ai", use_case="sales support")

        assert await controller.submit() is True
        assert await controller.submit() is False
        await controller.settle()

        assert controller.step == 3
        assert controller.session.chatbot_id is not None
        assert backend.chatbot_count == 1
        assert recorder.toasts(ToastLevel.SUCCESS) == [SETUP_COMPLETE_MESSAGE]

        await controller.unmount()


class TestCustomization:
    """Tests for step 4."""

    @pytest.mark.asyncio
    async def test_loads_saved_customization(self, backend, controller):
        backend.seed(seeded_record(setup_current_step=4))
        await backend.save_customization("bot-1", {"DisplayName": "Saved"})

        await controller.mount("ws-1", session=at_step(4))
        await controller.settle()

        assert controller.session.customization == {"DisplayName": "Saved"}
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_save_advances(self, backend, controller, recorder):
        await controller.mount("ws-1", session=at_step(4, customization={"DisplayName": "Bot"}))
        controller.update_customization(primaryColor="#123456")

        assert await controller.save_customization() is True

        assert controller.step == 5
        assert backend.calls_to("save_customization")[0]["config"] == {
            "DisplayName": "Bot",
            "primaryColor": "#123456",
        }
        assert recorder.toasts(ToastLevel.SUCCESS) == [UI_SAVED_MESSAGE]
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_save_failure_stays(self, backend, controller, recorder):
        backend.fail("save_customization", "widget service down")
        await controller.mount("ws-1", session=at_step(4, customization={"DisplayName": "Bot"}))

        assert await controller.save_customization() is False

        assert controller.step == 4
        assert recorder.toasts(ToastLevel.ERROR) == ["widget service down"]
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_save_without_draft(self, backend, controller, recorder):
        backend.fail("load_customization")
        await controller.mount("ws-1", session=at_step(4))
        await controller.settle()

        assert await controller.save_customization() is False
        assert recorder.toasts(ToastLevel.ERROR) == [MISSING_CONFIGURATION_MESSAGE]
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_save_off_step(self, controller):
        await controller.mount("ws-1", session=at_step(3))
        with pytest.raises(InvalidTransitionError):
            await controller.save_customization()
        await controller.unmount()


class TestPrompt:
    """Tests for step 6."""

    @pytest.mark.asyncio
    async def test_save_prompt_finishes(self, backend, controller, recorder):
        backend.seed(seeded_record(setup_current_step=6, version=4))
        await controller.mount("ws-1", session=at_step(6, version=4, draft_prompt="Old"))
        controller.update_draft_prompt("  You are a sales assistant.  ")

        assert await controller.save_prompt() is True
        await controller.settle()

        assert controller.step == 7
        assert backend.calls_to("upsert_channel_prompt")[0]["system_prompt"] == (
            "You are a sales assistant."
        )
        assert controller.session.inferred_prompt == "You are a sales assistant."
        queries = [e.payload["query"] for e in recorder.of_type(UiEventType.INVALIDATE)]
        assert queries == ["prompts", "chatbots"]
        assert len(backend.calls_to("update_chatbot")) == 1
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_empty_prompt(self, backend, controller, recorder):
        await controller.mount("ws-1", session=at_step(6, draft_prompt="x"))
        controller.update_draft_prompt("   ")

        assert await controller.save_prompt() is False

        assert controller.step == 6
        assert recorder.toasts(ToastLevel.ERROR) == [PROMPT_REQUIRED_MESSAGE]
        assert backend.calls_to("upsert_channel_prompt") == []
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_rejected_prompt(self, backend, controller, recorder):
        backend.fail("upsert_channel_prompt", "System prompt contains forbidden content")
        await controller.mount("ws-1", session=at_step(6, draft_prompt="Be rude."))

        assert await controller.save_prompt() is False

        assert controller.step == 6
        assert recorder.toasts(ToastLevel.ERROR) == [PROMPT_INVALID_MESSAGE]
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_missing_chatbot(self, controller, recorder):
        store_session = SetupSession(workspace_id="ws-1", step=6, draft_prompt="Hi")
        controller.store.restore(store_session)

        assert await controller.save_prompt() is False
        assert recorder.toasts(ToastLevel.ERROR) == [MISSING_CHATBOT_MESSAGE]


class TestCompletion:
    """Tests for step 7."""

    @pytest.mark.asyncio
    async def test_single_patch_across_renders(self, backend, controller):
        backend.seed(seeded_record(setup_current_step=6, version=4))
        await controller.mount("ws-1", session=at_step(7, version=4))
        await controller.settle()

        for _ in range(3):
            await controller.render()
        await controller.settle()

        calls = backend.calls_to("update_chatbot")
        assert len(calls) == 1
        assert calls[0]["version"] == 4
        assert backend.record("bot-1").is_completed
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_completed_resume_is_not_finalized(self, backend, controller):
        completed = datetime(2026, 10, 1, tzinfo=timezone.utc)
        backend.seed(seeded_record(setup_current_step=7, setup_completed_at=completed), prompt="p")

        await controller.mount("ws-1", resume="bot-1")
        await controller.settle()

        assert controller.step == 7
        assert backend.calls_to("update_chatbot") == []
        await controller.unmount()


class TestResume:
    """Tests for resuming a chatbot."""

    @pytest.mark.asyncio
    async def test_processing_resume_reuses_chatbot(self, backend, controller):
        backend.seed(seeded_record(setup_current_step=2, version=1))

        await controller.mount("ws-1", resume="bot-1")
        await controller.settle()

        assert controller.step == 3
        assert controller.session.chatbot_id == "bot-1"
        assert backend.calls_to("create_chatbot") == []
        assert backend.calls[0][0] == "get_chatbot"
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_submit_during_resume_waits_for_record(self, config, cache, bus):
        backend = InMemorySetupBackend(latency=0.05)
        backend.seed(seeded_record(setup_current_step=2, version=1))
        controller = StepController(backend, config, cache=cache, bus=bus)

        await controller.mount("ws-1", resume="bot-1")
        controller.update_inputs(host="verly.ai")
        assert await controller.submit() is False
        await controller.settle()

        assert controller.step == 3
        assert controller.session.chatbot_id == "bot-1"
        assert backend.chatbot_count == 1
        assert backend.calls_to("create_chatbot") == []
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_submit_after_resume_without_website(self, config, cache, bus):
        backend = InMemorySetupBackend(latency=0.02)
        backend.seed(seeded_record(website_url=None, setup_current_step=1, version=1))
        controller = StepController(backend, config, cache=cache, bus=bus)

        await controller.mount("ws-1", resume="bot-1")
        controller.update_inputs(host="verly.ai")
        assert await controller.submit() is True
        await controller.settle()

        assert controller.step == 3
        assert controller.session.chatbot_id == "bot-1"
        assert backend.chatbot_count == 1
        assert backend.record("bot-1").website_url == "https://verly.ai"
        await controller.unmount()

    @pytest.mark.asyncio
    async def test_resume_past_processing(self, backend, controller):
        backend.seed(seeded_record(setup_current_step=5), prompt="Server prompt")

        await controller.mount("ws-1", resume="bot-1")
        await controller.settle()

        assert controller.step == 5
        assert controller.session.draft_prompt == "Server prompt"
        await controller.unmount()
