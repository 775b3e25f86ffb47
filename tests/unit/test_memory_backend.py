"""Tests for InMemorySetupBackend."""

import pytest

from verly_setup.api import InMemorySetupBackend
from verly_setup.exceptions import BackendError, NotFoundError, VersionConflictError
from verly_setup.models import ChatbotStatus, StepStatus


async def create(backend, workspace_id="ws-1"):
    return await backend.create_chatbot(
        workspace_id,
        name="verly.ai Agent",
        description="sales support initialized via link setup for https://verly.ai",
        website_url="https://verly.ai",
        use_case="sales support",
    )


class TestInMemorySetupBackend:
    """Tests for the in-memory fake."""

    @pytest.mark.asyncio
    async def test_initialize_and_close(self, backend):
        await backend.initialize()
        assert backend._initialized is True
        await backend.close()
        assert backend._initialized is False

    @pytest.mark.asyncio
    async def test_create_chatbot(self, backend):
        record = await create(backend)

        assert record.workspace_id == "ws-1"
        assert record.website_url == "https://verly.ai"
        assert record.setup_current_step == 2
        assert record.status is ChatbotStatus.DRAFT
        assert record.version == 1
        assert backend.chatbot_count == 1
        assert backend.calls_to("create_chatbot")[0]["use_case"] == "sales support"

    @pytest.mark.asyncio
    async def test_get_chatbot_wrong_workspace(self, backend):
        record = await create(backend)
        with pytest.raises(NotFoundError):
            await backend.get_chatbot("ws-2", record.id)

    @pytest.mark.asyncio
    async def test_update_bumps_version(self, backend):
        record = await create(backend)

        updated = await backend.update_chatbot(record.id, {"status": "ACTIVE"}, version=1)

        assert updated.version == 2
        assert updated.status is ChatbotStatus.ACTIVE
        assert backend.record(record.id).version == 2

    @pytest.mark.asyncio
    async def test_update_stale_version(self, backend):
        record = await create(backend)
        with pytest.raises(VersionConflictError) as excinfo:
            await backend.update_chatbot(record.id, {"status": "ACTIVE"}, version=7)
        assert excinfo.value.expected_version == 7
        assert excinfo.value.actual_version == 1

    @pytest.mark.asyncio
    async def test_update_unknown(self, backend):
        with pytest.raises(NotFoundError):
            await backend.update_chatbot("nope", {}, version=1)

    @pytest.mark.asyncio
    async def test_infer_prompt_records_progress(self, backend):
        record = await create(backend)

        inferred = await backend.infer_prompt(record.id, "https://verly.ai", "sales support")

        assert inferred.system_prompt == (
            "You are a helpful assistant for verly.ai. Focus on: sales support."
        )
        assert inferred.name == "Verly"
        stored = backend.record(record.id)
        assert stored.setup_current_step == 3
        assert stored.setup_step_statuses[2] is StepStatus.COMPLETED
        assert stored.version == 2
        assert await backend.get_channel_prompt(record.id, "WIDGET") == inferred.system_prompt

    @pytest.mark.asyncio
    async def test_deferred_prompt(self):
        backend = InMemorySetupBackend(prompt_delay_fetches=2, return_prompt=False)
        record = await create(backend)

        inferred = await backend.infer_prompt(record.id, "https://verly.ai", "sales")

        assert inferred.system_prompt == ""
        assert await backend.get_channel_prompt(record.id, "WIDGET") == ""
        assert await backend.get_channel_prompt(record.id, "WIDGET") == ""
        assert await backend.get_channel_prompt(record.id, "WIDGET") != ""

    @pytest.mark.asyncio
    async def test_upsert_prompt_overrides_pending(self):
        backend = InMemorySetupBackend(prompt_delay_fetches=5)
        record = await create(backend)
        await backend.infer_prompt(record.id, "https://verly.ai", "sales")

        await backend.upsert_channel_prompt(record.id, "WIDGET", "You are a sales assistant.")

        assert await backend.get_channel_prompt(record.id, "WIDGET") == "You are a sales assistant."

    @pytest.mark.asyncio
    async def test_setup_calls(self):
        backend = InMemorySetupBackend(topics=["Pricing"], primary_color="#ff0000")
        record = await create(backend)

        sources = await backend.search_sources(record.id, "https://verly.ai")
        topics = await backend.generate_topics(record.id, "https://verly.ai", "sales")
        analysis = await backend.analyze_image(record.id, "https://verly.ai/logo.png")

        assert [s.type for s in sources] == ["url"]
        assert topics == ["Pricing"]
        assert analysis.primary_color == "#ff0000"

    @pytest.mark.asyncio
    async def test_customization_merges(self, backend):
        record = await create(backend)
        assert await backend.load_customization(record.id) == {}

        await backend.save_customization(record.id, {"DisplayName": "Verly", "appearance": "dark"})
        saved = await backend.save_customization(record.id, {"appearance": "light"})

        assert saved == {"DisplayName": "Verly", "appearance": "light"}
        assert await backend.load_customization(record.id) == saved


class TestFailureInjection:
    """Tests for the failure helpers."""

    @pytest.mark.asyncio
    async def test_fail_with_message(self, backend):
        backend.fail("generate_topics", "topic service down")
        with pytest.raises(BackendError) as excinfo:
            await backend.generate_topics("bot", "https://verly.ai", "sales")
        assert str(excinfo.value) == "topic service down"
        assert excinfo.value.status_code == 500

    @pytest.mark.asyncio
    async def test_fail_times(self, backend):
        backend.fail("search_sources", times=1)
        with pytest.raises(BackendError):
            await backend.search_sources("bot", "https://verly.ai")
        assert await backend.search_sources("bot", "https://verly.ai")

    @pytest.mark.asyncio
    async def test_fail_with_exception(self, backend):
        backend.fail("get_chatbot", NotFoundError("chatbot", "x"))
        with pytest.raises(NotFoundError):
            await backend.get_chatbot("ws-1", "x")

    @pytest.mark.asyncio
    async def test_recover(self, backend):
        backend.fail("generate_topics")
        backend.fail("search_sources")
        backend.recover("generate_topics")
        assert await backend.generate_topics("bot", "u", "c")
        backend.recover()
        assert await backend.search_sources("bot", "u")

    @pytest.mark.asyncio
    async def test_calls_are_recorded_even_when_failing(self, backend):
        backend.fail("infer_prompt")
        with pytest.raises(BackendError):
            await backend.infer_prompt("bot", "https://verly.ai", "sales")
        assert len(backend.calls_to("infer_prompt")) == 1

    def test_from_config(self):
        backend = InMemorySetupBackend.from_config({"prompt_delay_fetches": "3", "topics": ["A"]})
        assert backend._prompt_delay_fetches == 3
        assert backend._topics == ["A"]
