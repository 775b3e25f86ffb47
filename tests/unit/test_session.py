"""Tests for the setup session reducer and store."""

from datetime import datetime, timezone

import pytest

from verly_setup.exceptions import InvalidStepError, InvalidTransitionError, ValidationError
from verly_setup.models import DataSource, ServerChatbotRecord
from verly_setup.session import (
    Advance,
    ChatbotCreated,
    CustomizationChanged,
    DraftPromptChanged,
    HydrateFromServer,
    InputsChanged,
    ProcessingFailed,
    ProcessingStarted,
    ProcessingSucceeded,
    PromptLoaded,
    Reset,
    SetStep,
    SetupSession,
    SetupStore,
    Submit,
    reduce,
    resume_step,
)


def at_step(step, chatbot_id="bot-1", **kwargs):
    return SetupSession(workspace_id="ws-1", step=step, chatbot_id=chatbot_id, **kwargs)


class TestSetupSession:
    """Tests for derived session properties."""

    def test_defaults(self):
        session = SetupSession()
        assert session.step == 1
        assert session.chatbot_id is None
        assert session.protocol == "https://"
        assert session.use_case == "General AI Agent"
        assert session.is_consistent is True

    def test_website_url(self):
        session = SetupSession(protocol="http://", host="verly.ai")
        assert session.website_url == "http://verly.ai"

    def test_inconsistent_without_chatbot(self):
        assert SetupSession(step=3).is_consistent is False
        assert SetupSession(step=2).is_consistent is True

    def test_has_prompt(self):
        assert SetupSession().has_prompt is False
        assert SetupSession(inferred_prompt="p").has_prompt is True
        assert SetupSession(draft_prompt="  ").has_prompt is False


class TestInputsAndSubmit:
    """Tests for step-1 events."""

    def test_inputs_changed(self):
        session = reduce(SetupSession(), InputsChanged(host="verly.ai", use_case="sales support"))
        assert session.host == "verly.ai"
        assert session.use_case == "sales support"
        assert session.protocol == "https://"

    def test_unknown_protocol_rejected(self):
        with pytest.raises(ValidationError):
            reduce(SetupSession(), InputsChanged(protocol="ftp://"))

    def test_inputs_only_on_step_one(self):
        with pytest.raises(InvalidTransitionError):
            reduce(at_step(3), InputsChanged(host="verly.ai"))

    def test_submit_moves_to_processing(self):
        session = reduce(SetupSession(host="verly.ai"), Submit())
        assert session.step == 2
        assert session.is_submitting is False


class TestProcessingEvents:
    """Tests for step-2 events."""

    def test_started_and_created(self):
        session = reduce(SetupSession(step=2), ProcessingStarted())
        assert session.is_submitting is True

        session = reduce(session, ChatbotCreated("bot-1", 1))
        assert session.chatbot_id == "bot-1"
        assert session.version == 1
        assert session.step == 2

    def test_succeeded(self):
        session = SetupSession(step=2, is_submitting=True)
        source = DataSource(id="s1", type="url", name="Homepage")
        session = reduce(
            session,
            ProcessingSucceeded(
                chatbot_id="bot-1",
                version=3,
                inferred_prompt="You help.",
                data_sources=(source,),
                topics=("Pricing",),
                customization={"DisplayName": "Verly"},
            ),
        )
        assert session.step == 3
        assert session.chatbot_id == "bot-1"
        assert session.version == 3
        assert session.is_submitting is False
        assert session.inferred_prompt == "You help."
        assert session.draft_prompt == "You help."
        assert session.data_sources == (source,)
        assert session.topics == ("Pricing",)
        assert session.customization == {"DisplayName": "Verly"}

    def test_failed_returns_to_step_one_with_inputs(self):
        session = SetupSession(step=2, host="verly.ai", use_case="sales", is_submitting=True)
        session = reduce(session, ProcessingFailed("boom"))
        assert session.step == 1
        assert session.host == "verly.ai"
        assert session.use_case == "sales"
        assert session.is_submitting is False

    def test_failed_keeps_created_chatbot(self):
        session = SetupSession(step=2, chatbot_id="bot-1", version=2)
        session = reduce(session, ProcessingFailed("boom"))
        assert session.chatbot_id == "bot-1"
        assert session.version == 2

    def test_succeeded_outside_processing_rejected(self):
        with pytest.raises(InvalidTransitionError):
            reduce(SetupSession(), ProcessingSucceeded(chatbot_id="bot-1", version=1))


class TestSetStep:
    """Tests for explicit step changes."""

    @pytest.mark.parametrize("bad", [0, 8, -1, 99, "3", 2.5, None, True])
    def test_out_of_range(self, bad):
        with pytest.raises(InvalidStepError):
            reduce(at_step(3), SetStep(bad))

    def test_legal_edge(self):
        assert reduce(at_step(5), SetStep(6)).step == 6

    def test_skipping_rejected(self):
        with pytest.raises(InvalidTransitionError):
            reduce(at_step(3), SetStep(6))

    def test_backwards_rejected(self):
        with pytest.raises(InvalidTransitionError):
            reduce(at_step(5), SetStep(4))

    def test_same_step_is_noop(self):
        session = at_step(4)
        assert reduce(session, SetStep(4)) is session

    def test_past_processing_needs_chatbot(self):
        with pytest.raises(InvalidTransitionError) as excinfo:
            reduce(SetupSession(step=2), SetStep(3))
        assert "chatbot" in str(excinfo.value)

    def test_advance(self):
        assert reduce(at_step(3), Advance()).step == 4

    def test_advance_from_terminal_rejected(self):
        with pytest.raises(InvalidTransitionError):
            reduce(at_step(7), Advance())


class TestPrompts:
    """Tests for prompt and draft events."""

    def test_prompt_fills_empty_draft(self):
        session = reduce(at_step(6), PromptLoaded("You help."))
        assert session.inferred_prompt == "You help."
        assert session.draft_prompt == "You help."

    def test_prompt_replaces_untouched_draft(self):
        session = at_step(6, inferred_prompt="cached", draft_prompt="cached")
        session = reduce(session, PromptLoaded("fresh"))
        assert session.draft_prompt == "fresh"

    def test_prompt_keeps_edited_draft(self):
        session = at_step(6, inferred_prompt="cached", draft_prompt="my edit")
        session = reduce(session, PromptLoaded("fresh"))
        assert session.inferred_prompt == "fresh"
        assert session.draft_prompt == "my edit"

    def test_empty_prompt_ignored(self):
        session = at_step(6, inferred_prompt="cached")
        assert reduce(session, PromptLoaded("   ")) is session

    def test_draft_changed(self):
        assert reduce(at_step(6), DraftPromptChanged("hi")).draft_prompt == "hi"


class TestCustomization:
    """Tests for widget draft events."""

    def test_merge(self):
        session = at_step(4, customization={"a": 1, "b": 2})
        session = reduce(session, CustomizationChanged({"b": 3}))
        assert session.customization == {"a": 1, "b": 3}

    def test_replace(self):
        session = at_step(4, customization={"a": 1})
        session = reduce(session, CustomizationChanged({"b": 2}, replace=True))
        assert session.customization == {"b": 2}

    def test_first_change_creates_draft(self):
        session = reduce(at_step(4), CustomizationChanged({"a": 1}))
        assert session.customization == {"a": 1}


class TestHydration:
    """Tests for resume step selection and hydration."""

    def record(self, **kwargs):
        defaults = {"id": "bot-1", "workspace_id": "ws-1", "version": 4}
        defaults.update(kwargs)
        return ServerChatbotRecord(**defaults)

    def test_resume_step_past_processing(self):
        assert resume_step(self.record(setup_current_step=5, website_url="https://x.io")) == 5

    def test_resume_step_with_website(self):
        assert resume_step(self.record(setup_current_step=2, website_url="https://x.io")) == 2
        assert resume_step(self.record(setup_current_step=1, website_url="https://x.io")) == 2

    def test_resume_step_without_website(self):
        assert resume_step(self.record()) == 1

    def test_resume_step_completed(self):
        completed = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert resume_step(self.record(setup_current_step=4, setup_completed_at=completed)) == 7

    def test_hydrate(self):
        record = self.record(
            setup_current_step=5, website_url="http://verly.ai", use_case="sales support"
        )
        session = reduce(
            SetupSession(workspace_id="ws-1"),
            HydrateFromServer(record, cached_prompt="cached prompt"),
        )
        assert session.step == 5
        assert session.chatbot_id == "bot-1"
        assert session.version == 4
        assert session.protocol == "http://"
        assert session.host == "verly.ai"
        assert session.use_case == "sales support"
        assert session.inferred_prompt == "cached prompt"

    def test_hydrate_without_website_keeps_typed_host(self):
        session = reduce(
            SetupSession(workspace_id="ws-1", host="verly.ai"),
            HydrateFromServer(self.record()),
        )
        assert session.step == 1
        assert session.chatbot_id == "bot-1"
        assert session.host == "verly.ai"

    def test_hydrate_only_from_step_one(self):
        with pytest.raises(InvalidTransitionError):
            reduce(at_step(3), HydrateFromServer(self.record(setup_current_step=5)))


class TestReset:
    def test_reset_keeps_workspace(self):
        session = at_step(5, host="verly.ai", inferred_prompt="p")
        session = reduce(session, Reset(use_case="General AI Agent"))
        assert session == SetupSession(workspace_id="ws-1")


class TestSetupStore:
    """Tests for SetupStore."""

    def test_dispatch_notifies(self):
        store = SetupStore(SetupSession(workspace_id="ws-1", host="verly.ai"))
        seen = []
        store.subscribe(lambda old, new, event: seen.append((old.step, new.step, type(event))))

        store.dispatch(Submit())

        assert store.session.step == 2
        assert seen == [(1, 2, Submit)]

    def test_failed_dispatch_keeps_session(self):
        store = SetupStore(at_step(3))
        before = store.session
        with pytest.raises(InvalidStepError):
            store.dispatch(SetStep(9))
        assert store.session is before

    def test_noop_does_not_notify(self):
        store = SetupStore(at_step(4))
        seen = []
        store.subscribe(lambda *args: seen.append(args))
        store.dispatch(SetStep(4))
        assert seen == []

    def test_unsubscribe(self):
        store = SetupStore()
        seen = []
        unsubscribe = store.subscribe(lambda *args: seen.append(args))
        unsubscribe()
        store.dispatch(InputsChanged(host="a.io"))
        assert seen == []

    def test_failing_listener_is_isolated(self):
        store = SetupStore()
        seen = []

        def broken(old, new, event):
            raise RuntimeError("listener bug")

        store.subscribe(broken)
        store.subscribe(lambda *args: seen.append(args))
        store.dispatch(InputsChanged(host="a.io"))

        assert store.session.host == "a.io"
        assert len(seen) == 1

    def test_restore_skips_validation(self):
        store = SetupStore()
        seen = []
        store.subscribe(lambda old, new, event: seen.append(event))

        store.restore(SetupSession(step=5))

        assert store.session.step == 5
        assert seen == [None]
