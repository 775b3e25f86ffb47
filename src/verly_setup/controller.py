"""The setup wizard controller.

:class:`StepController` ties the session store to its asynchronous
effects. After every state change it re-renders: it checks the session
for an impossible state, then starts or cancels the effect that belongs
to the current step.

========  ===========================================================
Step      Effect
========  ===========================================================
any       resume hydration (once per mount, when a resume id is given)
2         processing, plus the cosmetic staged progress
4         loading the saved widget customization when there is no draft
6         prompt polling while no prompt is available
7         the completion write, once per entry
========  ===========================================================

UI side effects (toasts, navigation, query invalidation, progress
stages) are published on the controller's event bus under
:data:`~verly_setup.events.UI_TOPIC`.

Example:
    ```python
    from verly_setup import StepController, SetupConfig
    from verly_setup.api import InMemorySetupBackend

    controller = StepController(InMemorySetupBackend(), SetupConfig())
    await controller.mount("ws-1")
    controller.update_inputs(host="verly.ai", use_case="sales support")
    await controller.submit()
    await controller.settle()
    controller.step
    # 3
    ```
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .api.base import SetupBackend
from .cache import SetupCache
from .config import SetupConfig
from .effects import CancellationToken, EffectScope
from .events import (
    CHATBOTS_QUERY,
    PROMPTS_QUERY,
    EventBus,
    InMemoryEventBus,
    ToastLevel,
    UiEmitter,
    UiEventType,
)
from .exceptions import BackendError, InvalidTransitionError, StaleStateError, ValidationError
from .finalizer import CompletionFinalizer
from .hydration import ResumeHydrator
from .models import (
    DATA_SOURCES_STEP,
    FIRST_STEP,
    PROCESSING_STEP,
    PROMPT_STEP,
    TERMINAL_STEP,
    TOPICS_STEP,
    UI_CONFIG_STEP,
    ServerChatbotRecord,
)
from .polling import PromptPoller
from .processing import MISSING_WORKSPACE_MESSAGE, ProcessingOrchestrator
from .progress import COMPLETED, IDLE, StagedProgress
from .session import (
    Advance,
    CustomizationChanged,
    DraftPromptChanged,
    InputsChanged,
    PromptLoaded,
    Reset,
    SetStep,
    SetupSession,
    SetupStore,
    Submit,
)
from .validation import PROTOCOLS, clean_host, validate_host

logger = logging.getLogger(__name__)

MISSING_CONFIGURATION_MESSAGE = "Missing configuration"
UI_SAVED_MESSAGE = "UI saved"
UI_SAVE_FAILED_MESSAGE = "Failed to save UI"
MISSING_CHATBOT_MESSAGE = "Missing chatbot ID"
PROMPT_REQUIRED_MESSAGE = "System prompt is required. Please describe your agent's personality."
PROMPT_INVALID_MESSAGE = "Please provide a valid system prompt for your agent"
PROMPT_SAVE_FAILED_MESSAGE = "Failed to save prompt"


class StepController:
    """Drives one setup wizard session.

    Args:
        backend: Backend for every service call
        config: Setup configuration (defaults apply when omitted)
        cache: Setup cache; built from ``config.cache`` when omitted
        bus: Event bus for UI side effects; when omitted the controller
            connects its own in-memory bus on mount
        store: Session store; a fresh one when omitted
    """

    def __init__(
        self,
        backend: SetupBackend,
        config: SetupConfig | None = None,
        cache: SetupCache | None = None,
        bus: EventBus | None = None,
        store: SetupStore | None = None,
    ) -> None:
        self._config = config or SetupConfig()
        self._backend = backend
        self._cache = cache if cache is not None else SetupCache.from_config(self._config.cache)
        self._owns_bus = bus is None
        self._bus = bus if bus is not None else InMemoryEventBus()
        self._emitter = UiEmitter(self._bus)
        self._store = store if store is not None else SetupStore(
            SetupSession(use_case=self._config.default_use_case)
        )

        self._effects = EffectScope()
        self._processing = ProcessingOrchestrator(
            backend, self._cache, self._emitter, timeout=self._config.processing_timeout
        )
        self._hydrator = ResumeHydrator(
            backend, self._cache, self._emitter, channel=self._config.channel
        )
        self._poller = PromptPoller(
            backend,
            self._store,
            channel=self._config.channel,
            poll_interval=self._config.polling.interval,
        )
        self._finalizer = CompletionFinalizer(
            backend,
            self._cache,
            self._emitter,
            surface_errors=self._config.surface_completion_errors,
        )
        self._progress: StagedProgress | None = None

        self._mounted = False
        self._hydrated = asyncio.Event()
        self._unsubscribe: Any = None
        self._render_scheduled = False
        self._render_tasks: set[asyncio.Task[None]] = set()
        self._terminal_entries = 0
        self._finalized_entry = 0
        self._completed_on_server: str | None = None

    # -- Read-only state --

    @property
    def session(self) -> SetupSession:
        return self._store.session

    @property
    def step(self) -> int:
        return self._store.session.step

    @property
    def store(self) -> SetupStore:
        return self._store

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def config(self) -> SetupConfig:
        return self._config

    @property
    def effects(self) -> EffectScope:
        return self._effects

    @property
    def poller(self) -> PromptPoller:
        return self._poller

    @property
    def is_mounted(self) -> bool:
        return self._mounted

    @property
    def stage(self) -> str:
        """Progress label for the processing screen."""
        if self.step > PROCESSING_STEP:
            return COMPLETED
        if self._progress is not None:
            return self._progress.stage
        return IDLE

    @property
    def is_prompt_loading(self) -> bool:
        return self._poller.is_running

    @property
    def chatbot_list_path(self) -> str:
        return self._config.chatbot_list_url(self._store.session.workspace_id)

    # -- Lifecycle --

    async def mount(
        self,
        workspace_id: str,
        resume: str | None = None,
        session: SetupSession | None = None,
    ) -> None:
        """Attach the controller to a workspace.

        Args:
            workspace_id: Workspace the chatbot belongs to
            resume: Chatbot id to resume from its server record
            session: Checkpointed session to restore as-is
        """
        if self._mounted:
            await self.unmount()

        if session is not None:
            self._store.restore(session)
        elif self._store.session.workspace_id != workspace_id:
            self._store.restore(
                SetupSession(workspace_id=workspace_id, use_case=self._config.default_use_case)
            )

        if self._owns_bus:
            await self._bus.connect()
        self._mounted = True
        self._hydrated = asyncio.Event()
        self._unsubscribe = self._store.subscribe(self._on_change)
        self._terminal_entries = 1 if self.step == TERMINAL_STEP else 0
        self._finalized_entry = 0
        logger.info(
            "Mounted setup for workspace %s (resume=%s)",
            workspace_id,
            resume,
            extra={"workspace_id": workspace_id, "chatbot_id": resume},
        )

        if resume:
            self._effects.start("hydration", lambda token: self._run_hydration(resume, token))
        else:
            self._hydrated.set()
        await self.render()

    async def unmount(self) -> None:
        """Cancel every effect and detach from the store."""
        if not self._mounted:
            return
        self._mounted = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_effects()
        for task in list(self._render_tasks):
            if task is not asyncio.current_task():
                task.cancel()
        await self._poller.stop()
        await self._effects.join()
        logger.info("Unmounted setup for workspace %s", self._store.session.workspace_id)

    def reset(self) -> None:
        """Return the session to its defaults and cancel every effect."""
        self._cancel_effects()
        self._store.dispatch(Reset(use_case=self._config.default_use_case))
        self._hydrated.set()
        logger.info("Setup session reset", extra={"workspace_id": self.session.workspace_id})

    async def settle(self) -> None:
        """Wait until pending renders and effects have finished.

        Staged progress and prompt polling are not waited for.
        """
        while True:
            pending = [t for t in self._render_tasks if not t.done()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                continue
            if self._effects.pending:
                await self._effects.join()
                continue
            if self._render_tasks or self._render_scheduled:
                await asyncio.sleep(0)
                continue
            return

    # -- Rendering --

    async def render(self) -> None:
        """Reconcile effects with the current session.

        Runs the stale-state watchdog first: a session past processing
        without a chatbot is reset and the user is sent to the chatbot list.
        """
        if not self._mounted:
            return
        session = self._store.session

        if not session.is_consistent:
            error = StaleStateError(session.step, "no chatbot id")
            logger.warning(
                "%s; resetting and leaving setup",
                error,
                extra={"step": session.step, **error.context},
            )
            self.reset()
            await self._emitter.navigate(self.chatbot_list_path)
            return

        await self._sync_effects(session)
        await self._emitter.emit(
            UiEventType.STATE,
            step=session.step,
            stage=self.stage,
            chatbot_id=session.chatbot_id,
            is_submitting=session.is_submitting,
            is_prompt_loading=self.is_prompt_loading,
        )

    async def _sync_effects(self, session: SetupSession) -> None:
        step = session.step

        if step == PROCESSING_STEP:
            if self._progress is None:
                self._progress = StagedProgress(
                    self._config.progress.timeline, on_stage=self._on_stage
                )
                self._progress.start()
            if not session.is_submitting and not self._effects.is_running("processing"):
                self._effects.start("processing", self._run_processing)

        if (
            step == UI_CONFIG_STEP
            and session.customization is None
            and not self._effects.is_running("customization")
        ):
            self._effects.start("customization", self._load_customization)

        if step == PROMPT_STEP and not self._poller.is_running:
            await self._poller.start()

        if step == TERMINAL_STEP and self._finalized_entry != self._terminal_entries:
            self._finalized_entry = self._terminal_entries
            if session.chatbot_id and session.chatbot_id == self._completed_on_server:
                logger.info("Chatbot %s already completed, not finalizing again", session.chatbot_id)
            elif session.chatbot_id:
                self._effects.start("finalize", self._run_finalize)

    def _on_change(self, old: SetupSession, new: SetupSession, event: Any) -> None:
        if new.step != PROCESSING_STEP:
            if self._progress is not None:
                self._progress.cancel()
                self._progress = None
            if old.step == PROCESSING_STEP:
                self._effects.cancel("processing")
        if new.step != UI_CONFIG_STEP:
            self._effects.cancel("customization")
        if new.step != PROMPT_STEP:
            self._poller.cancel()
        if new.step == TERMINAL_STEP and old.step != TERMINAL_STEP:
            self._terminal_entries += 1
        self._schedule_render()

    def _schedule_render(self) -> None:
        if not self._mounted or self._render_scheduled:
            return
        self._render_scheduled = True
        task = asyncio.get_running_loop().create_task(self._scheduled_render())
        self._render_tasks.add(task)
        task.add_done_callback(self._render_tasks.discard)

    async def _scheduled_render(self) -> None:
        self._render_scheduled = False
        try:
            await self.render()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error while rendering setup step %s", self.step)

    def _cancel_effects(self) -> None:
        self._effects.cancel_all()
        if self._progress is not None:
            self._progress.cancel()
            self._progress = None
        self._poller.cancel()

    # -- Effects --

    async def _run_hydration(self, resume: str, token: CancellationToken) -> None:
        try:
            await self._hydrator.run(self._store, resume, token, on_record=self._note_record)
        finally:
            self._hydrated.set()

    def _note_record(self, record: ServerChatbotRecord) -> None:
        if record.is_completed:
            self._completed_on_server = record.id

    async def _run_processing(self, token: CancellationToken) -> None:
        await self._hydrated.wait()
        if token.cancelled:
            return
        await self._processing.run(self._store, token)

    async def _on_stage(self, label: str) -> None:
        await self._emitter.stage(label)

    async def _load_customization(self, token: CancellationToken) -> None:
        chatbot_id = self.session.chatbot_id
        if not chatbot_id:
            return
        try:
            loaded = await self._backend.load_customization(chatbot_id)
        except BackendError as e:
            logger.debug("Could not load customization for %s: %s", chatbot_id, e)
            return
        if token.cancelled or self.session.customization is not None:
            return
        self._store.dispatch(CustomizationChanged(loaded, replace=True))

    async def _run_finalize(self, token: CancellationToken) -> None:
        record = await self._finalizer.finalize(self._store.session, token)
        if record is not None:
            self._completed_on_server = record.id

    # -- Navigation --

    def set_step(self, step: Any) -> None:
        """Move to ``step``.

        Raises:
            InvalidStepError: If ``step`` is not an integer in 1..7
            InvalidTransitionError: If the move is not allowed from here
        """
        self._store.dispatch(SetStep(step))

    def _advance_from(self, step: int) -> None:
        if self.step != step:
            raise InvalidTransitionError(self.step, step + 1, reason=f"only possible from step {step}")
        self._store.dispatch(Advance())

    def continue_to_ui_config(self) -> None:
        """Leave the data-sources step."""
        self._advance_from(DATA_SOURCES_STEP)

    def continue_to_prompt(self) -> None:
        """Leave the topics step."""
        self._advance_from(TOPICS_STEP)

    # -- Step 1 --

    def update_inputs(
        self,
        protocol: str | None = None,
        host: str | None = None,
        use_case: str | None = None,
    ) -> None:
        """Edit the website and use-case.

        A pasted URL is reduced to its host; its scheme becomes the
        protocol unless one is given.
        """
        if host is not None:
            lowered = host.strip().lower()
            if protocol is None:
                for candidate in PROTOCOLS:
                    if lowered.startswith(candidate):
                        protocol = candidate
                        break
            host = clean_host(host)
        self._store.dispatch(InputsChanged(protocol=protocol, host=host, use_case=use_case))

    async def submit(self) -> bool:
        """Validate step 1 and start processing.

        While a resume is still being fetched this waits for it first; a
        resumed record that moves the wizard past step 1 wins over the
        submit.

        Returns:
            True if processing was started
        """
        if self._mounted and not self._hydrated.is_set():
            logger.debug("Submit waits for the resumed record")
            await self._hydrated.wait()
            if not self._mounted:
                return False
        session = self.session
        if session.is_submitting or session.step != FIRST_STEP:
            return False
        try:
            if not session.workspace_id:
                raise ValidationError(MISSING_WORKSPACE_MESSAGE)
            validate_host(session.host)
        except ValidationError as e:
            await self._emitter.toast(ToastLevel.ERROR, str(e))
            return False
        self._store.dispatch(Submit())
        return True

    # -- Step 4 --

    def update_customization(self, **changes: Any) -> None:
        self._store.dispatch(CustomizationChanged(changes))

    async def save_customization(self) -> bool:
        """Save the widget draft and move on to topics.

        Returns:
            True if saved
        """
        session = self.session
        if session.step != UI_CONFIG_STEP:
            raise InvalidTransitionError(session.step, TOPICS_STEP, reason="not on the UI step")
        if not session.chatbot_id or session.customization is None:
            await self._emitter.toast(ToastLevel.ERROR, MISSING_CONFIGURATION_MESSAGE)
            return False
        try:
            saved = await self._backend.save_customization(
                session.chatbot_id, session.customization
            )
        except BackendError as e:
            logger.warning("Could not save customization for %s: %s", session.chatbot_id, e)
            await self._emitter.toast(ToastLevel.ERROR, str(e) or UI_SAVE_FAILED_MESSAGE)
            return False
        if self.step != UI_CONFIG_STEP or self.session.chatbot_id != session.chatbot_id:
            return False
        self._store.dispatch(CustomizationChanged(saved, replace=True))
        await self._emitter.toast(ToastLevel.SUCCESS, UI_SAVED_MESSAGE)
        self._store.dispatch(Advance())
        return True

    # -- Step 6 --

    def update_draft_prompt(self, text: str) -> None:
        self._store.dispatch(DraftPromptChanged(text))

    async def save_prompt(self) -> bool:
        """Save the drafted system prompt and finish the wizard.

        Returns:
            True if saved
        """
        session = self.session
        if session.step != PROMPT_STEP:
            raise InvalidTransitionError(session.step, TERMINAL_STEP, reason="not on the prompt step")
        if not session.chatbot_id:
            await self._emitter.toast(ToastLevel.ERROR, MISSING_CHATBOT_MESSAGE)
            return False
        prompt = session.draft_prompt.strip()
        if not prompt:
            await self._emitter.toast(ToastLevel.ERROR, PROMPT_REQUIRED_MESSAGE)
            return False
        try:
            await self._backend.upsert_channel_prompt(
                session.chatbot_id, self._config.channel, prompt
            )
        except BackendError as e:
            message = str(e) or PROMPT_SAVE_FAILED_MESSAGE
            if "System prompt" in message:
                message = PROMPT_INVALID_MESSAGE
            logger.warning("Could not save prompt for %s: %s", session.chatbot_id, e)
            await self._emitter.toast(ToastLevel.ERROR, message)
            return False
        if self.step != PROMPT_STEP or self.session.chatbot_id != session.chatbot_id:
            return False
        self._store.dispatch(PromptLoaded(prompt))
        await self._emitter.invalidate(
            PROMPTS_QUERY, chatbot_id=session.chatbot_id, channel=self._config.channel
        )
        await self._emitter.invalidate(CHATBOTS_QUERY, workspace_id=session.workspace_id)
        self._store.dispatch(SetStep(TERMINAL_STEP))
        return True
