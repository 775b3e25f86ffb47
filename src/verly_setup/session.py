"""Client-held setup session and the reducer that evolves it.

The session is immutable. Every change is expressed as one of the event
dataclasses below and applied by :func:`reduce`, which either returns a
new session or raises without touching the current one. Invariants are
checked in one place:

- ``step`` stays within 1..7 and moves along :data:`.transitions.SETUP_STEPS`
- ``chatbot_id`` is set whenever ``step`` is past processing
- ``step`` only moves forward, except on reset and on a failed processing run

Example:
    ```python
    store = SetupStore(SetupSession(workspace_id="ws-1"))
    store.dispatch(InputsChanged(host="verly.ai", use_case="sales support"))
    store.dispatch(Submit())
    store.session.step
    # 2
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any, Union

from .config import DEFAULT_USE_CASE
from .exceptions import InvalidStepError, InvalidTransitionError, ValidationError
from .models import (
    FIRST_STEP,
    PROCESSING_STEP,
    STEPS,
    TERMINAL_STEP,
    DataSource,
    ServerChatbotRecord,
)
from .transitions import validate_step_move
from .validation import DEFAULT_PROTOCOL, PROTOCOLS, compose_url, split_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SetupSession:
    """Snapshot of the wizard state.

    Attributes:
        workspace_id: Workspace the chatbot is created in
        step: Current step, 1..7
        chatbot_id: Chatbot being set up, None until processing creates it
        protocol: ``https://`` or ``http://``
        host: Website host as typed on step 1
        use_case: Free-form use-case
        is_submitting: True while step-2 processing runs
        inferred_prompt: Latest known system prompt
        version: Server record version, required on writes
        draft_prompt: Prompt being edited on step 6
        customization: Widget configuration draft edited on step 4
        data_sources: Sources suggested by processing
        topics: Topics suggested by processing
    """

    workspace_id: str = ""
    step: int = FIRST_STEP
    chatbot_id: str | None = None
    protocol: str = DEFAULT_PROTOCOL
    host: str = ""
    use_case: str = DEFAULT_USE_CASE
    is_submitting: bool = False
    inferred_prompt: str = ""
    version: int = 0
    draft_prompt: str = ""
    customization: dict[str, Any] | None = field(default=None, compare=False)
    data_sources: tuple[DataSource, ...] = ()
    topics: tuple[str, ...] = ()

    @property
    def website_url(self) -> str:
        return compose_url(self.protocol, self.host)

    @property
    def is_terminal(self) -> bool:
        return self.step == TERMINAL_STEP

    @property
    def is_consistent(self) -> bool:
        """False when the session is past processing without a chatbot."""
        return not (self.step > PROCESSING_STEP and not self.chatbot_id)

    @property
    def has_prompt(self) -> bool:
        return bool(self.draft_prompt.strip() or self.inferred_prompt.strip())


# -- Events ------------------------------------------------------------------


@dataclass(frozen=True)
class InputsChanged:
    """Step-1 form edits. Fields left as None are unchanged."""

    protocol: str | None = None
    host: str | None = None
    use_case: str | None = None


@dataclass(frozen=True)
class Submit:
    """Step 1 confirmed; move to processing."""


@dataclass(frozen=True)
class ProcessingStarted:
    pass


@dataclass(frozen=True)
class ChatbotCreated:
    chatbot_id: str
    version: int


@dataclass(frozen=True)
class ProcessingSucceeded:
    """Processing finished (possibly with soft errors); move to step 3."""

    chatbot_id: str
    version: int
    inferred_prompt: str = ""
    errors: dict[str, str] = field(default_factory=dict, compare=False)
    data_sources: tuple[DataSource, ...] = ()
    topics: tuple[str, ...] = ()
    customization: dict[str, Any] | None = field(default=None, compare=False)


@dataclass(frozen=True)
class ProcessingFailed:
    """Processing failed as a whole; return to step 1 keeping the inputs."""

    message: str


@dataclass(frozen=True)
class Advance:
    """Move to the next step."""


@dataclass(frozen=True)
class SetStep:
    step: Any


@dataclass(frozen=True)
class PromptLoaded:
    """A prompt arrived from the server or the cache."""

    prompt: str


@dataclass(frozen=True)
class DraftPromptChanged:
    text: str


@dataclass(frozen=True)
class CustomizationChanged:
    """Merge ``changes`` into the customization draft (or replace it)."""

    changes: dict[str, Any] = field(compare=False)
    replace: bool = False


@dataclass(frozen=True)
class HydrateFromServer:
    """Reconcile a pristine session with the server record on resume."""

    record: ServerChatbotRecord = field(compare=False)
    cached_prompt: str | None = None


@dataclass(frozen=True)
class Reset:
    use_case: str = DEFAULT_USE_CASE


SessionEvent = Union[
    InputsChanged,
    Submit,
    ProcessingStarted,
    ChatbotCreated,
    ProcessingSucceeded,
    ProcessingFailed,
    Advance,
    SetStep,
    PromptLoaded,
    DraftPromptChanged,
    CustomizationChanged,
    HydrateFromServer,
    Reset,
]


# -- Reducer -----------------------------------------------------------------


def resume_step(record: ServerChatbotRecord) -> int:
    """Step a resumed session should land on for ``record``.

    The server record wins: a finished wizard resumes on the completion
    screen, a record past processing resumes where it left off, and a
    record that only knows its website re-runs processing.
    """
    if record.is_completed:
        return TERMINAL_STEP
    if record.setup_current_step > PROCESSING_STEP:
        return min(record.setup_current_step, TERMINAL_STEP)
    if record.website_url:
        return PROCESSING_STEP
    return FIRST_STEP


def _check_step(step: Any) -> int:
    if isinstance(step, bool) or not isinstance(step, int) or step not in STEPS:
        raise InvalidStepError(step)
    return step


def _move(session: SetupSession, target: int, chatbot_id: str | None = None) -> SetupSession:
    """Validate a move along the step graph and return the moved session."""
    validate_step_move(session.step, target)
    chatbot_id = chatbot_id or session.chatbot_id
    if target > PROCESSING_STEP and not chatbot_id:
        raise InvalidTransitionError(
            session.step, target, reason="no chatbot has been created yet"
        )
    return replace(session, step=target, chatbot_id=chatbot_id)


def _require_step(session: SetupSession, step: int, action: str) -> None:
    if session.step != step:
        raise InvalidTransitionError(
            session.step, session.step, reason=f"{action} is only possible on step {step}"
        )


def _with_prompt(session: SetupSession, prompt: str) -> SetupSession:
    if not prompt or not prompt.strip():
        return session
    # An untouched draft follows the latest prompt
    untouched = not session.draft_prompt.strip() or session.draft_prompt == session.inferred_prompt
    draft = prompt if untouched else session.draft_prompt
    return replace(session, inferred_prompt=prompt, draft_prompt=draft)


def reduce(session: SetupSession, event: SessionEvent) -> SetupSession:
    """Apply ``event`` to ``session``.

    Returns:
        The new session (``session`` itself when nothing changes)

    Raises:
        InvalidStepError: For a step number outside 1..7
        InvalidTransitionError: For a move the step graph forbids
        ValidationError: For an unknown protocol
    """
    if isinstance(event, InputsChanged):
        _require_step(session, FIRST_STEP, "editing the website")
        if event.protocol is not None and event.protocol not in PROTOCOLS:
            raise ValidationError(
                f"Unsupported protocol {event.protocol!r}", context={"protocol": event.protocol}
            )
        return replace(
            session,
            protocol=event.protocol if event.protocol is not None else session.protocol,
            host=event.host if event.host is not None else session.host,
            use_case=event.use_case if event.use_case is not None else session.use_case,
        )

    if isinstance(event, Submit):
        _require_step(session, FIRST_STEP, "submitting")
        return _move(session, PROCESSING_STEP)

    if isinstance(event, ProcessingStarted):
        _require_step(session, PROCESSING_STEP, "processing")
        return replace(session, is_submitting=True)

    if isinstance(event, ChatbotCreated):
        _require_step(session, PROCESSING_STEP, "creating a chatbot")
        return replace(session, chatbot_id=event.chatbot_id, version=event.version)

    if isinstance(event, ProcessingSucceeded):
        _require_step(session, PROCESSING_STEP, "finishing processing")
        moved = _move(session, PROCESSING_STEP + 1, chatbot_id=event.chatbot_id)
        moved = replace(
            moved,
            is_submitting=False,
            version=event.version,
            data_sources=tuple(event.data_sources),
            topics=tuple(event.topics),
            customization=(
                dict(event.customization)
                if event.customization is not None
                else session.customization
            ),
        )
        return _with_prompt(moved, event.inferred_prompt)

    if isinstance(event, ProcessingFailed):
        _require_step(session, PROCESSING_STEP, "failing processing")
        moved = _move(session, FIRST_STEP)
        return replace(moved, is_submitting=False)

    if isinstance(event, Advance):
        return _move(session, session.step + 1)

    if isinstance(event, SetStep):
        target = _check_step(event.step)
        if target == session.step:
            return session
        return _move(session, target)

    if isinstance(event, PromptLoaded):
        return _with_prompt(session, event.prompt)

    if isinstance(event, DraftPromptChanged):
        return replace(session, draft_prompt=event.text)

    if isinstance(event, CustomizationChanged):
        base = {} if event.replace or session.customization is None else session.customization
        return replace(session, customization={**base, **event.changes})

    if isinstance(event, HydrateFromServer):
        _require_step(session, FIRST_STEP, "resuming")
        record = event.record
        hydrated = session
        if not session.chatbot_id:
            protocol, host = (
                split_url(record.website_url)
                if record.website_url
                else (session.protocol, session.host)
            )
            hydrated = replace(
                session,
                chatbot_id=record.id,
                version=record.version,
                protocol=protocol,
                host=host,
                use_case=record.use_case or session.use_case,
            )
        if event.cached_prompt:
            hydrated = _with_prompt(hydrated, event.cached_prompt)
        return replace(hydrated, step=resume_step(record))

    if isinstance(event, Reset):
        return SetupSession(workspace_id=session.workspace_id, use_case=event.use_case)

    raise TypeError(f"Unknown session event: {event!r}")


# -- Store -------------------------------------------------------------------

SessionListener = Callable[[SetupSession, SetupSession, Any], None]


class SetupStore:
    """Holds the current session and notifies listeners on change.

    Listeners are called as ``listener(old, new, event)``; ``event`` is
    None for :meth:`restore`. A failing listener is logged and does not
    affect the dispatch.
    """

    def __init__(self, session: SetupSession | None = None) -> None:
        self._session = session or SetupSession()
        self._listeners: list[SessionListener] = []

    @property
    def session(self) -> SetupSession:
        return self._session

    def dispatch(self, event: SessionEvent) -> SetupSession:
        """Apply an event; on error the current session is kept."""
        old = self._session
        new = reduce(old, event)
        if new is not old:
            self._session = new
            if new.step != old.step:
                logger.info(
                    "Setup step %s -> %s (%s)",
                    old.step,
                    new.step,
                    type(event).__name__,
                    extra={"chatbot_id": new.chatbot_id, "step": new.step},
                )
            self._notify(old, new, event)
        return self._session

    def restore(self, session: SetupSession) -> None:
        """Load a checkpointed session as-is, without validation."""
        old = self._session
        self._session = session
        logger.debug("Restored setup session at step %s", session.step)
        self._notify(old, session, None)

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, old: SetupSession, new: SetupSession, event: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(old, new, event)
            except Exception:
                logger.exception("Error in setup session listener")
