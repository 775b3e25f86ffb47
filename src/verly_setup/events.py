"""UI side effects published on a dataknobs event bus.

The controller never talks to a UI directly. Toasts, navigation,
query-cache invalidation, progress-stage changes and session updates are
published as :class:`dataknobs_common.events.Event` objects of type
``CUSTOM``; the kind of effect is carried in ``metadata["kind"]`` as a
:class:`UiEventType` value. The host application subscribes and renders
them however it likes.

Example:
    ```python
    from dataknobs_common.events import InMemoryEventBus
    from verly_setup.events import UI_TOPIC, UiEventType, ui_kind

    bus = InMemoryEventBus()
    await bus.connect()

    async def on_event(event):
        if ui_kind(event) is UiEventType.TOAST:
            print(event.payload["level"], event.payload["message"])

    subscription = await bus.subscribe(UI_TOPIC, on_event)
    ...
    await subscription.cancel()
    ```
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from dataknobs_common.events import Event, EventBus, EventType, InMemoryEventBus

logger = logging.getLogger(__name__)

__all__ = [
    "CHATBOTS_QUERY",
    "PROMPTS_QUERY",
    "UI_TOPIC",
    "Event",
    "EventBus",
    "EventRecorder",
    "InMemoryEventBus",
    "ToastLevel",
    "UiEmitter",
    "UiEventType",
    "ui_kind",
]

UI_TOPIC = "setup:ui"

# Query keys the host application caches and must refetch on invalidation
CHATBOTS_QUERY = "chatbots"
PROMPTS_QUERY = "prompts"


class UiEventType(Enum):
    """Kinds of UI side effects emitted by the controller."""

    TOAST = "toast"
    NAVIGATE = "navigate"
    INVALIDATE = "invalidate"
    STAGE = "stage"
    STATE = "state"


class ToastLevel(Enum):
    SUCCESS = "success"
    ERROR = "error"
    WARNING = "warning"


def ui_kind(event: Event) -> UiEventType | None:
    """The UI effect an event carries, or None for foreign events."""
    kind = event.metadata.get("kind")
    try:
        return UiEventType(kind) if kind is not None else None
    except ValueError:
        return None


class EventRecorder:
    """Subscriber that keeps every event it receives.

    Handy for tests and for hosts that drain effects on their own schedule.
    """

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, kind: UiEventType) -> list[Event]:
        return [e for e in self.events if ui_kind(e) is kind]

    def toasts(self, level: ToastLevel | None = None) -> list[str]:
        """Messages of recorded toasts, optionally filtered by level."""
        return [
            e.payload["message"]
            for e in self.of_type(UiEventType.TOAST)
            if level is None or e.payload.get("level") == level.value
        ]

    def clear(self) -> None:
        self.events.clear()


class UiEmitter:
    """Publishes the controller's UI side effects on one topic.

    Args:
        bus: Bus to publish on
        topic: Topic for every event
        source: Value of ``Event.source``
    """

    def __init__(self, bus: EventBus, topic: str = UI_TOPIC, source: str = "setup") -> None:
        self._bus = bus
        self._topic = topic
        self._source = source

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def topic(self) -> str:
        return self._topic

    async def emit(self, kind: UiEventType, **payload: Any) -> None:
        await self._bus.publish(
            self._topic,
            Event(
                type=EventType.CUSTOM,
                topic=self._topic,
                payload=payload,
                source=self._source,
                metadata={"kind": kind.value},
            ),
        )

    async def toast(self, level: ToastLevel, message: str) -> None:
        logger.debug("Toast (%s): %s", level.value, message)
        await self.emit(UiEventType.TOAST, level=level.value, message=message)

    async def navigate(self, path: str) -> None:
        await self.emit(UiEventType.NAVIGATE, path=path)

    async def invalidate(self, query: str, **keys: Any) -> None:
        await self.emit(UiEventType.INVALIDATE, query=query, **keys)

    async def stage(self, label: str) -> None:
        await self.emit(UiEventType.STAGE, stage=label)
