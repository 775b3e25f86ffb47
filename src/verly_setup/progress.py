"""Cosmetic staged-progress timeline shown while processing runs.

The stages advance on a fixed wall-clock schedule after step-2 entry and
say nothing about the real backend state. The whole sequence is one task
behind one handle, so a single ``cancel()`` stops every pending stage.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

IDLE = "idle"
COMPLETED = "completed"


@dataclass(frozen=True)
class ProgressStage:
    """A label shown ``offset`` seconds after processing starts."""

    label: str
    offset: float


DEFAULT_TIMELINE: tuple[ProgressStage, ...] = (
    ProgressStage("crawl", 0.0),
    ProgressStage("logo", 2.0),
    ProgressStage("topics", 4.0),
    ProgressStage("tuning", 6.0),
)


class StagedProgress:
    """Disposable handle over a deterministic stage sequence.

    Args:
        timeline: Stages in order of increasing offset
        on_stage: Optional callback (sync or async) receiving each label

    Example:
        ```python
        progress = StagedProgress(on_stage=lambda label: print(label))
        progress.start()
        ...
        progress.cancel()  # no further stages are reported
        ```
    """

    def __init__(
        self,
        timeline: Sequence[ProgressStage] = DEFAULT_TIMELINE,
        on_stage: Callable[[str], Any] | None = None,
    ) -> None:
        offsets = [stage.offset for stage in timeline]
        if offsets != sorted(offsets):
            raise ValueError("Progress timeline offsets must be non-decreasing")
        self._timeline = tuple(timeline)
        self._on_stage = on_stage
        self._stage = IDLE
        self._task: asyncio.Task[None] | None = None
        self._cancelled = False

    @property
    def stage(self) -> str:
        """The most recently reached label (``idle`` before start)."""
        return self._stage

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> None:
        """Begin the sequence. Calling start on a running handle is a no-op."""
        if self.is_running or self._cancelled:
            return
        self._task = asyncio.create_task(self._run(), name="setup:staged-progress")

    def cancel(self) -> None:
        """Stop the sequence; no stage is reported after this returns."""
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def wait(self) -> None:
        """Wait for the sequence to finish or be cancelled."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        for stage in self._timeline:
            delay = stage.offset - (loop.time() - started)
            if delay > 0:
                await asyncio.sleep(delay)
            if self._cancelled:
                return
            self._stage = stage.label
            logger.debug("Staged progress: %s", stage.label)
            if self._on_stage is not None:
                try:
                    result = self._on_stage(stage.label)
                    if asyncio.iscoroutine(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Error in staged progress callback")
