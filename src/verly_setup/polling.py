"""Polling for the inferred prompt on the prompt-tuning step.

Prompt generation may finish after the wizard reaches step 6. While the
session has no usable prompt, the poller re-fetches the widget channel
prompt on a fixed interval and writes the first non-empty result into the
session.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .models import PROMPT_STEP, WIDGET_CHANNEL
from .session import PromptLoaded, SetupSession, SetupStore

if TYPE_CHECKING:
    from .api.base import SetupBackend

logger = logging.getLogger(__name__)


def should_poll(session: SetupSession) -> bool:
    """Whether the prompt poller should be active for ``session``."""
    return (
        session.step == PROMPT_STEP
        and bool(session.chatbot_id)
        and not session.has_prompt
    )


class PromptPoller:
    """Polls the channel prompt until it has content.

    The activity check runs before every fetch, so no request is made
    once the session leaves step 6 or a prompt shows up locally. The loop
    ends on the tick that receives content.

    Args:
        backend: Backend to fetch the prompt from
        store: Session store to read the activity check from and write to
        channel: Prompt channel to fetch
        poll_interval: Seconds between fetches (default: 1)

    Example:
        ```python
        poller = PromptPoller(backend, store, poll_interval=1.0)
        await poller.start()
        ...
        await poller.stop()
        ```
    """

    def __init__(
        self,
        backend: SetupBackend,
        store: SetupStore,
        channel: str = WIDGET_CHANNEL,
        poll_interval: float = 1.0,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("Poll interval must be positive")
        self._backend = backend
        self._store = store
        self._channel = channel
        self._poll_interval = poll_interval
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.fetch_count = 0

    @property
    def is_running(self) -> bool:
        """Check if the poller is currently running."""
        return self._running

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @poll_interval.setter
    def poll_interval(self, value: float) -> None:
        if value <= 0:
            raise ValueError("Poll interval must be positive")
        self._poll_interval = value

    async def start(self) -> None:
        """Start polling in the background if the session needs a prompt."""
        if self._running:
            logger.debug("Prompt poller already running")
            return
        if not should_poll(self._store.session):
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop(), name="setup:prompt-poller")
        logger.info(
            "Started prompt poller with %ss interval",
            self._poll_interval,
            extra={"chatbot_id": self._store.session.chatbot_id},
        )

    def cancel(self) -> None:
        """Stop polling without waiting for the loop to unwind."""
        if not self._running and self._task is None:
            return
        self._running = False
        task = self._task
        self._task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.debug("Prompt poller cancelled")

    async def stop(self) -> None:
        """Stop polling and wait for the loop to finish."""
        task = self._task
        self.cancel()
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Stopped prompt poller")

    async def wait(self) -> None:
        """Wait until the loop ends on its own or is stopped."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def poll_once(self) -> str:
        """Fetch the prompt once and store it if it has content.

        Returns:
            The fetched prompt (possibly empty)
        """
        chatbot_id = self._store.session.chatbot_id
        if not chatbot_id:
            return ""
        prompt = await self._fetch(chatbot_id)
        self._commit(chatbot_id, prompt)
        return prompt

    async def _fetch(self, chatbot_id: str) -> str:
        self.fetch_count += 1
        logger.debug("Polling prompt for %s (fetch %d)", chatbot_id, self.fetch_count)
        return await self._backend.get_channel_prompt(chatbot_id, self._channel)

    def _commit(self, chatbot_id: str, prompt: str) -> None:
        if prompt.strip() and self._store.session.chatbot_id == chatbot_id:
            self._store.dispatch(PromptLoaded(prompt))

    async def _poll_loop(self) -> None:
        """Background polling loop."""
        try:
            while self._running:
                if not should_poll(self._store.session):
                    break
                chatbot_id = self._store.session.chatbot_id or ""
                try:
                    prompt = await self._fetch(chatbot_id)
                    if not self._running:
                        break
                    self._commit(chatbot_id, prompt)
                    if prompt.strip():
                        logger.info("Prompt arrived after %d fetch(es)", self.fetch_count)
                        break
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Error during prompt poll")
                    # Continue polling despite errors
                await asyncio.sleep(self._poll_interval)
        except asyncio.CancelledError:
            pass
        finally:
            if self._task is asyncio.current_task():
                self._task = None
                self._running = False
