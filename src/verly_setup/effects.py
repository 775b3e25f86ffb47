"""Cooperative cancellation for the controller's asynchronous effects.

Each effect (hydration, processing, polling, finalization) runs as one
asyncio task paired with a :class:`CancellationToken`. The task can be
interrupted at its next await, and code that resumes after an await
checks ``token.cancelled`` before committing any state change, so a
stale effect never writes into a session that has moved on.

Example:
    ```python
    scope = EffectScope()

    async def load(token: CancellationToken) -> None:
        record = await backend.get_chatbot(workspace_id, chatbot_id)
        if token.cancelled:
            return
        store.dispatch(HydrateFromServer(record))

    scope.start("hydration", load)
    ...
    scope.cancel_all()
    ```
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

EffectFactory = Callable[["CancellationToken"], Awaitable[Any]]


class CancellationToken:
    """Flag shared between an effect and its owner.

    Args:
        name: Name of the effect, used in log messages
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        """Abort the current effect if it has been cancelled."""
        if self._cancelled:
            raise asyncio.CancelledError(f"effect '{self.name}' cancelled")

    def __repr__(self) -> str:
        return f"CancellationToken(name={self.name!r}, cancelled={self._cancelled})"


class EffectScope:
    """Owns named effects and cancels them as a group.

    Starting an effect under a name that is already running cancels the
    previous one first, so at most one instance of each effect is live.
    """

    def __init__(self) -> None:
        self._effects: dict[str, tuple[CancellationToken, asyncio.Task[Any]]] = {}
        # Includes cancelled effects that are still unwinding
        self._tasks: set[asyncio.Task[Any]] = set()

    def start(self, name: str, factory: EffectFactory) -> CancellationToken:
        """Start ``factory(token)`` as a background task named ``name``.

        Returns:
            The token handed to the effect
        """
        self.cancel(name)
        token = CancellationToken(name)
        task = asyncio.create_task(self._run(name, token, factory), name=f"setup:{name}")
        self._effects[name] = (token, task)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug("Started effect %s", name)
        return token

    async def _run(self, name: str, token: CancellationToken, factory: EffectFactory) -> None:
        try:
            await factory(token)
        except asyncio.CancelledError:
            logger.debug("Effect %s cancelled", name)
        except Exception:
            logger.exception("Unhandled error in effect %s", name)
        finally:
            current = self._effects.get(name)
            if current is not None and current[0] is token:
                del self._effects[name]

    def cancel(self, name: str) -> bool:
        """Cancel the effect named ``name``.

        The token is always flagged. The task is interrupted unless it is
        the task calling ``cancel`` (an effect whose own state change ends
        it must be allowed to finish unwinding).

        Returns:
            True if an effect was running
        """
        entry = self._effects.pop(name, None)
        if entry is None:
            return False
        token, task = entry
        token.cancel()
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        logger.debug("Cancelled effect %s", name)
        return True

    def cancel_all(self) -> None:
        for name in list(self._effects):
            self.cancel(name)

    def is_running(self, name: str) -> bool:
        entry = self._effects.get(name)
        return entry is not None and not entry[1].done()

    def token(self, name: str) -> CancellationToken | None:
        entry = self._effects.get(name)
        return entry[0] if entry else None

    @property
    def running(self) -> list[str]:
        """Names of the effects that are still running."""
        return [name for name, (_, task) in self._effects.items() if not task.done()]

    @property
    def pending(self) -> int:
        """Number of effect tasks not yet finished, cancelled ones included."""
        return sum(1 for task in self._tasks if not task.done())

    async def wait(self, name: str) -> None:
        """Wait for the named effect to finish, if it is running."""
        entry = self._effects.get(name)
        if entry is not None:
            await asyncio.gather(entry[1], return_exceptions=True)

    async def join(self) -> None:
        """Wait until every effect task has finished, including ones started meanwhile."""
        while True:
            current = asyncio.current_task()
            tasks = [t for t in self._tasks if not t.done() and t is not current]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)
