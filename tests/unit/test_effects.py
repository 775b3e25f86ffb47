"""Tests for cancellation tokens and effect scopes."""

import asyncio

import pytest

from verly_setup.effects import CancellationToken, EffectScope


class TestCancellationToken:
    def test_cancel(self):
        token = CancellationToken("hydration")
        assert token.cancelled is False
        token.cancel()
        assert token.cancelled is True
        assert "hydration" in repr(token)

    def test_raise_if_cancelled(self):
        token = CancellationToken("x")
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(asyncio.CancelledError):
            token.raise_if_cancelled()


class TestEffectScope:
    """Tests for EffectScope."""

    @pytest.mark.asyncio
    async def test_start_and_finish(self):
        scope = EffectScope()
        done = []

        async def effect(token):
            await asyncio.sleep(0)
            done.append(token.name)

        scope.start("load", effect)
        assert scope.is_running("load")
        await scope.join()

        assert done == ["load"]
        assert scope.running == []

    @pytest.mark.asyncio
    async def test_cancel_flags_token_and_interrupts(self):
        scope = EffectScope()
        reached = []

        async def effect(token):
            await asyncio.sleep(10)
            reached.append(True)

        token = scope.start("slow", effect)
        await asyncio.sleep(0)

        assert scope.cancel("slow") is True
        await asyncio.sleep(0)

        assert token.cancelled is True
        assert reached == []
        assert scope.is_running("slow") is False
        assert scope.cancel("slow") is False

    @pytest.mark.asyncio
    async def test_restart_replaces_previous(self):
        scope = EffectScope()
        started = asyncio.Event()

        async def effect(token):
            started.set()
            await asyncio.sleep(10)

        first = scope.start("poll", effect)
        second = scope.start("poll", effect)

        assert first.cancelled is True
        assert second.cancelled is False
        assert scope.token("poll") is second
        scope.cancel_all()
        await scope.join()

    @pytest.mark.asyncio
    async def test_self_cancel_lets_effect_finish(self):
        scope = EffectScope()
        finished = []

        async def effect(token):
            scope.cancel("self")
            await asyncio.sleep(0)
            finished.append(token.cancelled)

        scope.start("self", effect)
        await asyncio.sleep(0.01)

        assert finished == [True]

    @pytest.mark.asyncio
    async def test_errors_are_contained(self):
        scope = EffectScope()

        async def effect(token):
            raise RuntimeError("boom")

        scope.start("broken", effect)
        await scope.join()

        assert scope.running == []

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        scope = EffectScope()

        async def effect(token):
            await asyncio.sleep(10)

        tokens = [scope.start(name, effect) for name in ("a", "b", "c")]
        scope.cancel_all()
        await scope.join()

        assert all(t.cancelled for t in tokens)
        assert scope.running == []

    @pytest.mark.asyncio
    async def test_wait(self):
        scope = EffectScope()

        async def effect(token):
            await asyncio.sleep(0.01)

        scope.start("short", effect)
        await scope.wait("short")
        await scope.wait("missing")
        assert not scope.is_running("short")
