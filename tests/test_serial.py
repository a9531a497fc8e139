"""Tests for per-key turn serialization."""

import asyncio

import pytest

from opencode_feishu.core.serial import KeyedSerializer


class TestKeyedSerializer:
    @pytest.mark.asyncio
    async def test_same_key_runs_in_arrival_order(self):
        serializer = KeyedSerializer()
        log: list[str] = []

        async def turn(name: str, delay: float) -> None:
            async with serializer.hold("ses_1"):
                log.append(f"{name}:start")
                await asyncio.sleep(delay)
                log.append(f"{name}:end")

        first = asyncio.create_task(turn("a", 0.05))
        await asyncio.sleep(0)
        second = asyncio.create_task(turn("b", 0.0))
        await asyncio.sleep(0)
        third = asyncio.create_task(turn("c", 0.0))
        await asyncio.gather(first, second, third)

        assert log == ["a:start", "a:end", "b:start", "b:end", "c:start", "c:end"]

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        serializer = KeyedSerializer()
        inside = asyncio.Event()
        release = asyncio.Event()

        async def slow() -> None:
            async with serializer.hold("ses_1"):
                inside.set()
                await release.wait()

        task = asyncio.create_task(slow())
        await inside.wait()
        async with asyncio.timeout(1):
            async with serializer.hold("ses_2"):
                pass
        release.set()
        await task

    @pytest.mark.asyncio
    async def test_pending_counts_running_and_waiting(self):
        serializer = KeyedSerializer()
        release = asyncio.Event()

        async def holder() -> None:
            async with serializer.hold("k"):
                await release.wait()

        tasks = [asyncio.create_task(holder()) for _ in range(3)]
        await asyncio.sleep(0.01)
        assert serializer.pending("k") == 3
        release.set()
        await asyncio.gather(*tasks)
        assert serializer.pending("k") == 0

    @pytest.mark.asyncio
    async def test_slot_released_after_exception(self):
        serializer = KeyedSerializer()
        with pytest.raises(RuntimeError):
            async with serializer.hold("k"):
                raise RuntimeError("boom")
        assert len(serializer) == 0
        async with asyncio.timeout(1):
            async with serializer.hold("k"):
                pass
