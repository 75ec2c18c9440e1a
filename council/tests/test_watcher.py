"""Tests for the chain watcher and the registry struct mapping."""
from __future__ import annotations

import pytest

from council.chain import proposal_from_struct, scale_amount
from council.watcher import ChainWatcher


class FakeRegistry:
    def __init__(self, block: int = 100, count: int = 0):
        self.block = block
        self.count = count
        self.events: dict[int, int] = {}  # proposal id -> block
        self.broken: set[int] = set()

    def submit(self, proposal_id: int, block: int) -> None:
        self.events[proposal_id] = block
        self.count = max(self.count, proposal_id)
        self.block = max(self.block, block)

    async def block_number(self) -> int:
        return self.block

    async def proposal_count(self) -> int:
        return self.count

    async def submitted_ids(self, from_block: int, to_block: int) -> list[int]:
        return sorted(i for i, b in self.events.items() if from_block <= b <= to_block)

    async def get_proposal(self, proposal_id: int) -> dict:
        if proposal_id in self.broken:
            raise ConnectionError("rpc timeout")
        return {"id": proposal_id, "title": f"Proposal {proposal_id}", "amount": 0.1}


class Recorder:
    def __init__(self):
        self.seen: list[int] = []

    async def __call__(self, data: dict) -> None:
        self.seen.append(data["id"])


@pytest.fixture()
def handler():
    return Recorder()


class TestBoot:
    @pytest.mark.asyncio
    async def test_processes_latest(self, handler):
        watcher = ChainWatcher(FakeRegistry(block=120, count=3), handler, poll_interval=0)
        await watcher.boot()
        assert watcher.last_block == 120
        assert handler.seen == [3]

    @pytest.mark.asyncio
    async def test_empty_registry(self, handler):
        watcher = ChainWatcher(FakeRegistry(count=0), handler, poll_interval=0)
        await watcher.boot()
        assert handler.seen == []


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_new_proposal(self, handler):
        registry = FakeRegistry(block=100)
        watcher = ChainWatcher(registry, handler, poll_interval=0, process_all=False)
        await watcher.boot()
        registry.submit(1, block=101)
        assert await watcher.poll_once() == [1]
        assert handler.seen == [1]
        assert watcher.last_block == 101

    @pytest.mark.asyncio
    async def test_latest_only_skips_older(self, handler):
        registry = FakeRegistry(block=100)
        watcher = ChainWatcher(registry, handler, poll_interval=0, process_all=False)
        await watcher.boot()
        registry.submit(1, block=101)
        registry.submit(2, block=102)
        registry.submit(3, block=103)
        assert await watcher.poll_once() == [3]
        assert handler.seen == [3]

    @pytest.mark.asyncio
    async def test_process_all(self, handler):
        registry = FakeRegistry(block=100)
        watcher = ChainWatcher(registry, handler, poll_interval=0, process_all=True)
        await watcher.boot()
        registry.submit(1, block=101)
        registry.submit(2, block=102)
        assert await watcher.poll_once() == [1, 2]

    @pytest.mark.asyncio
    async def test_no_new_blocks(self, handler):
        registry = FakeRegistry(block=100)
        watcher = ChainWatcher(registry, handler, poll_interval=0)
        await watcher.boot()
        assert await watcher.poll_once() == []
        assert watcher.last_block == 100

    @pytest.mark.asyncio
    async def test_never_processes_twice(self, handler):
        registry = FakeRegistry(block=100, count=1)
        registry.events[1] = 100
        watcher = ChainWatcher(registry, handler, poll_interval=0, process_all=True)
        await watcher.boot()
        assert await watcher.process(1) is False
        registry.submit(2, block=101)
        await watcher.poll_once()
        assert handler.seen == [1, 2]

    @pytest.mark.asyncio
    async def test_fetch_error_logged_not_raised(self, handler):
        registry = FakeRegistry(block=100)
        registry.broken.add(1)
        watcher = ChainWatcher(registry, handler, poll_interval=0, process_all=True)
        await watcher.boot()
        registry.submit(1, block=101)
        registry.submit(2, block=102)
        assert await watcher.poll_once() == [2]
        assert handler.seen == [2]

    @pytest.mark.asyncio
    async def test_first_poll_without_boot(self, handler):
        registry = FakeRegistry(block=100)
        watcher = ChainWatcher(registry, handler, poll_interval=0)
        assert await watcher.poll_once() == []
        assert watcher.last_block == 100

    def test_env_configuration(self, monkeypatch, handler):
        monkeypatch.setenv("COUNCIL_POLL_INTERVAL", "2.5")
        monkeypatch.setenv("COUNCIL_WATCH_ALL", "yes")
        watcher = ChainWatcher(FakeRegistry(), handler)
        assert watcher.poll_interval == 2.5
        assert watcher.process_all is True


class TestStructMapping:
    def test_scale_amount(self):
        assert scale_amount(5_000_000, 8) == pytest.approx(0.05)
        assert scale_amount(0, 18) == 0.0

    def test_proposal_from_struct(self):
        struct = (
            7, "Emergency Water Pump Repair", "Restore clean water", 5_000_000,
            "0x00000000000000000000000000000000000000aA", "", 1_700_000_000, 0,
        )
        data = proposal_from_struct(struct)
        assert data["id"] == 7
        assert data["amount"] == pytest.approx(0.05)
        assert data["recipient"] is None
        assert data["title"] == "Emergency Water Pump Repair"
