"""Chain watcher: polls the proposal registry and feeds new proposals to the panel.

By default only the newest proposal id seen in each polling window is
processed, and any ids submitted between polls are skipped (a warning names
them).  Set ``COUNCIL_WATCH_ALL=1`` to process every id instead.
"""
from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

log = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


class RegistrySource(Protocol):
    async def block_number(self) -> int: ...
    async def proposal_count(self) -> int: ...
    async def submitted_ids(self, from_block: int, to_block: int) -> list[int]: ...
    async def get_proposal(self, proposal_id: int) -> dict[str, Any]: ...


ProposalHandler = Callable[[dict[str, Any]], Awaitable[None]]


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


class ChainWatcher:
    def __init__(
        self,
        registry: RegistrySource,
        on_proposal: ProposalHandler,
        poll_interval: float | None = None,
        process_all: bool | None = None,
    ):
        self.registry = registry
        self.on_proposal = on_proposal
        self.poll_interval = poll_interval if poll_interval is not None else float(
            os.environ.get("COUNCIL_POLL_INTERVAL", DEFAULT_POLL_INTERVAL)
        )
        self.process_all = process_all if process_all is not None else _env_flag("COUNCIL_WATCH_ALL")
        self.last_block: int | None = None
        self.processed: set[int] = set()

    async def process(self, proposal_id: int) -> bool:
        """Fetch and hand over one proposal. Already-processed ids are a no-op."""
        if proposal_id in self.processed:
            return False
        self.processed.add(proposal_id)
        try:
            data = await self.registry.get_proposal(proposal_id)
            await self.on_proposal(data)
        except Exception as exc:
            log.error("Processing proposal %s failed: %s", proposal_id, exc)
            return False
        return True

    async def boot(self) -> None:
        """Remember the current block and process the latest proposal, if any."""
        self.last_block = await self.registry.block_number()
        try:
            count = await self.registry.proposal_count()
        except Exception as exc:
            log.warning("Could not fetch proposal count on boot: %s", exc)
            return
        log.info("Registry holds %d proposals", count)
        if count > 0:
            await self.process(count)

    async def poll_once(self) -> list[int]:
        """Scan blocks since the last poll; return the ids that were handed over."""
        if self.last_block is None:
            self.last_block = await self.registry.block_number()
            return []
        current = await self.registry.block_number()
        from_block = self.last_block + 1
        if current < from_block:
            return []

        ids = [i for i in await self.registry.submitted_ids(from_block, current) if i not in self.processed]
        self.last_block = current
        if not ids:
            return []
        if not self.process_all:
            skipped, ids = ids[:-1], ids[-1:]
            if skipped:
                log.warning("Skipping proposals %s submitted between polls (latest-only mode)", skipped)
            log.info("Detected newest ProposalSubmitted id=%d", ids[0])
        return [i for i in ids if await self.process(i)]

    async def run(self) -> None:
        """Boot, then poll forever. A failing tick is logged and the loop continues."""
        log.info("Starting chain watcher (every %.1fs, %s)", self.poll_interval,
                 "all proposals" if self.process_all else "latest proposal only")
        try:
            await self.boot()
        except Exception as exc:
            log.error("Chain watcher boot failed: %s", exc)
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except Exception as exc:
                log.error("Poll error: %s", exc)
