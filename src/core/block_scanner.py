from typing import Awaitable, Callable, List, Optional
import asyncio
import logging
from core.types import ClassifiedEvent
from data.chain_reader import ChainReadError

EventHandler = Callable[[ClassifiedEvent], Awaitable[None]]
CycleHook = Callable[[], Awaitable[None]]
BlockHook = Callable[[int], Awaitable[None]]

class ScannerHalted(Exception):
    """The chain stayed unreadable for max_retries consecutive cycles"""

class BlockScanner:
    """
    Watermark scanner: blocks are processed in ascending order, each block's
    transactions in block order. The watermark only moves past a block after
    every transaction in it was classified, so a failed block is retried
    before anything above it.
    """

    def __init__(self,
                 chain_reader,
                 classifier,
                 on_event: EventHandler,
                 scan_interval_seconds: float = 3.0,
                 max_retries: int = 5,
                 max_blocks_per_cycle: int = 50,
                 start_block: Optional[int] = None,
                 lookback_blocks: int = 0,
                 on_cycle: Optional[CycleHook] = None,
                 on_block_done: Optional[BlockHook] = None,
                 logger=None):
        self.chain_reader = chain_reader
        self.classifier = classifier
        self.on_event = on_event
        self.scan_interval_seconds = scan_interval_seconds
        self.max_retries = max_retries
        self.max_blocks_per_cycle = max_blocks_per_cycle
        self.lookback_blocks = lookback_blocks
        self.on_cycle = on_cycle
        self.on_block_done = on_block_done
        self.logger = logger or logging.getLogger(__name__)

        self.last_processed_block: Optional[int] = None if start_block is None else start_block - 1
        self.retry_count = 0
        self.halted = False
        self.halt_reason: Optional[str] = None
        self.blocks_processed = 0
        self.handler_errors = 0

        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def scan_once(self) -> int:
        """Process every block above the watermark up to the head, capped per cycle"""
        latest = await self.chain_reader.latest_block_number()
        if self.last_processed_block is None:
            self.last_processed_block = max(latest - self.lookback_blocks, 0) - 1
            self.logger.info(f"Scanner starting at block {self.last_processed_block + 1} (head {latest})")

        if latest <= self.last_processed_block:
            return 0

        end = min(latest, self.last_processed_block + self.max_blocks_per_cycle)
        processed = 0
        for number in range(self.last_processed_block + 1, end + 1):
            await self._process_block(number)
            self.last_processed_block = number
            self.blocks_processed += 1
            processed += 1
            if self.on_block_done is not None:
                await self.on_block_done(number)

        if end < latest:
            self.logger.info(f"Scanner is {latest - end} blocks behind head")
        return processed

    async def _process_block(self, number: int):
        block = await self.chain_reader.get_block(number)
        events: List[ClassifiedEvent] = []
        for tx in block.transactions:
            events.append(await self.classifier.classify(tx, block))
        self.logger.debug(f"Block {number}: {len(block.transactions)} transactions classified")

        for event in events:
            try:
                await self.on_event(event)
            except Exception as e:
                # Dispatch failures are per event; the block itself was read fine
                self.handler_errors += 1
                self.logger.error(f"Event handler failed for {event.tx_hash} in block {number}: {e}")

    async def step(self) -> int:
        """One scan cycle with failure accounting; raises ScannerHalted after max_retries"""
        if self.halted:
            raise ScannerHalted(self.halt_reason)
        if self.on_cycle is not None:
            await self.on_cycle()
        try:
            processed = await self.scan_once()
        except ChainReadError as e:
            self.retry_count += 1
            block = (self.last_processed_block or 0) + 1
            self.logger.warning(f"Chain read failed at block {block} "
                                f"(attempt {self.retry_count}/{self.max_retries}): {e}")
            if self.retry_count >= self.max_retries:
                self.halted = True
                self.halt_reason = (f"chain unreadable at block {block} after "
                                    f"{self.retry_count} attempts: {e}")
                self.logger.critical(f"Scanner halted: {self.halt_reason}")
                raise ScannerHalted(self.halt_reason) from e
            return 0
        self.retry_count = 0
        return processed

    async def run(self):
        while not self._stop_event.is_set():
            await self.step()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.scan_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run(), name="block-scanner")
        return self._task

    async def stop(self):
        """Finish the in-flight cycle, then stop"""
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            try:
                await self._task
            except ScannerHalted as e:
                self.logger.info(f"Scanner was already halted: {e}")
        self._task = None
