from dataclasses import replace
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional
import asyncio
import logging
from core.events import Notification, NotificationKind
from core.types import TradeResult
from risk.position import PositionKey, PositionState, TrackedPosition

# Tolerance for float noise when comparing a price change against a threshold
PCT_EPSILON = 1e-9

SellCallback = Callable[[TrackedPosition, float, str], Awaitable[TradeResult]]

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)

class PositionTracker:
    """
    Registry of open positions and the price-trigger loop over them.

    Per position: OPEN -> PARTIAL_SOLD -> CLOSED, CLOSED also directly from OPEN.
    The partial trigger fires at most once; CLOSED is terminal and removes the
    position from the registry. A failed sell leaves the position untouched so
    the next tick can retry it.
    """

    def __init__(self,
                 price_oracle,
                 sell: SellCallback,
                 partial_threshold_pct: float = 10.0,
                 partial_window_seconds: float = 10.0,
                 partial_sell_pct: float = 50.0,
                 full_threshold_pct: float = 50.0,
                 full_window_seconds: float = 20.0,
                 update_interval_seconds: float = 2.0,
                 oracle_timeout_seconds: float = 5.0,
                 sell_at_partial: bool = True,
                 sell_at_full: bool = True,
                 chain_reader=None,
                 dust_balance_raw: int = 0,
                 notify: Callable[[Notification], None] = None,
                 clock: Callable[[], datetime] = None,
                 logger=None):
        self.price_oracle = price_oracle
        self.sell = sell
        self.partial_threshold_pct = partial_threshold_pct
        self.partial_window_seconds = partial_window_seconds
        self.partial_sell_pct = partial_sell_pct
        self.full_threshold_pct = full_threshold_pct
        self.full_window_seconds = full_window_seconds
        self.update_interval_seconds = update_interval_seconds
        self.oracle_timeout_seconds = oracle_timeout_seconds
        self.sell_at_partial = sell_at_partial
        self.sell_at_full = sell_at_full
        self.chain_reader = chain_reader
        self.dust_balance_raw = dust_balance_raw
        self.notify = notify
        self.clock = clock or _utc_now
        self.logger = logger or logging.getLogger(__name__)

        self._positions: Dict[PositionKey, TrackedPosition] = {}
        self._registry_lock = asyncio.Lock()
        self._position_locks: Dict[PositionKey, asyncio.Lock] = {}
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        self.stats = {'tracked': 0, 'partial_sells': 0, 'full_sells': 0, 'manual_sales': 0,
                      'failed_sells': 0, 'price_failures': 0}

    @classmethod
    def from_config(cls, tracking_config, price_oracle, sell: SellCallback, chain_reader=None,
                    notify=None, clock=None, logger=None) -> "PositionTracker":
        return cls(
            price_oracle=price_oracle,
            sell=sell,
            partial_threshold_pct=tracking_config.partial_threshold_pct,
            partial_window_seconds=tracking_config.partial_window_seconds,
            partial_sell_pct=tracking_config.partial_sell_pct,
            full_threshold_pct=tracking_config.full_threshold_pct,
            full_window_seconds=tracking_config.full_window_seconds,
            update_interval_seconds=tracking_config.update_interval_seconds,
            oracle_timeout_seconds=tracking_config.oracle_timeout_seconds,
            sell_at_partial=tracking_config.sell_at_partial,
            sell_at_full=tracking_config.sell_at_full,
            chain_reader=chain_reader,
            dust_balance_raw=tracking_config.dust_balance_raw,
            notify=notify,
            clock=clock,
            logger=logger,
        )

    # Registry

    async def add_position(self, position: TrackedPosition) -> TrackedPosition:
        """Track a completed buy; a second buy of the same key adds to the position"""
        # Lock order is position lock, then registry lock
        lock = self._position_locks.get(position.key)
        if lock is not None:
            async with lock:
                existing = self._positions.get(position.key)
                if existing is not None and existing.active:
                    held = existing.token_amount_held + position.token_amount_held
                    spent = existing.bnb_spent + position.bnb_spent
                    existing.token_amount_held = held
                    existing.bnb_spent = spent
                    if held > 0:
                        bnb_price_usd = existing.buy_price_usd / existing.buy_price_bnb if existing.buy_price_bnb else 0.0
                        existing.buy_price_bnb = spent / held
                        existing.buy_price_usd = existing.buy_price_bnb * bnb_price_usd
                    self.logger.info(f"Added to tracked position {position.token_address}: held={held}")
                    return replace(existing)

        async with self._registry_lock:
            self._positions[position.key] = position
            self._position_locks.setdefault(position.key, asyncio.Lock())
            self.stats['tracked'] += 1

        self.logger.info(f"Tracking {position.token_address} for {position.owner_id}: "
                         f"{position.token_amount_held} tokens at {position.buy_price_bnb:.10f} BNB")
        self._emit(NotificationKind.POSITION_OPENED, f"Tracking position ({position.source})", position)
        return replace(position)

    async def _remove(self, key: PositionKey):
        async with self._registry_lock:
            self._positions.pop(key, None)
            self._position_locks.pop(key, None)

    def get_positions(self, owner_id: str) -> List[TrackedPosition]:
        """Snapshots of one owner's positions"""
        return [replace(p) for p in self._positions.values() if p.owner_id == owner_id]

    def all_positions(self) -> List[TrackedPosition]:
        return [replace(p) for p in self._positions.values()]

    def is_tracked(self, token_address: str, owner_id: str = None) -> bool:
        token = token_address.lower()
        return any(p.token_address.lower() == token and (owner_id is None or p.owner_id == owner_id)
                   for p in self._positions.values())

    async def stop_tracking(self, token_address: str, owner_id: str, wallet_address: str = None) -> int:
        """Owner-initiated removal without selling"""
        token = token_address.lower()
        keys = [key for key, p in self._positions.items()
                if key[2] == token and p.owner_id == owner_id
                and (wallet_address is None or key[1] == wallet_address.lower())]
        for key in keys:
            lock = self._position_locks.get(key)
            if lock is None:
                continue
            async with lock:
                position = self._positions.get(key)
                if position is not None:
                    position.active = False
                    position.state = PositionState.CLOSED
                await self._remove(key)
        if keys:
            self.logger.info(f"Stopped tracking {token} for {owner_id}")
        return len(keys)

    async def force_stop_tracking(self, token_address: str, owner_id: str = None) -> int:
        """Remove a token for every owner (or one owner) immediately"""
        token = token_address.lower()
        removed = 0
        async with self._registry_lock:
            for key in [k for k, p in self._positions.items()
                        if k[2] == token and (owner_id is None or p.owner_id == owner_id)]:
                position = self._positions.pop(key)
                position.active = False
                position.state = PositionState.CLOSED
                self._position_locks.pop(key, None)
                removed += 1
        if removed:
            self.logger.warning(f"Force-stopped tracking {token} ({removed} positions)")
        return removed

    def statistics(self) -> Dict:
        positions = list(self._positions.values())
        return {
            **self.stats,
            'active_positions': len(positions),
            'owners': len({p.owner_id for p in positions}),
            'tokens': len({p.token_address.lower() for p in positions}),
            'partial_sold': sum(1 for p in positions if p.state == PositionState.PARTIAL_SOLD),
            'unrealized_pnl_bnb': sum(p.calculate_pnl() for p in positions),
        }

    # Refresh loop

    async def start(self):
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="position-tracker")
        self.logger.info(f"Position tracker started (interval {self.update_interval_seconds}s)")

    async def stop(self):
        """Stop after the in-flight tick completes"""
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        self.logger.info("Position tracker stopped")

    async def _run(self):
        while not self._stop_event.is_set():
            try:
                await self.refresh_all()
            except Exception as e:
                self.logger.error(f"Position refresh cycle failed: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.update_interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def refresh_all(self):
        """One tick for every tracked position; ticks of different tokens run concurrently"""
        keys = list(self._positions.keys())
        if not keys:
            return
        self.logger.debug(f"Refreshing {len(keys)} tracked positions")
        await asyncio.gather(*(self.refresh_position(key) for key in keys))

    async def refresh_position(self, key: PositionKey):
        lock = self._position_locks.get(key)
        if lock is None:
            return
        async with lock:
            position = self._positions.get(key)
            if position is None or not position.active:
                return
            await self._tick(position)

    async def _tick(self, position: TrackedPosition):
        now = self.clock()

        if await self._balance_gone(position):
            self.stats['manual_sales'] += 1
            await self._close(position, "token balance is zero, sold outside the bot", sold=False)
            return

        elapsed = position.elapsed_seconds(now)
        if position.hold_seconds and elapsed >= position.hold_seconds:
            await self._sell(position, 100.0, f"hold time of {position.hold_seconds}s elapsed")
            return

        try:
            quote = await asyncio.wait_for(self.price_oracle.get_current_price(position.token_address),
                                           timeout=self.oracle_timeout_seconds)
        except Exception as e:
            self.stats['price_failures'] += 1
            self.logger.warning(f"Price refresh failed for {position.token_address}, retrying next tick: {e}")
            return
        if not quote.has_liquidity:
            self.stats['price_failures'] += 1
            self.logger.warning(f"No liquidity quote for {position.token_address}, keeping it tracked")
            return

        position.apply_price(quote.price_bnb, quote.price_usd, now)
        self.logger.debug(f"{position.token_address}: {position.current_price_bnb:.10f} BNB "
                          f"({position.price_change_pct:+.2f}%, {elapsed:.1f}s since buy)")

        if (self.sell_at_full
                and position.price_change_pct >= self.full_threshold_pct - PCT_EPSILON
                and elapsed <= self.full_window_seconds):
            await self._sell(position, 100.0,
                             f"+{position.price_change_pct:.2f}% within {self.full_window_seconds}s")
        elif (self.sell_at_partial
                and not position.partial_trigger_consumed
                and position.price_change_pct >= self.partial_threshold_pct - PCT_EPSILON
                and elapsed <= self.partial_window_seconds):
            await self._sell(position, self.partial_sell_pct,
                             f"+{position.price_change_pct:.2f}% within {self.partial_window_seconds}s")

    async def _balance_gone(self, position: TrackedPosition) -> bool:
        if self.chain_reader is None or not position.wallet_address:
            return False
        try:
            balance = await self.chain_reader.get_token_balance(position.token_address, position.wallet_address)
        except Exception as e:
            self.logger.warning(f"Balance check failed for {position.token_address}: {e}")
            return False
        return balance <= self.dust_balance_raw

    async def close_for_copied_sell(self, wallet_address: str, token_address: str) -> int:
        """A tracked wallet sold: close every position copied from it in that token"""
        wallet = wallet_address.lower()
        token = token_address.lower()
        keys = [key for key, p in self._positions.items()
                if key[2] == token and (p.copied_wallet or "").lower() == wallet]
        closed = 0
        for key in keys:
            lock = self._position_locks.get(key)
            if lock is None:
                continue
            async with lock:
                position = self._positions.get(key)
                if position is None or not position.active:
                    continue
                if await self._sell(position, 100.0, f"copied wallet {wallet} sold"):
                    closed += 1
        return closed

    async def _sell(self, position: TrackedPosition, percentage: float, reason: str) -> bool:
        """Sell through the callback and apply the transition only on success"""
        full = percentage >= 100.0
        self._emit(NotificationKind.TRIGGER_FIRED,
                   f"{'Close' if full else 'Partial'} trigger: {reason}", position,
                   percentage=percentage)
        try:
            result = await self.sell(replace(position), percentage, reason)
        except Exception as e:
            result = TradeResult(success=False, error=str(e))

        if not result.success:
            self.stats['failed_sells'] += 1
            self.logger.error(f"Sell of {percentage}% {position.token_address} failed, "
                              f"position stays {position.state.value}: {result.error}")
            return False

        if full:
            self.stats['full_sells'] += 1
            await self._close(position, reason, sold=True)
            return True

        self.stats['partial_sells'] += 1
        position.token_amount_held = position.token_amount_held * (1 - percentage / 100)
        position.partial_trigger_consumed = True
        position.state = PositionState.PARTIAL_SOLD
        self.logger.info(f"Partial sell of {position.token_address}: {percentage}% sold, "
                         f"{position.token_amount_held} left ({result.tx_hash})")
        if position.token_amount_held <= 0:
            await self._close(position, "nothing left after partial sell", sold=False)
        return True

    async def _close(self, position: TrackedPosition, reason: str, sold: bool):
        position.token_amount_held = 0.0
        position.active = False
        position.state = PositionState.CLOSED
        await self._remove(position.key)
        self.logger.info(f"Closed {position.token_address} for {position.owner_id}: {reason}")
        self._emit(NotificationKind.POSITION_CLOSED, f"Position closed: {reason}", position, sold=sold)

    def _emit(self, kind: NotificationKind, message: str, position: TrackedPosition, **details):
        if self.notify is None:
            return
        self.notify(Notification(
            kind=kind,
            timestamp=self.clock(),
            message=message,
            token_address=position.token_address,
            details={
                'owner_id': position.owner_id,
                'state': position.state.value,
                'price_change_pct': position.price_change_pct,
                'token_amount_held': position.token_amount_held,
                **details,
            },
        ))
