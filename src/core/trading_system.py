from collections import OrderedDict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
import asyncio
import os
from core.block_scanner import BlockScanner, ScannerHalted
from core.events import Notification, NotificationKind
from core.types import ClassifiedEvent, EventKind, MatchResult, Pattern, TradeResult, Venue
from data.chain_reader import ChainReader
from data.four_meme import FourMemePriceOracle, VenueResolver
from execution.dry_run_executor import DryRunExecutor
from risk.position import TrackedPosition
from risk.position_tracker import PositionTracker
from risk.safety_governor import SafetyBlocked, SafetyGovernor
from strategies.copy_trading_strategy import CopyTradingStrategy
from strategies.event_classifier import EventClassifier
from strategies.pattern_matcher import PatternMatcher
from utils.config import Config, ConfigError
from utils.logger import TradingLogger
from utils.notifier import LoggingNotifier, NotificationDispatcher
from utils.trade_journal import TradeJournal

# Source transactions remembered for the duplicate guard
HANDLED_TX_LIMIT = 10000

class TradingSystem:
    """
    Wires the scanner, classifier, matcher, copy strategy, safety governor,
    executor and position tracker together and owns the trade path.
    """

    def __init__(self,
                 config: Config,
                 chain_reader=None,
                 executor=None,
                 price_oracle=None,
                 sinks: List = None,
                 clock: Callable[[], datetime] = None,
                 logger: TradingLogger = None):
        self.config = config
        self.logger = logger or TradingLogger("trading_system", console_output=False)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.is_running = False
        self.is_accepting_new_trades = True
        self.owner_id = config.trading.owner_id
        self.wallet_address = (config.trading.wallet_address or "").lower()

        self.chain_reader = chain_reader or ChainReader.from_config(config.chain, logger=self.logger)
        self.venue_resolver = VenueResolver(self.chain_reader, logger=self.logger)
        self.price_oracle = price_oracle or FourMemePriceOracle(
            self.chain_reader, config.trading.bnb_price_usd, self.venue_resolver,
            wbnb=config.chain.wbnb, logger=self.logger)

        if executor is None:
            if not config.trading.dry_run:
                raise ConfigError("Live trading needs a trade executor; set trading.dry_run or supply one")
            executor = DryRunExecutor(self.price_oracle, logger=self.logger)
        self.executor = executor

        # Notifications
        if sinks is None:
            sinks = [LoggingNotifier(self.logger),
                     TradeJournal(config.notifications.journal_path)]
        self.dispatcher = NotificationDispatcher(sinks, config.notifications.timeout_seconds, logger=self.logger)

        self.setup_strategy()
        self.governor = SafetyGovernor.from_config(config.safety, clock=self.clock, logger=self.logger)

        self.position_tracker = None
        if config.price_tracking.enabled:
            self.position_tracker = PositionTracker.from_config(
                config.price_tracking,
                price_oracle=self.price_oracle,
                sell=self.sell_position,
                chain_reader=None if getattr(self.executor, "is_simulated", False) else self.chain_reader,
                notify=self.dispatcher.notify,
                clock=self.clock,
                logger=self.logger,
            )

        self.scanner = BlockScanner(
            self.chain_reader,
            self.classifier,
            on_event=self.handle_event,
            scan_interval_seconds=config.scanner.scan_interval_seconds,
            max_retries=config.scanner.max_retries,
            max_blocks_per_cycle=config.scanner.max_blocks_per_cycle,
            lookback_blocks=config.scanner.lookback_blocks,
            on_cycle=self._before_cycle,
            on_block_done=self._release_confirmed,
            logger=self.logger,
        )

        self._handled: "OrderedDict[str, None]" = OrderedDict()
        self._awaiting_confirmations: List[Tuple[int, MatchResult]] = []
        self._scanner_task: Optional[asyncio.Task] = None

        self.logger.info(f"Trading System Initializing: dry_run={config.trading.dry_run}, "
                         f"target={config.scanner.target_contract}, "
                         f"patterns={len(self.pattern_matcher.patterns)}, "
                         f"copy_trading={self.copy_strategy is not None}")

    def setup_strategy(self):
        """Pattern matcher, copy strategy and the classifier they feed on"""
        scanner_config = self.config.scanner
        if os.path.exists(scanner_config.patterns_path):
            self.pattern_matcher = PatternMatcher(patterns_path=scanner_config.patterns_path, logger=self.logger)
        else:
            self.logger.warning(f"No pattern file at {scanner_config.patterns_path}, pattern trading is idle")
            self.pattern_matcher = PatternMatcher(patterns=[], logger=self.logger)
            self.pattern_matcher.patterns_path = scanner_config.patterns_path

        self.copy_strategy = None
        tracked_wallets: List[str] = []
        if self.config.copy_trading.enabled:
            self.copy_strategy = CopyTradingStrategy.from_config(
                self.config.copy_trading, pattern_matcher=self.pattern_matcher, logger=self.logger)
            tracked_wallets = list(self.copy_strategy.tracked_wallets)

        self.classifier = EventClassifier(
            self.chain_reader,
            target_contract=scanner_config.target_contract,
            selectors=scanner_config.selectors,
            secondary_routers=scanner_config.secondary_routers,
            amount_wallets=tracked_wallets,
            logger=self.logger,
        )
        self.classifier.on_decode_miss = self._on_decode_miss

    # Lifecycle

    async def start(self):
        """Start the price tracker and the scanner loop"""
        self.is_running = True
        self.logger.critical("Trading System Starting")
        if self.position_tracker is not None:
            await self.position_tracker.start()
        self._scanner_task = self.scanner.start()

    async def wait(self):
        """Run until stopped; a halted scanner stops the whole system"""
        if self._scanner_task is None:
            return
        try:
            await self._scanner_task
        except ScannerHalted as e:
            self.notify(NotificationKind.SCANNER_HALTED, f"Scanner halted: {e}")
            await self.stop()
            raise

    async def stop(self):
        """Stop the trading system, letting in-flight blocks and ticks finish"""
        if not self.is_running:
            return
        self.logger.critical("Initiating trading system shutdown")
        self.is_running = False
        self.is_accepting_new_trades = False

        await self.scanner.stop()
        if self.position_tracker is not None:
            await self.position_tracker.stop()
        await self.dispatcher.drain()
        await self.chain_reader.close()

        self.logger.info(f"Scanner stats: last block={self.scanner.last_processed_block}, "
                         f"blocks={self.scanner.blocks_processed}, events={dict(self.classifier.counts)}")
        self.logger.info(f"Pattern performance: {self.pattern_matcher.pattern_performance()}")
        if self.position_tracker is not None:
            self.logger.info(f"Tracker stats: {self.position_tracker.statistics()}")
        self.logger.info("Trading system stopped successfully")

    async def _before_cycle(self):
        self.pattern_matcher.reload_if_changed()

    # Event dispatch

    async def handle_event(self, event: ClassifiedEvent):
        """Decide what to do with one classified transaction"""
        if event.kind == EventKind.UNKNOWN:
            return
        if event.tx_hash in self._handled:
            self.logger.debug(f"Already handled {event.tx_hash}, skipping")
            return
        self._mark_handled(event.tx_hash)

        if self.wallet_address and (event.from_address or "").lower() == self.wallet_address:
            self.logger.info(f"Skipping our own transaction: {event.tx_hash}")
            return

        if event.kind == EventKind.TOKEN_CREATED:
            await self._handle_token_created(event)
        elif self.copy_strategy is not None and self.copy_strategy.is_tracked(event.from_address):
            await self._handle_copy_trade(event)

    async def _handle_token_created(self, event: ClassifiedEvent):
        if not self.config.scanner.pattern_trading_enabled:
            return
        match = self.pattern_matcher.match(event)
        if match is None:
            reason, analysis = self.pattern_matcher.unmatched_reason(event)
            self.notify(NotificationKind.PATTERN_UNMATCHED, f"No pattern matched: {reason}",
                        event.token_address, reason=reason, source_tx_hash=event.tx_hash,
                        gas_price_gwei=event.gas_price_gwei, gas_limit=event.gas_limit,
                        bnb_value=event.bnb_value, analysis=analysis)
            return

        pattern = match.pattern
        self.notify(NotificationKind.PATTERN_MATCHED, f"Pattern '{pattern.name}' matched",
                    event.token_address, pattern_id=pattern.id, confidence=match.confidence,
                    source_tx_hash=event.tx_hash, creator=event.from_address)

        confirmations = pattern.value_filter.required_confirmations
        if confirmations > 0:
            self._awaiting_confirmations.append((event.block_number + confirmations, match))
            self.logger.info(f"Holding {event.token_address} for {confirmations} confirmations")
            return
        await self._execute_pattern_buy(match)

    async def _release_confirmed(self, block_number: int):
        ready = [m for release, m in self._awaiting_confirmations if release <= block_number]
        if not ready:
            return
        self._awaiting_confirmations = [(r, m) for r, m in self._awaiting_confirmations if r > block_number]
        for match in ready:
            await self._execute_pattern_buy(match)

    async def _execute_pattern_buy(self, match: MatchResult):
        pattern = match.pattern
        result = await self.execute_buy(
            match.event.token_address,
            pattern.trading_params.buy_amount,
            source="pattern",
            source_tx_hash=match.event.tx_hash,
            pattern=pattern,
        )
        if result is not None and result.success:
            self.pattern_matcher.record_trade(pattern.id)

    async def _handle_copy_trade(self, event: ClassifiedEvent):
        signal = self.copy_strategy.generate_signal(event)
        self.notify(NotificationKind.COPY_SIGNAL, f"{event.kind.value} by {event.from_address}: {signal.reason}",
                    event.token_address, accepted=signal.is_valid, source_tx_hash=event.tx_hash,
                    bnb_value=event.bnb_value)
        if not signal.is_valid:
            return

        if signal.is_exit:
            if self.position_tracker is not None:
                closed = await self.position_tracker.close_for_copied_sell(signal.wallet_address, signal.token_address)
                self.logger.info(f"Tracked wallet {signal.wallet_address} sold {signal.token_address}, "
                                 f"closed {closed} positions")
            return

        self.venue_resolver.remember(event.token_address, event.venue)
        await self.execute_buy(
            signal.token_address,
            signal.bnb_amount,
            source="copy",
            source_tx_hash=event.tx_hash,
            pattern=signal.pattern,
            copied_wallet=signal.wallet_address,
        )

    # Trade path

    async def _governed(self, trade: Callable) -> TradeResult:
        """Run a trade through the safety governor unless it is simulated"""
        if getattr(self.executor, "is_simulated", False):
            return await self._call_executor(trade)
        async with self.governor.permit() as permit:
            result = await self._call_executor(trade)
            if result.success:
                permit.commit()
            return result

    @staticmethod
    async def _call_executor(trade: Callable) -> TradeResult:
        try:
            return await trade()
        except Exception as e:
            return TradeResult(success=False, error=f"{type(e).__name__}: {e}")

    async def execute_buy(self,
                          token_address: str,
                          bnb_amount: float,
                          source: str,
                          source_tx_hash: str = None,
                          pattern: Pattern = None,
                          copied_wallet: str = None) -> Optional[TradeResult]:
        """Buy and start tracking; None when the trade was not attempted"""
        if not self.is_accepting_new_trades:
            self.logger.info("System is in shutdown mode - no new positions allowed")
            return None

        details = {'side': 'buy', 'source': source, 'owner_id': self.owner_id, 'bnb_amount': bnb_amount,
                   'pattern_id': pattern.id if pattern else None, 'source_tx_hash': source_tx_hash}
        venue = await self._resolve_venue(token_address)
        details['venue'] = venue.value

        try:
            result = await self._governed(lambda: self.executor.buy(token_address, bnb_amount, self.owner_id))
        except SafetyBlocked as e:
            self.notify(NotificationKind.TRADE_BLOCKED, f"Buy blocked: {e.reason}", token_address,
                        reason=e.reason, **details)
            return None

        if not result.success:
            self.notify(NotificationKind.TRADE_FAILED, f"Buy failed: {result.error}", token_address,
                        reason=result.error, **details)
            return result

        self.notify(NotificationKind.TRADE_EXECUTED, f"Bought {bnb_amount} BNB of {token_address} ({source})",
                    token_address, tx_hash=result.tx_hash, token_amount=result.token_amount,
                    price_bnb=result.price_bnb, **details)
        if self.position_tracker is not None:
            await self._track(token_address, bnb_amount, result, source, pattern, copied_wallet)
        return result

    async def _track(self, token_address: str, bnb_amount: float, result: TradeResult, source: str,
                     pattern: Optional[Pattern], copied_wallet: Optional[str]):
        price_bnb = result.price_bnb
        if not price_bnb and result.token_amount:
            price_bnb = bnb_amount / result.token_amount
        if not price_bnb:
            try:
                price_bnb = (await self.price_oracle.get_current_price(token_address)).price_bnb
            except Exception as e:
                self.logger.error(f"Cannot price {token_address} after buy, not tracking it: {e}")
                return
        if not price_bnb:
            self.logger.error(f"No buy price for {token_address}, not tracking it")
            return

        token_amount = result.token_amount or bnb_amount / price_bnb
        await self.position_tracker.add_position(TrackedPosition(
            token_address=token_address.lower(),
            owner_id=self.owner_id,
            wallet_address=self.wallet_address,
            buy_price_bnb=price_bnb,
            buy_price_usd=price_bnb * self.config.trading.bnb_price_usd,
            bnb_spent=bnb_amount,
            token_amount_held=token_amount,
            buy_timestamp=self.clock(),
            copied_wallet=copied_wallet,
            pattern_id=pattern.id if pattern else None,
            hold_seconds=(pattern.trading_params.hold_seconds or None) if pattern else None,
            source=source,
            buy_tx_hash=result.tx_hash,
        ))

    async def sell_position(self, position: TrackedPosition, percentage: float, reason: str) -> TradeResult:
        """Sell callback used by the position tracker"""
        details = {'side': 'sell', 'source': position.source, 'owner_id': position.owner_id,
                   'percentage': percentage, 'pattern_id': position.pattern_id}
        try:
            result = await self._governed(
                lambda: self.executor.sell(position.token_address, percentage, position.owner_id))
        except SafetyBlocked as e:
            self.notify(NotificationKind.TRADE_BLOCKED, f"Sell blocked: {e.reason}", position.token_address,
                        reason=e.reason, **details)
            return TradeResult(success=False, error=f"blocked: {e.reason}")

        if result.success:
            self.notify(NotificationKind.TRADE_EXECUTED, f"Sold {percentage}% of {position.token_address}: {reason}",
                        position.token_address, tx_hash=result.tx_hash, token_amount=result.token_amount,
                        price_bnb=result.price_bnb, reason=reason, **details)
        else:
            self.notify(NotificationKind.TRADE_FAILED, f"Sell failed: {result.error}", position.token_address,
                        reason=result.error, **details)
        return result

    async def _resolve_venue(self, token_address: str) -> Venue:
        try:
            return await self.venue_resolver.resolve(token_address)
        except Exception as e:
            self.logger.warning(f"Venue lookup failed for {token_address}: {e}")
            return Venue.UNKNOWN

    # Helpers

    def _mark_handled(self, tx_hash: str):
        self._handled[tx_hash] = None
        if len(self._handled) > HANDLED_TX_LIMIT:
            self._handled.popitem(last=False)

    def _on_decode_miss(self, tx_hash: str, reason: str):
        self.notify(NotificationKind.DECODE_MISS, reason, source_tx_hash=tx_hash)

    def notify(self, kind: NotificationKind, message: str, token_address: str = None, **details):
        self.dispatcher.notify(Notification(
            kind=kind,
            timestamp=self.clock(),
            message=message,
            token_address=token_address,
            details=details,
        ))

    def status(self) -> Dict:
        return {
            'running': self.is_running,
            'last_processed_block': self.scanner.last_processed_block,
            'scanner_retries': self.scanner.retry_count,
            'events': dict(self.classifier.counts),
            'safety': self.governor.status(),
            'positions': self.position_tracker.statistics() if self.position_tracker else {},
            'patterns': self.pattern_matcher.pattern_performance(),
        }
