"""
End-to-end tests of the trade path over recorded blocks:
1. Token creation -> pattern match -> governed buy -> tracked position
2. Unmatched, blocked, duplicate and own transactions
3. Required confirmations
4. Copy trading entries and exits
5. Dry run and scanner halt
"""

import json
import logging
import pytest
from core.block_scanner import ScannerHalted
from core.events import NotificationKind
from core.types import EventKind, Receipt, Venue
from data.replay_chain_reader import ReplayChainReader
from execution.dry_run_executor import DryRunExecutor
from core.trading_system import TradingSystem
from utils.config import Config, ConfigError
from fakes import (OTHER_TOKEN, OURS, ROUTER, TOKEN, WBNB, WHALE, CollectingSink, FakeClock, RecordingExecutor,
                   ScriptedOracle, call_data, make_event, make_tx, pattern_dict, token_create_receipt)

logger = logging.getLogger("test_trading_system")


def write_patterns(tmp_path, *patterns):
    path = tmp_path / "patterns.json"
    path.write_text(json.dumps({"patterns": list(patterns) or [pattern_dict("fast")]}))
    return str(path)


def build_system(tmp_path, reader, executor=None, patterns=(), config_overrides=None):
    config_data = {
        'scanner': {'patterns_path': write_patterns(tmp_path, *patterns), 'scan_interval_seconds': 0.01,
                    'max_retries': 2, 'lookback_blocks': 5},
        'trading': {'wallet_address': OURS, 'dry_run': False},
        'copy_trading': {'enabled': True, 'tracked_wallets': [WHALE], 'copy_ratio': 0.5,
                         'max_position_size': 0.1},
    }
    for section, values in (config_overrides or {}).items():
        config_data.setdefault(section, {}).update(values)
    sink = CollectingSink()
    oracle = ScriptedOracle()
    oracle.set(TOKEN, 0.000001)
    oracle.set(OTHER_TOKEN, 0.000002)
    system = TradingSystem(
        Config.from_dict(config_data),
        chain_reader=reader,
        executor=executor or RecordingExecutor(),
        price_oracle=oracle,
        sinks=[sink],
        clock=FakeClock(),
        logger=logger,
    )
    return system, sink


def creation_block(reader, number, tx_hash="0x01", token=TOKEN, **tx_kwargs):
    reader.add_block(number, [make_tx(tx_hash=tx_hash, **tx_kwargs)])
    reader.add_receipt(token_create_receipt(tx_hash, token=token))


async def scan(system):
    await system.scanner.step()
    await system.dispatcher.drain()


class TestPatternTrading:

    @pytest.mark.asyncio
    async def test_matched_creation_is_bought_and_tracked(self, tmp_path):
        reader = ReplayChainReader()
        creation_block(reader, 1)
        system, sink = build_system(tmp_path, reader)
        await scan(system)

        assert system.executor.buys == [(TOKEN, 0.01, "default")]
        assert system.position_tracker.is_tracked(TOKEN, "default")
        position = system.position_tracker.get_positions("default")[0]
        assert position.pattern_id == "fast"
        assert position.source == "pattern"
        assert position.buy_price_bnb == pytest.approx(0.000001)
        kinds = sink.kinds()
        assert NotificationKind.PATTERN_MATCHED in kinds
        assert NotificationKind.TRADE_EXECUTED in kinds
        assert NotificationKind.POSITION_OPENED in kinds
        assert system.pattern_matcher.pattern_performance()[0]['trades'] == 1
        assert system.governor.counters.trades_this_hour == 1

    @pytest.mark.asyncio
    async def test_unmatched_creation_reports_reason(self, tmp_path):
        reader = ReplayChainReader()
        creation_block(reader, 1, gas=2271546)
        system, sink = build_system(tmp_path, reader)
        await scan(system)

        assert system.executor.buys == []
        unmatched = [n for n in sink.received if n.kind == NotificationKind.PATTERN_UNMATCHED]
        assert unmatched[0].details['reason'].startswith("gas limit outside range")

    @pytest.mark.asyncio
    async def test_safety_limit_blocks_second_buy(self, tmp_path):
        reader = ReplayChainReader()
        creation_block(reader, 1, tx_hash="0x01", token=TOKEN)
        creation_block(reader, 2, tx_hash="0x02", token=OTHER_TOKEN)
        system, sink = build_system(tmp_path, reader, config_overrides={'safety': {'max_trades_per_hour': 1}})
        await scan(system)

        assert [buy[0] for buy in system.executor.buys] == [TOKEN]
        blocked = [n for n in sink.received if n.kind == NotificationKind.TRADE_BLOCKED]
        assert blocked[0].token_address == OTHER_TOKEN
        assert "hourly" in blocked[0].details['reason']

    @pytest.mark.asyncio
    async def test_failed_buy_is_not_tracked(self, tmp_path):
        reader = ReplayChainReader()
        creation_block(reader, 1)
        system, sink = build_system(tmp_path, reader, executor=RecordingExecutor(succeed=False))
        await scan(system)

        assert NotificationKind.TRADE_FAILED in sink.kinds()
        assert not system.position_tracker.is_tracked(TOKEN)
        assert system.governor.counters.trades_this_hour == 0

    @pytest.mark.asyncio
    async def test_duplicate_event_handled_once(self, tmp_path):
        system, _ = build_system(tmp_path, ReplayChainReader())
        event = make_event(tx_hash="0xdup")
        await system.handle_event(event)
        await system.handle_event(event)
        assert len(system.executor.buys) == 1

    @pytest.mark.asyncio
    async def test_own_transactions_skipped(self, tmp_path):
        system, _ = build_system(tmp_path, ReplayChainReader())
        await system.handle_event(make_event(sender=OURS.upper().replace("0X", "0x")))
        assert system.executor.buys == []

    @pytest.mark.asyncio
    async def test_required_confirmations_delay_buy(self, tmp_path):
        reader = ReplayChainReader()
        creation_block(reader, 1)
        reader.add_block(2, [])
        reader.add_block(3, [])
        system, _ = build_system(tmp_path, reader, patterns=[pattern_dict("slow", confirmations=2)])

        reader.head = 2
        await scan(system)
        assert system.executor.buys == []

        reader.head = 3
        await scan(system)
        assert system.executor.buys == [(TOKEN, 0.01, "default")]

    @pytest.mark.asyncio
    async def test_pattern_trading_disabled(self, tmp_path):
        reader = ReplayChainReader()
        creation_block(reader, 1)
        system, sink = build_system(tmp_path, reader,
                                    config_overrides={'scanner': {'pattern_trading_enabled': False}})
        await scan(system)
        assert system.executor.buys == []


class TestCopyTrading:

    @pytest.mark.asyncio
    async def test_copied_buy_then_copied_sell(self, tmp_path):
        reader = ReplayChainReader()
        buy = make_tx(tx_hash="0xb1", sender=WHALE, value_bnb=0.1,
                      input_data=call_data("buyTokenAMAP(address,uint256,uint256)", [TOKEN, 10 ** 17, 0]))
        sell = make_tx(tx_hash="0xs1", sender=WHALE, value_bnb=0,
                       input_data=call_data("sellToken(address,uint256)", [TOKEN, 10 ** 20]))
        reader.add_block(1, [buy])
        reader.add_receipt(Receipt(tx_hash="0xb1", status=1, logs=[]))
        system, sink = build_system(tmp_path, reader)
        await scan(system)

        assert system.executor.buys == [(TOKEN, pytest.approx(0.05), "default")]
        position = system.position_tracker.get_positions("default")[0]
        assert position.copied_wallet == WHALE
        assert position.source == "copy"

        reader.add_block(2, [sell])
        await scan(system)
        assert system.executor.sells == [(TOKEN, 100.0, "default")]
        assert not system.position_tracker.is_tracked(TOKEN)
        assert NotificationKind.COPY_SIGNAL in sink.kinds()

    @pytest.mark.asyncio
    async def test_router_buy_copied_on_secondary_market(self, tmp_path):
        reader = ReplayChainReader()
        swap = make_tx(tx_hash="0xr1", to=ROUTER, sender=WHALE, value_bnb=0.1, input_data=call_data(
            "swapExactETHForTokens(uint256,address[],address,uint256)", [0, [WBNB, TOKEN], WHALE, 2 ** 40]))
        reader.add_block(1, [swap])
        system, sink = build_system(tmp_path, reader)
        await scan(system)

        assert system.executor.buys == [(TOKEN, pytest.approx(0.05), "default")]
        assert system.venue_resolver.cached(TOKEN) == Venue.SECONDARY_MARKET
        executed = [n for n in sink.received if n.kind == NotificationKind.TRADE_EXECUTED]
        assert executed[0].details['venue'] == Venue.SECONDARY_MARKET.value

    @pytest.mark.asyncio
    async def test_untracked_wallet_trade_ignored(self, tmp_path):
        system, _ = build_system(tmp_path, ReplayChainReader())
        await system.handle_event(make_event(kind=EventKind.BUY, sender=OTHER_TOKEN))
        assert system.executor.buys == []


class TestModesAndLifecycle:

    @pytest.mark.asyncio
    async def test_dry_run_bypasses_governor(self, tmp_path):
        reader = ReplayChainReader()
        creation_block(reader, 1)
        config = Config.from_dict({
            'scanner': {'patterns_path': write_patterns(tmp_path)},
            'safety': {'emergency_stop': True},
            'trading': {'dry_run': True},
        })
        oracle = ScriptedOracle()
        oracle.set(TOKEN, 0.000001)
        sink = CollectingSink()
        system = TradingSystem(config, chain_reader=reader, price_oracle=oracle, sinks=[sink],
                               clock=FakeClock(), logger=logger)
        assert isinstance(system.executor, DryRunExecutor)
        await scan(system)

        assert system.executor.transactions[0].action == 'BUY'
        assert NotificationKind.TRADE_BLOCKED not in sink.kinds()
        assert system.governor.counters.trades_this_hour == 0

    def test_live_mode_without_executor_rejected(self, tmp_path):
        config = Config.from_dict({'scanner': {'patterns_path': write_patterns(tmp_path)},
                                   'trading': {'dry_run': False}})
        with pytest.raises(ConfigError):
            TradingSystem(config, chain_reader=ReplayChainReader(), price_oracle=ScriptedOracle(),
                          sinks=[], logger=logger)

    @pytest.mark.asyncio
    async def test_scanner_halt_stops_system(self, tmp_path):
        reader = ReplayChainReader()
        creation_block(reader, 1)
        reader.fail_block(1, times=10)
        system, sink = build_system(tmp_path, reader)
        await system.start()
        with pytest.raises(ScannerHalted):
            await system.wait()
        assert not system.is_running
        assert NotificationKind.SCANNER_HALTED in sink.kinds()
        assert system.executor.buys == []

    @pytest.mark.asyncio
    async def test_status(self, tmp_path):
        reader = ReplayChainReader()
        creation_block(reader, 1)
        system, _ = build_system(tmp_path, reader)
        await scan(system)
        status = system.status()
        assert status['last_processed_block'] == 1
        assert status['events']['TokenCreated'] == 1
        assert status['positions']['active_positions'] == 1
