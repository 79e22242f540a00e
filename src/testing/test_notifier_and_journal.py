import asyncio
import logging
import pytest
from core.events import Notification, NotificationKind
from utils.notifier import LoggingNotifier, NotificationDispatcher
from utils.logger import TradingLogger
from utils.trade_journal import COLUMNS, TradeJournal
from fakes import T0, TOKEN, CollectingSink


def notification(kind=NotificationKind.TRADE_EXECUTED, **details):
    return Notification(kind=kind, timestamp=T0, message="test", token_address=TOKEN, details=details)


class FailingSink:
    async def send(self, notification):
        raise RuntimeError("webhook down")


class SlowSink:
    async def send(self, notification):
        await asyncio.sleep(10)


class TestDispatcher:

    @pytest.mark.asyncio
    async def test_delivers_to_every_sink(self):
        first, second = CollectingSink(), CollectingSink()
        dispatcher = NotificationDispatcher([first, second])
        dispatcher.notify(notification())
        await dispatcher.drain()
        assert first.kinds() == [NotificationKind.TRADE_EXECUTED]
        assert second.kinds() == [NotificationKind.TRADE_EXECUTED]

    @pytest.mark.asyncio
    async def test_failing_sink_does_not_affect_others(self):
        sink = CollectingSink()
        dispatcher = NotificationDispatcher([FailingSink(), sink])
        dispatcher.notify(notification())
        await dispatcher.drain()
        assert len(sink.received) == 1
        assert dispatcher.failures == 1

    @pytest.mark.asyncio
    async def test_slow_sink_times_out(self):
        dispatcher = NotificationDispatcher([SlowSink()], timeout_seconds=0.01)
        dispatcher.notify(notification())
        await dispatcher.drain()
        assert dispatcher.failures == 1

    def test_no_running_loop_drops_quietly(self):
        sink = CollectingSink()
        NotificationDispatcher([sink]).notify(notification())
        assert sink.received == []

    @pytest.mark.asyncio
    async def test_logging_sink_levels(self, caplog):
        notifier = LoggingNotifier(logging.getLogger("test_notifier"))
        with caplog.at_level(logging.DEBUG, logger="test_notifier"):
            await notifier.send(notification(NotificationKind.TRADE_FAILED))
            await notifier.send(notification(NotificationKind.POSITION_OPENED))
        levels = [record.levelno for record in caplog.records]
        assert levels == [logging.ERROR, logging.INFO]
        assert "[trade_failed]" in caplog.records[0].getMessage()


class TestTradingLogger:

    def test_file_handler_created_once(self, tmp_path):
        first = TradingLogger("test_trading_logger", log_dir=str(tmp_path))
        second = TradingLogger("test_trading_logger", log_dir=str(tmp_path))
        assert first.logger is second.logger
        assert len(first.logger.handlers) == 1
        first.log(logging.WARNING, "scanner behind head")
        first.logger.handlers[0].flush()
        with open(first.log_path) as f:
            assert "WARNING - scanner behind head" in f.read()
        for handler in list(first.logger.handlers):
            handler.close()
            first.logger.removeHandler(handler)


class TestTradeJournal:

    @pytest.mark.asyncio
    async def test_records_trade_outcomes_only(self, tmp_path):
        journal = TradeJournal(str(tmp_path / "trades.csv"), timestamped=False)
        await journal.send(notification(side="buy", bnb_amount=0.01, tx_hash="0xbuy1"))
        await journal.send(notification(NotificationKind.TRADE_BLOCKED, side="buy", reason="hourly limit"))
        await journal.send(notification(NotificationKind.POSITION_OPENED))

        trades = journal.load()
        assert list(trades.columns) == COLUMNS
        assert list(trades['outcome']) == ['executed', 'blocked']
        assert trades['reason'].iloc[1] == "hourly limit"

    @pytest.mark.asyncio
    async def test_summary(self, tmp_path):
        journal = TradeJournal(str(tmp_path / "trades.csv"), timestamped=False)
        assert journal.summary() == {'attempts': 0}
        await journal.send(notification(side="buy", bnb_amount=0.01))
        await journal.send(notification(side="buy", bnb_amount=0.02))
        await journal.send(notification(side="sell", percentage=50.0))
        await journal.send(notification(NotificationKind.TRADE_FAILED, side="sell"))
        summary = journal.summary()
        assert summary['attempts'] == 4
        assert summary['executed'] == 3
        assert summary['failed'] == 1
        assert summary['buys'] == 2
        assert summary['bnb_spent'] == pytest.approx(0.03)

    def test_timestamped_file_name(self, tmp_path):
        journal = TradeJournal(str(tmp_path / "trades.csv"))
        assert journal.csv_path.startswith(str(tmp_path / "trades_"))
        assert journal.csv_path.endswith(".csv")
