import argparse
import asyncio
import signal
import sys
from core.block_scanner import ScannerHalted
from core.trading_system import TradingSystem
from data.replay_chain_reader import ReplayChainReader
from utils.config import Config, ConfigError
from utils.logger import TradingLogger

class InitTradingSystem:
    def __init__(self, logger: TradingLogger = None):
        self.trading_bot = None
        self.logger = logger
        self._shutdown_requested = False

    def handle_shutdown(self, signum, frame=None):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}. Starting graceful shutdown...")
        self._shutdown_requested = True
        loop = asyncio.get_running_loop()
        loop.create_task(self.shutdown())

    async def run_trading_system(self, config: Config, replay_path: str = None) -> int:
        """Run trading system until a signal or a fatal scanner halt; returns the exit code"""
        chain_reader = ReplayChainReader.from_file(replay_path) if replay_path else None
        self.trading_bot = TradingSystem(config, chain_reader=chain_reader, logger=self.logger)

        try:
            await self.trading_bot.start()
            self.logger.info("Trading system started successfully")
            await self.trading_bot.wait()
            return 0
        except ScannerHalted as e:
            self.logger.critical(f"Trading system stopped on fatal scanner halt: {e}")
            return 2
        finally:
            if self.trading_bot.is_running:
                self.logger.info("Final cleanup in finally block")
                await self.shutdown()

    async def shutdown(self):
        """Gracefully shutdown the trading system"""
        if self.trading_bot and self.trading_bot.is_running:
            self.logger.info("Shutting down trading system...")
            await self.trading_bot.stop()

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="four.meme pattern and copy trading scanner")
    parser.add_argument("--config", default=None, help="YAML config file (default: $TRADER_CONFIG or config.yaml)")
    parser.add_argument("--replay", default=None, help="Replay recorded blocks from a JSON file instead of RPC")
    parser.add_argument("--console", action="store_true", help="Also log to the console")
    return parser.parse_args(argv)

async def main(argv=None) -> int:
    args = parse_args(argv)
    logger = TradingLogger("bnb_pattern_trader", console_output=args.console)

    try:
        config = Config(args.config)
    except ConfigError as e:
        logger.critical(f"Invalid configuration: {e}")
        return 1

    init_system = InitTradingSystem(logger)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, init_system.handle_shutdown, sig)

    try:
        logger.info("Starting trading system...")
        return await init_system.run_trading_system(config, args.replay)
    except ConfigError as e:
        logger.critical(f"Invalid configuration: {e}")
        return 1
    finally:
        logger.info("Trading system shutdown complete")

def cli():
    sys.exit(asyncio.run(main()))

if __name__ == "__main__":
    cli()
