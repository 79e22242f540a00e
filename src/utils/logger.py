import logging
from datetime import datetime
import os

class TradingLogger:
    """
    Scanner-wide logger: a timestamped file under log_dir at DEBUG, and
    optionally the console at INFO. TRADER_LOG_LEVEL raises the file level.
    """

    def __init__(self, name: str = "bnb_pattern_trader", log_dir: str = "data/logs", console_output: bool = False):
        self.log_dir = log_dir
        os.makedirs(log_dir, exist_ok=True)

        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.DEBUG)

        # The same name shares one set of handlers across constructions
        if not self.logger.handlers:
            self._setup_handlers(console_output)

    def _setup_handlers(self, console_output: bool):
        if console_output:
            console = logging.StreamHandler()
            console.setLevel(logging.INFO)
            console.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
            self.logger.addHandler(console)

        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        self.log_path = os.path.join(self.log_dir, f'scanner_{timestamp}.log')
        file_handler = logging.FileHandler(self.log_path)
        file_handler.setLevel(os.getenv('TRADER_LOG_LEVEL', 'DEBUG').upper())
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        self.logger.addHandler(file_handler)

    def log(self, level: int, message: str) -> None:
        self.logger.log(level, message)

    def critical(self, message: str) -> None:
        self.logger.critical(message)

    def debug(self, message: str) -> None:
        self.logger.debug(message)

    def info(self, message: str) -> None:
        self.logger.info(message)

    def warning(self, message: str) -> None:
        self.logger.warning(message)

    def error(self, message: str) -> None:
        self.logger.error(message)
