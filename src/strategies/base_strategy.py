from dataclasses import dataclass
from typing import Optional
from core.types import ClassifiedEvent, Pattern

@dataclass
class Signal:
    is_valid: bool
    reason: str = ""
    token_address: Optional[str] = None
    bnb_amount: float = 0.0
    wallet_address: Optional[str] = None
    transaction_hash: Optional[str] = None
    pattern: Optional[Pattern] = None
    is_exit: bool = False

class BaseStrategy:
    """Base class for all trading strategies"""

    def generate_signal(self, event: ClassifiedEvent) -> Signal:
        """Entry (or exit) signal for one classified event"""
        raise NotImplementedError
