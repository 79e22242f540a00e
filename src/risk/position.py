from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple

class PositionState(Enum):
    OPEN = "open"
    PARTIAL_SOLD = "partial_sold"
    CLOSED = "closed"

PositionKey = Tuple[str, str, str]  # (owner_id, wallet_address, token_address)

@dataclass
class TrackedPosition:
    """An open position watched by the price-trigger loop"""
    token_address: str
    owner_id: str
    wallet_address: str
    buy_price_bnb: float
    buy_price_usd: float
    bnb_spent: float
    token_amount_held: float
    buy_timestamp: datetime
    current_price_bnb: float = 0.0
    current_price_usd: float = 0.0
    price_change_pct: float = 0.0      # percent against the BNB buy price
    max_price_bnb: float = 0.0
    max_price_change_pct: float = 0.0
    last_updated: Optional[datetime] = None
    active: bool = True
    state: PositionState = PositionState.OPEN
    partial_trigger_consumed: bool = False
    copied_wallet: Optional[str] = None
    pattern_id: Optional[str] = None
    hold_seconds: Optional[float] = None
    source: str = "manual"             # manual, copy or pattern
    buy_tx_hash: Optional[str] = None

    def __post_init__(self):
        if not self.current_price_bnb:
            self.current_price_bnb = self.buy_price_bnb
            self.current_price_usd = self.buy_price_usd
        if not self.max_price_bnb:
            self.max_price_bnb = self.buy_price_bnb
        if self.last_updated is None:
            self.last_updated = self.buy_timestamp

    @property
    def key(self) -> PositionKey:
        return (self.owner_id, self.wallet_address.lower(), self.token_address.lower())

    def elapsed_seconds(self, now: datetime) -> float:
        return (now - self.buy_timestamp).total_seconds()

    def apply_price(self, price_bnb: float, price_usd: float, now: datetime):
        """Update every price field in one step"""
        change_pct = (price_bnb - self.buy_price_bnb) / self.buy_price_bnb * 100 if self.buy_price_bnb > 0 else 0.0
        self.current_price_bnb = price_bnb
        self.current_price_usd = price_usd
        self.price_change_pct = change_pct
        if price_bnb > self.max_price_bnb:
            self.max_price_bnb = price_bnb
        if change_pct > self.max_price_change_pct:
            self.max_price_change_pct = change_pct
        self.last_updated = now

    def calculate_pnl(self) -> float:
        """Unrealized PnL in BNB on the tokens still held"""
        return (self.current_price_bnb - self.buy_price_bnb) * self.token_amount_held
