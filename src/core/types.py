from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

class EventKind(Enum):
    TOKEN_CREATED = "TokenCreated"
    BUY = "Buy"
    SELL = "Sell"
    UNKNOWN = "Unknown"

class Venue(Enum):
    """Where a token currently trades"""
    ORIGINATING = "four.meme"
    SECONDARY_MARKET = "pancakeswap"
    UNKNOWN = "unknown"

@dataclass(frozen=True)
class LogEntry:
    address: str
    topics: List[str]
    data: str

@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    logs: List[LogEntry]
    contract_address: Optional[str] = None

@dataclass(frozen=True)
class RawTransaction:
    hash: str
    from_address: Optional[str]
    to_address: Optional[str]
    input: str
    value: int  # wei
    gas: int
    gas_price: int  # wei

@dataclass(frozen=True)
class Block:
    number: int
    timestamp: datetime
    transactions: List[RawTransaction]

@dataclass(frozen=True)
class ClassifiedEvent:
    kind: EventKind
    block_number: int
    tx_hash: str
    from_address: Optional[str]
    bnb_value: float
    gas_price_gwei: float
    gas_limit: int
    timestamp: datetime
    token_address: Optional[str] = None
    token_amount: Optional[float] = None
    venue: Venue = Venue.UNKNOWN

    @property
    def is_trade(self) -> bool:
        return self.kind in (EventKind.BUY, EventKind.SELL)

@dataclass(frozen=True)
class GasPriceRange:
    min: float
    max: float
    unit: str = "gwei"

    @property
    def min_gwei(self) -> float:
        return self.min / 1e9 if self.unit == "wei" else self.min

    @property
    def max_gwei(self) -> float:
        return self.max / 1e9 if self.unit == "wei" else self.max

@dataclass(frozen=True)
class GasLimitRange:
    min: int
    max: int

@dataclass(frozen=True)
class TradingParams:
    buy_amount: float
    hold_seconds: float
    max_slippage_pct: float = 5.0
    stop_loss_pct: float = 0.0
    take_profit_pct: float = 0.0

@dataclass(frozen=True)
class ValueFilter:
    min_tx_value: float
    max_tx_value: float
    required_confirmations: int = 0

@dataclass(frozen=True)
class Pattern:
    id: str
    name: str
    enabled: bool
    priority: int
    gas_price_range: GasPriceRange
    gas_limit_range: GasLimitRange
    trading_params: TradingParams
    value_filter: ValueFilter
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Pattern":
        """Build a pattern from the patterns.json layout"""
        gas_price = data["gasPrice"]
        gas_limit = data["gasLimit"]
        trading = data["trading"]
        filters = data["filters"]
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            description=str(data.get("description", "")),
            enabled=bool(data.get("enabled", True)),
            priority=int(data["priority"]),
            gas_price_range=GasPriceRange(
                min=float(gas_price["min"]),
                max=float(gas_price["max"]),
                unit=str(gas_price.get("unit", "gwei")),
            ),
            gas_limit_range=GasLimitRange(min=int(gas_limit["min"]), max=int(gas_limit["max"])),
            trading_params=TradingParams(
                buy_amount=float(trading["buyAmount"]),
                hold_seconds=float(trading.get("holdTimeSeconds", 0)),
                max_slippage_pct=float(trading.get("maxSlippage", 5.0)),
                stop_loss_pct=float(trading.get("stopLossPercent", 0.0)),
                take_profit_pct=float(trading.get("takeProfitPercent", 0.0)),
            ),
            value_filter=ValueFilter(
                min_tx_value=float(filters["minTransactionValue"]),
                max_tx_value=float(filters["maxTransactionValue"]),
                required_confirmations=int(filters.get("requiredConfirmations", 0)),
            ),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "priority": self.priority,
            "gasPrice": {
                "min": self.gas_price_range.min,
                "max": self.gas_price_range.max,
                "unit": self.gas_price_range.unit,
            },
            "gasLimit": {"min": self.gas_limit_range.min, "max": self.gas_limit_range.max},
            "trading": {
                "buyAmount": self.trading_params.buy_amount,
                "holdTimeSeconds": self.trading_params.hold_seconds,
                "maxSlippage": self.trading_params.max_slippage_pct,
                "stopLossPercent": self.trading_params.stop_loss_pct,
                "takeProfitPercent": self.trading_params.take_profit_pct,
            },
            "filters": {
                "minTransactionValue": self.value_filter.min_tx_value,
                "maxTransactionValue": self.value_filter.max_tx_value,
                "requiredConfirmations": self.value_filter.required_confirmations,
            },
        }

@dataclass(frozen=True)
class MatchResult:
    pattern: Pattern
    confidence: float
    event: ClassifiedEvent

@dataclass
class TradeResult:
    success: bool
    tx_hash: str = None
    error: str = None
    token_amount: Optional[float] = None
    price_bnb: Optional[float] = None

@dataclass(frozen=True)
class PriceQuote:
    price_bnb: float
    price_usd: float
    has_liquidity: bool = True

@dataclass
class TokenInfo:
    """Subset of the four.meme helper's getTokenInfo result"""
    token_manager: str
    last_price_wei: int
    offers: int
    liquidity_added: bool
