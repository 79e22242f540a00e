from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from eth_abi import encode
from core.types import (Block, ClassifiedEvent, EventKind, LogEntry, Pattern, PriceQuote,
                        RawTransaction, Receipt, TradeResult, Venue)
from strategies.event_classifier import TOKEN_CREATE_TOPIC, TRANSFER_TOPIC, selector_of

TARGET = "0x5c952063c7fc8610ffdb798152d69f0b9550762b"
ROUTER = "0x10ed43c718714eb63d5aa57b78b54704e256024e"
WBNB = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"
CREATOR = "0x1111111111111111111111111111111111111111"
WHALE = "0x2222222222222222222222222222222222222222"
OURS = "0x3333333333333333333333333333333333333333"
TOKEN = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa4444"
OTHER_TOKEN = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb5555"
CREATE_SELECTOR = "0x519ebb10"
T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)

class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)

class ScriptedOracle:
    """Price per token, or an exception to raise"""

    def __init__(self):
        self.prices: Dict[str, object] = {}
        self.calls: List[str] = []

    def set(self, token: str, price_bnb: float, has_liquidity: bool = True):
        self.prices[token.lower()] = PriceQuote(price_bnb=price_bnb, price_usd=price_bnb * 600,
                                                has_liquidity=has_liquidity)

    def fail(self, token: str, error: Exception = None):
        self.prices[token.lower()] = error or ConnectionError("oracle timeout")

    async def get_current_price(self, token_address: str) -> PriceQuote:
        self.calls.append(token_address)
        quote = self.prices.get(token_address.lower())
        if quote is None:
            raise KeyError(token_address)
        if isinstance(quote, Exception):
            raise quote
        return quote

class RecordingSell:
    """Sell callback for the tracker that records calls"""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.calls: List[Tuple[str, float, str]] = []

    async def __call__(self, position, percentage: float, reason: str) -> TradeResult:
        self.calls.append((position.token_address, percentage, reason))
        if self.succeed:
            return TradeResult(success=True, tx_hash=f"0xsell{len(self.calls)}")
        return TradeResult(success=False, error="executor rejected")

class RecordingExecutor:
    def __init__(self, is_simulated: bool = False, succeed: bool = True, price_bnb: float = 0.000001):
        self.is_simulated = is_simulated
        self.succeed = succeed
        self.price_bnb = price_bnb
        self.buys: List[Tuple[str, float, str]] = []
        self.sells: List[Tuple[str, float, str]] = []

    async def buy(self, token_address: str, bnb_amount: float, owner_id: str) -> TradeResult:
        self.buys.append((token_address, bnb_amount, owner_id))
        if not self.succeed:
            return TradeResult(success=False, error="reverted")
        return TradeResult(success=True, tx_hash=f"0xbuy{len(self.buys)}",
                           token_amount=bnb_amount / self.price_bnb, price_bnb=self.price_bnb)

    async def sell(self, token_address: str, percentage: float, owner_id: str) -> TradeResult:
        self.sells.append((token_address, percentage, owner_id))
        if not self.succeed:
            return TradeResult(success=False, error="reverted")
        return TradeResult(success=True, tx_hash=f"0xsell{len(self.sells)}")

class CollectingSink:
    def __init__(self):
        self.received = []

    async def send(self, notification):
        self.received.append(notification)

    def kinds(self):
        return [n.kind for n in self.received]

def topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:].lower()

def word(address: str) -> str:
    return "0" * 24 + address[2:].lower()

def make_tx(tx_hash: str = "0x01", to: str = TARGET, sender: str = CREATOR, input_data: str = CREATE_SELECTOR,
            value_bnb: float = 0.3434, gas: int = 1514218, gas_price_gwei: float = 0.11) -> RawTransaction:
    return RawTransaction(
        hash=tx_hash,
        from_address=sender,
        to_address=to,
        input=input_data,
        value=int(round(value_bnb * 10 ** 18)),
        gas=gas,
        gas_price=int(round(gas_price_gwei * 10 ** 9)),
    )

def make_block(number: int, transactions: List[RawTransaction] = None, timestamp: datetime = T0) -> Block:
    return Block(number=number, timestamp=timestamp, transactions=list(transactions or []))

def token_create_receipt(tx_hash: str, token: str = TOKEN, creator: str = CREATOR) -> Receipt:
    return Receipt(tx_hash=tx_hash, status=1, logs=[
        LogEntry(address=TARGET, topics=[TOKEN_CREATE_TOPIC, topic(creator), topic(token)], data="0x"),
    ])

def transfer_log(token: str, source: str, destination: str, raw_amount: int) -> LogEntry:
    return LogEntry(address=token, topics=[TRANSFER_TOPIC, topic(source), topic(destination)],
                    data="0x" + format(raw_amount, "064x"))

def call_data(signature: str, args: list) -> str:
    types = signature[signature.index("(") + 1:-1].split(",")
    return selector_of(signature) + encode(types, args).hex()

def make_event(kind: EventKind = EventKind.TOKEN_CREATED, gas_price_gwei: float = 0.11, gas_limit: int = 1514218,
               bnb_value: float = 0.3434, token: Optional[str] = TOKEN, sender: str = CREATOR,
               tx_hash: str = "0xabc", block_number: int = 100) -> ClassifiedEvent:
    return ClassifiedEvent(
        kind=kind,
        block_number=block_number,
        tx_hash=tx_hash,
        from_address=sender,
        bnb_value=bnb_value,
        gas_price_gwei=gas_price_gwei,
        gas_limit=gas_limit,
        timestamp=T0,
        token_address=token,
        venue=Venue.ORIGINATING,
    )

def pattern_dict(pattern_id: str = "p1", priority: int = 1, gas_price=(0.1, 0.12), gas_limit=(1513000, 1515000),
                 value=(0.01, 1.0), enabled: bool = True, unit: str = "gwei", hold_seconds: float = 0,
                 confirmations: int = 0, buy_amount: float = 0.01) -> dict:
    return {
        "id": pattern_id,
        "name": f"Pattern {pattern_id}",
        "enabled": enabled,
        "priority": priority,
        "gasPrice": {"min": gas_price[0], "max": gas_price[1], "unit": unit},
        "gasLimit": {"min": gas_limit[0], "max": gas_limit[1]},
        "trading": {"buyAmount": buy_amount, "holdTimeSeconds": hold_seconds, "maxSlippage": 5},
        "filters": {"minTransactionValue": value[0], "maxTransactionValue": value[1],
                    "requiredConfirmations": confirmations},
    }

def make_pattern(**kwargs) -> Pattern:
    return Pattern.from_dict(pattern_dict(**kwargs))
