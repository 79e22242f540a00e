from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Tuple
import logging
from core.types import TradeResult
from execution.trade_executor import TradeExecutor

@dataclass
class SimulatedTransaction:
    timestamp: datetime
    action: str  # 'BUY' or 'SELL'
    token_address: str
    owner_id: str
    bnb_amount: float
    token_amount: float
    price_bnb: float
    network_fee: float = 0.0005  # Typical BSC fee in BNB
    tx_hash: str = ""

@dataclass
class SimulatedWallet:
    bnb_balance: float
    holdings: Dict[str, float] = field(default_factory=dict)

class DryRunExecutor(TradeExecutor):
    """Simulated buys and sells at the oracle price with slippage"""

    is_simulated = True

    def __init__(self, price_oracle, initial_bnb: float = 10.0, slippage_bps: int = 200,
                 network_fee: float = 0.0005, logger=None):
        self.price_oracle = price_oracle
        self.initial_bnb = initial_bnb
        self.slippage_bps = slippage_bps
        self.network_fee = network_fee
        self.logger = logger or logging.getLogger(__name__)
        self.wallets: Dict[str, SimulatedWallet] = {}
        self.transactions: List[SimulatedTransaction] = []

    def _wallet(self, owner_id: str) -> SimulatedWallet:
        if owner_id not in self.wallets:
            self.wallets[owner_id] = SimulatedWallet(bnb_balance=self.initial_bnb)
        return self.wallets[owner_id]

    async def _price(self, token_address: str) -> Tuple[float, str]:
        try:
            quote = await self.price_oracle.get_current_price(token_address)
        except Exception as e:
            return 0.0, f"price unavailable: {e}"
        if not quote.has_liquidity or quote.price_bnb <= 0:
            return 0.0, "no liquidity"
        return quote.price_bnb, ""

    def _record(self, action: str, token_address: str, owner_id: str, bnb_amount: float,
                token_amount: float, price: float) -> str:
        tx_hash = f"dryrun-{len(self.transactions) + 1}"
        self.transactions.append(SimulatedTransaction(
            timestamp=datetime.now(timezone.utc),
            action=action,
            token_address=token_address,
            owner_id=owner_id,
            bnb_amount=bnb_amount,
            token_amount=token_amount,
            price_bnb=price,
            network_fee=self.network_fee,
            tx_hash=tx_hash,
        ))
        return tx_hash

    async def buy(self, token_address: str, bnb_amount: float, owner_id: str) -> TradeResult:
        wallet = self._wallet(owner_id)
        if bnb_amount + self.network_fee > wallet.bnb_balance:
            return TradeResult(success=False, error=f"insufficient simulated balance {wallet.bnb_balance:.4f} BNB")

        price, error = await self._price(token_address)
        if error:
            return TradeResult(success=False, error=error)

        # Buyers pay up by the slippage
        execution_price = price * (1 + self.slippage_bps / 10000)
        token_amount = bnb_amount / execution_price
        wallet.bnb_balance -= bnb_amount + self.network_fee
        token = token_address.lower()
        wallet.holdings[token] = wallet.holdings.get(token, 0.0) + token_amount

        tx_hash = self._record('BUY', token, owner_id, bnb_amount, token_amount, execution_price)
        self.logger.info(f"DRY RUN buy {token}: {bnb_amount} BNB -> {token_amount:.2f} tokens at {execution_price:.10f}")
        return TradeResult(success=True, tx_hash=tx_hash, token_amount=token_amount, price_bnb=execution_price)

    async def sell(self, token_address: str, percentage: float, owner_id: str) -> TradeResult:
        wallet = self._wallet(owner_id)
        token = token_address.lower()
        held = wallet.holdings.get(token, 0.0)
        if held <= 0:
            return TradeResult(success=False, error="no simulated holding")

        price, error = await self._price(token)
        if error:
            return TradeResult(success=False, error=error)

        token_amount = held * min(percentage, 100.0) / 100
        execution_price = price * (1 - self.slippage_bps / 10000)
        bnb_received = token_amount * execution_price - self.network_fee
        wallet.bnb_balance += bnb_received
        wallet.holdings[token] = held - token_amount
        if percentage >= 100:
            wallet.holdings.pop(token, None)

        tx_hash = self._record('SELL', token, owner_id, bnb_received, token_amount, execution_price)
        self.logger.info(f"DRY RUN sell {percentage}% of {token}: {token_amount:.2f} tokens -> {bnb_received:.6f} BNB")
        return TradeResult(success=True, tx_hash=tx_hash, token_amount=token_amount, price_bnb=execution_price)
