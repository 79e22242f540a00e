from typing import List, Optional
import logging
from core.types import ClassifiedEvent, EventKind
from strategies.base_strategy import BaseStrategy, Signal

class CopyTradingStrategy(BaseStrategy):
    def __init__(self,
                 tracked_wallets: List[str],
                 copy_ratio: float = 1.0,
                 min_position_size: float = 0.001,
                 max_position_size: float = 0.1,
                 allowed_tokens: List[str] = None,
                 blocked_tokens: List[str] = None,
                 require_pattern_match: bool = False,
                 pattern_matcher=None,
                 logger: logging.Logger = None):
        super().__init__()
        self.tracked_wallets = {w.lower() for w in tracked_wallets}
        self.copy_ratio = copy_ratio
        self.min_position_size = min_position_size
        self.max_position_size = max_position_size
        self.allowed_tokens = {t.lower() for t in (allowed_tokens or [])}
        self.blocked_tokens = {t.lower() for t in (blocked_tokens or [])}
        self.require_pattern_match = require_pattern_match
        self.pattern_matcher = pattern_matcher
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, copy_config, pattern_matcher=None, logger=None) -> "CopyTradingStrategy":
        return cls(
            tracked_wallets=copy_config.tracked_wallets,
            copy_ratio=copy_config.copy_ratio,
            min_position_size=copy_config.min_position_size,
            max_position_size=copy_config.max_position_size,
            allowed_tokens=copy_config.allowed_tokens,
            blocked_tokens=copy_config.blocked_tokens,
            require_pattern_match=copy_config.require_pattern_match,
            pattern_matcher=pattern_matcher,
            logger=logger,
        )

    def is_tracked(self, wallet_address: Optional[str]) -> bool:
        return bool(wallet_address) and wallet_address.lower() in self.tracked_wallets

    def position_size(self, target_bnb: float) -> float:
        """Copied size in BNB: ratio of the target's spend, capped at the max, 0 below the min"""
        size = min(target_bnb * self.copy_ratio, self.max_position_size)
        if size < self.min_position_size:
            return 0.0
        return size

    def generate_signal(self, event: ClassifiedEvent) -> Signal:
        """
        Signal for a trade made by a tracked wallet.
        Sells become exit signals for our positions in the same token.
        """
        if not event.is_trade or not self.is_tracked(event.from_address):
            return Signal(is_valid=False, reason="wallet not tracked")

        wallet = event.from_address.lower()
        token = event.token_address

        if event.kind == EventKind.SELL:
            return Signal(
                is_valid=True,
                is_exit=True,
                reason="tracked wallet sold",
                token_address=token,
                wallet_address=wallet,
                transaction_hash=event.tx_hash,
            )

        token_key = (token or "").lower()
        if token_key in self.blocked_tokens:
            return Signal(is_valid=False, reason=f"token {token} is blocked", token_address=token)
        if self.allowed_tokens and token_key not in self.allowed_tokens:
            return Signal(is_valid=False, reason=f"token {token} is not in the allowed list", token_address=token)

        size = self.position_size(event.bnb_value)
        if size <= 0:
            return Signal(
                is_valid=False,
                reason=f"copy size below minimum ({event.bnb_value} BNB x {self.copy_ratio})",
                token_address=token,
            )

        pattern = None
        if self.require_pattern_match:
            match = self.pattern_matcher.match(event) if self.pattern_matcher else None
            if match is None:
                return Signal(is_valid=False, reason="copied buy did not match any pattern", token_address=token)
            pattern = match.pattern

        self.logger.info(f"Copy signal: {wallet} bought {token} for {event.bnb_value} BNB, copying {size:.6f} BNB")
        return Signal(
            is_valid=True,
            reason="tracked wallet bought",
            token_address=token,
            bnb_amount=size,
            wallet_address=wallet,
            transaction_hash=event.tx_hash,
            pattern=pattern,
        )
