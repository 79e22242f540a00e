from core.types import TradeResult

class TradeExecutor:
    """
    Settlement boundary. Implementations build and send the actual swap;
    the engine only calls buy/sell and reads the TradeResult.
    """

    # Simulated executors skip the safety limits
    is_simulated = False

    async def buy(self, token_address: str, bnb_amount: float, owner_id: str) -> TradeResult:
        raise NotImplementedError

    async def sell(self, token_address: str, percentage: float, owner_id: str) -> TradeResult:
        """Sell `percentage` (0-100] of the owner's current holding"""
        raise NotImplementedError
