from typing import Dict, Sequence
import logging
from core.types import PriceQuote, TokenInfo, Venue, ZERO_ADDRESS

FOUR_MEME_CREATE_SELECTOR = "0x519ebb10"
WBNB = "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c"
TOKEN_DECIMALS = 18

TOKEN_MANAGER_HELPER_ABI = [
    {
        "name": "getTokenInfo",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "token", "type": "address"}],
        "outputs": [
            {"name": "version", "type": "uint256"},
            {"name": "tokenManager", "type": "address"},
            {"name": "quote", "type": "address"},
            {"name": "lastPrice", "type": "uint256"},
            {"name": "tradingFeeRate", "type": "uint256"},
            {"name": "minTradingFee", "type": "uint256"},
            {"name": "launchTime", "type": "uint256"},
            {"name": "offers", "type": "uint256"},
            {"name": "maxOffers", "type": "uint256"},
            {"name": "funds", "type": "uint256"},
            {"name": "maxFunds", "type": "uint256"},
            {"name": "liquidityAdded", "type": "bool"},
        ],
    }
]

PANCAKE_ROUTER_ABI = [
    {"inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
     "name": "getAmountsOut", "outputs": [{"name": "amounts", "type": "uint256[]"}],
     "stateMutability": "view", "type": "function"},
]

ERC20_BALANCE_ABI = [
    {"constant": True, "inputs": [{"name": "owner", "type": "address"}], "name": "balanceOf",
     "outputs": [{"name": "", "type": "uint256"}], "type": "function"},
]

def token_info_from_call(result: Sequence) -> TokenInfo:
    """Map the getTokenInfo output tuple onto TokenInfo"""
    return TokenInfo(
        token_manager=str(result[1]).lower(),
        last_price_wei=int(result[3]),
        offers=int(result[7]),
        liquidity_added=bool(result[11]),
    )

def venue_of(info: TokenInfo) -> Venue:
    if info.token_manager == ZERO_ADDRESS or info.liquidity_added:
        return Venue.SECONDARY_MARKET
    return Venue.ORIGINATING

class VenueResolver:
    """Resolves where a token trades once per token and caches the answer"""

    def __init__(self, chain_reader, logger=None):
        self.chain_reader = chain_reader
        self.logger = logger or logging.getLogger(__name__)
        self._venues: Dict[str, Venue] = {}

    def cached(self, token_address: str) -> Venue:
        return self._venues.get(token_address.lower(), Venue.UNKNOWN)

    async def resolve(self, token_address: str) -> Venue:
        token = token_address.lower()
        if token in self._venues:
            return self._venues[token]
        info = await self.chain_reader.get_token_info(token)
        venue = venue_of(info)
        self._venues[token] = venue
        self.logger.debug(f"Venue for {token}: {venue.value}")
        return venue

    def mark_migrated(self, token_address: str):
        token = token_address.lower()
        if self._venues.get(token) != Venue.SECONDARY_MARKET:
            self.logger.info(f"Token {token} migrated to {Venue.SECONDARY_MARKET.value}")
        self._venues[token] = Venue.SECONDARY_MARKET

    def remember(self, token_address: str, venue: Venue):
        """Record a venue seen on chain, e.g. a router swap of the token"""
        if venue != Venue.UNKNOWN:
            self._venues[token_address.lower()] = venue

class FourMemePriceOracle:
    """
    Price oracle dispatching on the token's venue.

    On four.meme the price is the helper's lastPrice; once the token has
    migrated it is the PancakeSwap router's getAmountsOut for one whole token
    into WBNB. Prices are BNB per whole token; USD is derived from a
    configured BNB price.
    """

    def __init__(self, chain_reader, bnb_price_usd: float, venue_resolver: VenueResolver = None,
                 wbnb: str = WBNB, logger=None):
        self.chain_reader = chain_reader
        self.bnb_price_usd = bnb_price_usd
        self.venue_resolver = venue_resolver
        self.wbnb = wbnb.lower()
        self.logger = logger or logging.getLogger(__name__)

    async def get_current_price(self, token_address: str) -> PriceQuote:
        venue = self.venue_resolver.cached(token_address) if self.venue_resolver is not None else Venue.UNKNOWN
        if venue != Venue.SECONDARY_MARKET:
            info = await self.chain_reader.get_token_info(token_address)
            if venue_of(info) == Venue.ORIGINATING:
                return self._quote(info.last_price_wei / 1e18)
            if self.venue_resolver is not None:
                self.venue_resolver.mark_migrated(token_address)
        return await self._secondary_market_quote(token_address)

    async def _secondary_market_quote(self, token_address: str) -> PriceQuote:
        amount_out = await self.chain_reader.get_amount_out(10 ** TOKEN_DECIMALS, [token_address.lower(), self.wbnb])
        if not amount_out:
            self.logger.debug(f"No {Venue.SECONDARY_MARKET.value} pool prices {token_address}")
            return PriceQuote(price_bnb=0.0, price_usd=0.0, has_liquidity=False)
        return self._quote(amount_out / 1e18)

    def _quote(self, price_bnb: float) -> PriceQuote:
        return PriceQuote(
            price_bnb=price_bnb,
            price_usd=price_bnb * self.bnb_price_usd,
            has_liquidity=price_bnb > 0,
        )
