from datetime import datetime, timezone
from functools import wraps
from typing import List, Optional
import asyncio
import logging
import aiohttp
from web3 import AsyncWeb3, AsyncHTTPProvider, Web3
from web3.exceptions import ContractLogicError, Web3Exception
from core.types import Block, LogEntry, RawTransaction, Receipt, TokenInfo
from data.four_meme import (ERC20_BALANCE_ABI, PANCAKE_ROUTER_ABI, TOKEN_MANAGER_HELPER_ABI,
                            token_info_from_call)

TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError, Web3Exception, ValueError)
# Node answers that cannot be mapped onto our records
MALFORMED_ERRORS = (KeyError, TypeError, IndexError, AttributeError)

class ChainReadError(Exception):
    """RPC call still failing after bounded retries, or answering with an unusable response"""

def retry_with_backoff(func):
    """Retry an RPC coroutine with exponential backoff, then raise ChainReadError"""
    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        for attempt in range(self.max_retries):
            try:
                return await asyncio.wait_for(func(self, *args, **kwargs), timeout=self.request_timeout)
            except MALFORMED_ERRORS as e:
                raise ChainReadError(f"{func.__name__}{args} returned a malformed response: {e!r}") from e
            except TRANSIENT_ERRORS as e:
                if attempt == self.max_retries - 1:
                    raise ChainReadError(f"{func.__name__}{args} failed after {self.max_retries} attempts: {e}") from e
                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                self.logger.warning(f"RPC error in {func.__name__}, retrying in {delay:.2f}s "
                                    f"(attempt {attempt + 1}/{self.max_retries}): {e}")
                await asyncio.sleep(delay)
    return wrapper

def _hex(value) -> str:
    if value is None:
        return "0x"
    if isinstance(value, str):
        return value if value.startswith("0x") else "0x" + value
    return Web3.to_hex(value)

def _address(value) -> Optional[str]:
    return value.lower() if value else None

class ChainReader:
    """Read-only BSC client over web3's async HTTP provider, safe for concurrent callers"""

    def __init__(self,
                 rpc_url: str,
                 token_manager_helper: str,
                 price_router: str = None,
                 request_timeout: float = 10.0,
                 max_retries: int = 3,
                 base_delay: float = 0.5,
                 max_delay: float = 8.0,
                 logger=None):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.helper = self.w3.eth.contract(address=Web3.to_checksum_address(token_manager_helper),
                                           abi=TOKEN_MANAGER_HELPER_ABI)
        self.router = None
        if price_router:
            self.router = self.w3.eth.contract(address=Web3.to_checksum_address(price_router),
                                               abi=PANCAKE_ROUTER_ABI)
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.logger = logger or logging.getLogger(__name__)

    @classmethod
    def from_config(cls, chain_config, logger=None) -> "ChainReader":
        return cls(
            rpc_url=chain_config.rpc_url,
            token_manager_helper=chain_config.token_manager_helper,
            price_router=chain_config.price_router,
            request_timeout=chain_config.request_timeout_seconds,
            max_retries=chain_config.max_retries,
            base_delay=chain_config.base_delay_seconds,
            max_delay=chain_config.max_delay_seconds,
            logger=logger,
        )

    @retry_with_backoff
    async def latest_block_number(self) -> int:
        return int(await self.w3.eth.block_number)

    @retry_with_backoff
    async def get_block(self, number: int) -> Block:
        raw = await self.w3.eth.get_block(number, full_transactions=True)
        transactions: List[RawTransaction] = []
        for tx in raw["transactions"]:
            transactions.append(RawTransaction(
                hash=_hex(tx["hash"]),
                from_address=_address(tx.get("from")),
                to_address=_address(tx.get("to")),
                input=_hex(tx.get("input")),
                value=int(tx.get("value", 0)),
                gas=int(tx.get("gas", 0)),
                gas_price=int(tx.get("gasPrice") or 0),
            ))
        return Block(
            number=int(raw["number"]),
            timestamp=datetime.fromtimestamp(int(raw["timestamp"]), tz=timezone.utc),
            transactions=transactions,
        )

    @retry_with_backoff
    async def get_transaction_receipt(self, tx_hash: str) -> Receipt:
        raw = await self.w3.eth.get_transaction_receipt(tx_hash)
        logs = [
            LogEntry(
                address=raw_log["address"].lower(),
                topics=[_hex(topic) for topic in raw_log["topics"]],
                data=_hex(raw_log["data"]),
            )
            for raw_log in raw["logs"]
        ]
        return Receipt(
            tx_hash=_hex(raw["transactionHash"]),
            status=int(raw.get("status", 1)),
            logs=logs,
            contract_address=_address(raw.get("contractAddress")),
        )

    @retry_with_backoff
    async def get_token_info(self, token_address: str) -> TokenInfo:
        result = await self.helper.functions.getTokenInfo(Web3.to_checksum_address(token_address)).call()
        return token_info_from_call(result)

    @retry_with_backoff
    async def get_amount_out(self, amount_in: int, path: List[str]) -> Optional[int]:
        """Router output for `amount_in` along `path`, None when no pool prices it"""
        if self.router is None:
            return None
        checksummed = [Web3.to_checksum_address(address) for address in path]
        try:
            amounts = await self.router.functions.getAmountsOut(amount_in, checksummed).call()
        except ContractLogicError:
            return None
        return int(amounts[-1])

    @retry_with_backoff
    async def get_token_balance(self, token_address: str, wallet_address: str) -> int:
        token = self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_BALANCE_ABI)
        return int(await token.functions.balanceOf(Web3.to_checksum_address(wallet_address)).call())

    async def close(self):
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
