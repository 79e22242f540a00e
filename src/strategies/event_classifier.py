from collections import Counter, deque
from typing import Callable, Deque, Dict, Iterable, Optional, Tuple
import logging
from eth_abi import decode
from web3 import Web3
from core.types import (Block, ClassifiedEvent, EventKind, RawTransaction, Receipt, Venue,
                        ZERO_ADDRESS)
from data.chain_reader import ChainReadError
from data.four_meme import FOUR_MEME_CREATE_SELECTOR, TOKEN_DECIMALS

TOKEN_CREATE_TOPIC = Web3.to_hex(
    Web3.keccak(text="TokenCreate(address,address,uint256,string,string,uint256,uint256)"))
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

def selector_of(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature)[:4])

# four.meme token manager calls: signature -> (operation, index of the token argument)
FOUR_MEME_FUNCTIONS = {
    "buyTokenAMAP(address,uint256,uint256)": ("buy", 0),
    "buyTokenAMAP(address,address,uint256,uint256)": ("buy", 0),
    "buyToken(address,uint256,uint256)": ("buy", 0),
    "buyToken(address,address,uint256,uint256)": ("buy", 0),
    "purchaseTokenAMAP(address,uint256,uint256)": ("buy", 0),
    "purchaseToken(address,uint256,uint256)": ("buy", 0),
    "sellToken(address,uint256)": ("sell", 0),
    "sellToken(uint256,address,uint256,uint256,uint256,address)": ("sell", 1),
    "sellToken(uint256,address,address,uint256,uint256,uint256,address)": ("sell", 1),
    "saleToken(address,uint256)": ("sell", 0),
}

# PancakeSwap V2 router swaps: signature -> operation. Buys take path[-1], sells path[0]
PANCAKE_V2_FUNCTIONS = {
    "swapExactETHForTokens(uint256,address[],address,uint256)": "buy",
    "swapExactETHForTokensSupportingFeeOnTransferTokens(uint256,address[],address,uint256)": "buy",
    "swapETHForExactTokens(uint256,address[],address,uint256)": "buy",
    "swapExactTokensForETH(uint256,uint256,address[],address,uint256)": "sell",
    "swapExactTokensForETHSupportingFeeOnTransferTokens(uint256,uint256,address[],address,uint256)": "sell",
}

_ARG_TYPES = {sig: sig[sig.index("(") + 1:-1].split(",") for sig in list(FOUR_MEME_FUNCTIONS) + list(PANCAKE_V2_FUNCTIONS)}
_FOUR_MEME_BY_SELECTOR = {selector_of(sig): sig for sig in FOUR_MEME_FUNCTIONS}
_PANCAKE_BY_SELECTOR = {selector_of(sig): sig for sig in PANCAKE_V2_FUNCTIONS}

def default_selector_table() -> Dict[str, str]:
    table = {selector: FOUR_MEME_FUNCTIONS[sig][0] for selector, sig in _FOUR_MEME_BY_SELECTOR.items()}
    table[FOUR_MEME_CREATE_SELECTOR] = "create_token"
    return table

def address_from_word(word_hex: str) -> Optional[str]:
    """Right-aligned 20-byte address from a 32-byte hex word, None when zero or malformed"""
    word = word_hex[2:] if word_hex.startswith("0x") else word_hex
    if len(word) != 64:
        return None
    address = "0x" + word[24:].lower()
    if address == ZERO_ADDRESS:
        return None
    return address

class EventClassifier:
    """
    Turns raw transactions into ClassifiedEvents.

    Only the target contract and the configured secondary routers are decoded;
    everything else is Unknown. Receipts are fetched for token creations, for
    target-contract trades whose token cannot be read from call data, and for
    senders listed in `amount_wallets` (all senders when None): their token
    amounts and their other router calls.
    ChainReadError propagates so the caller can retry the block; any other
    decoding problem degrades to Unknown and is counted.
    """

    def __init__(self,
                 chain_reader,
                 target_contract: str,
                 selectors: Dict[str, str] = None,
                 secondary_routers: Iterable[str] = (),
                 amount_wallets: Optional[Iterable[str]] = None,
                 logger=None):
        self.chain_reader = chain_reader
        self.target_contract = target_contract.lower()
        self.selectors = default_selector_table()
        self.selectors.update({k.lower(): v for k, v in (selectors or {}).items()})
        self.secondary_routers = {router.lower() for router in secondary_routers}
        self.amount_wallets = None if amount_wallets is None else {w.lower() for w in amount_wallets}
        self.logger = logger or logging.getLogger(__name__)

        self.counts: Counter = Counter()
        self.decode_misses: Deque[Tuple[str, str]] = deque(maxlen=1000)
        self.on_decode_miss: Optional[Callable[[str, str], None]] = None

    async def classify(self, tx: RawTransaction, block: Block) -> ClassifiedEvent:
        try:
            to_address = (tx.to_address or "").lower()
            if to_address == self.target_contract:
                event = await self._classify_target_call(tx, block)
            elif to_address in self.secondary_routers:
                event = await self._classify_router_call(tx, block)
            else:
                event = self._event(EventKind.UNKNOWN, tx, block)
        except ChainReadError:
            raise
        except Exception as e:
            self._record_miss(tx.hash, f"decode error: {e}")
            event = self._event(EventKind.UNKNOWN, tx, block)

        self.counts[event.kind.value] += 1
        return event

    async def _classify_target_call(self, tx: RawTransaction, block: Block) -> ClassifiedEvent:
        selector = tx.input[:10].lower()
        operation = self.selectors.get(selector)
        if operation is None:
            return self._event(EventKind.UNKNOWN, tx, block)

        if operation == "create_token":
            receipt = await self.chain_reader.get_transaction_receipt(tx.hash)
            token = self.extract_created_token(receipt)
            if token is None:
                self._record_miss(tx.hash, "token creation without a recoverable token address")
                return self._event(EventKind.UNKNOWN, tx, block)
            self.logger.info(f"Token created: {token} by {tx.from_address} in block {block.number}")
            return self._event(EventKind.TOKEN_CREATED, tx, block, token=token, venue=Venue.ORIGINATING)

        kind = EventKind.BUY if operation == "buy" else EventKind.SELL
        token = self._token_from_four_meme_call(selector, tx.input)
        return await self._trade_event(kind, tx, block, token, Venue.ORIGINATING)

    async def _classify_router_call(self, tx: RawTransaction, block: Block) -> ClassifiedEvent:
        signature = _PANCAKE_BY_SELECTOR.get(tx.input[:10].lower())
        if signature is None:
            # Other router calls are only inferred from receipts for wallets we follow
            if not self._wants_amount(tx.from_address):
                return self._event(EventKind.UNKNOWN, tx, block)
            return await self._trade_event(None, tx, block, None, Venue.SECONDARY_MARKET)

        operation = PANCAKE_V2_FUNCTIONS[signature]
        args = decode(_ARG_TYPES[signature], bytes.fromhex(tx.input[10:]))
        path = next(arg for arg in args if isinstance(arg, (list, tuple)))
        if operation == "buy":
            return await self._trade_event(EventKind.BUY, tx, block, path[-1].lower(), Venue.SECONDARY_MARKET)
        return await self._trade_event(EventKind.SELL, tx, block, path[0].lower(), Venue.SECONDARY_MARKET)

    def _token_from_four_meme_call(self, selector: str, call_data: str) -> Optional[str]:
        signature = _FOUR_MEME_BY_SELECTOR.get(selector)
        if signature is None:
            return None
        _, token_index = FOUR_MEME_FUNCTIONS[signature]
        args = decode(_ARG_TYPES[signature], bytes.fromhex(call_data[10:]))
        token = str(args[token_index]).lower()
        return None if token == ZERO_ADDRESS else token

    async def _trade_event(self, kind: Optional[EventKind], tx: RawTransaction, block: Block,
                           token: Optional[str], venue: Venue) -> ClassifiedEvent:
        """Complete a buy/sell with token amounts, falling back to transfer-log analysis"""
        receipt = None
        if token is None or kind is None:
            receipt = await self.chain_reader.get_transaction_receipt(tx.hash)
            inferred = self.infer_trade_from_transfers(tx, receipt)
            if inferred is None:
                if kind is not None:
                    self._record_miss(tx.hash, f"{kind.value} without a recoverable token address")
                return self._event(EventKind.UNKNOWN, tx, block)
            kind, token = inferred

        token_amount = None
        if self._wants_amount(tx.from_address):
            if receipt is None:
                receipt = await self.chain_reader.get_transaction_receipt(tx.hash)
            token_amount = self.transferred_amount(receipt, token, tx.from_address, incoming=kind == EventKind.BUY)

        return self._event(kind, tx, block, token=token, token_amount=token_amount, venue=venue)

    def _wants_amount(self, sender: Optional[str]) -> bool:
        if not sender:
            return False
        return self.amount_wallets is None or sender.lower() in self.amount_wallets

    def extract_created_token(self, receipt: Receipt) -> Optional[str]:
        """
        Token address of a creation, in order of trust:
        1. TokenCreate log from the target contract, second indexed topic
        2. any target-contract log with a non-zero address in that topic position,
           or in the second then first 32-byte data word
        3. the receipt's contractAddress
        """
        target_logs = [log for log in receipt.logs if log.address.lower() == self.target_contract]

        for log in target_logs:
            if len(log.topics) >= 3 and log.topics[0].lower() == TOKEN_CREATE_TOPIC:
                token = address_from_word(log.topics[2])
                if token:
                    return token

        for log in target_logs:
            if len(log.topics) >= 3:
                token = address_from_word(log.topics[2])
                if token:
                    return token
            data = log.data[2:] if log.data.startswith("0x") else log.data
            for start in (64, 0):
                if len(data) >= start + 64:
                    token = address_from_word(data[start:start + 64])
                    if token:
                        return token

        if receipt.contract_address and receipt.contract_address.lower() != ZERO_ADDRESS:
            return receipt.contract_address.lower()
        return None

    def infer_trade_from_transfers(self, tx: RawTransaction, receipt: Receipt) -> Optional[Tuple[EventKind, str]]:
        """BNB sent and tokens received means buy; tokens sent without BNB means sell"""
        sender = (tx.from_address or "").lower()
        if not sender:
            return None
        for log in receipt.logs:
            if len(log.topics) != 3 or log.topics[0].lower() != TRANSFER_TOPIC:
                continue
            source = address_from_word(log.topics[1])
            destination = address_from_word(log.topics[2])
            if tx.value > 0 and destination == sender:
                return EventKind.BUY, log.address.lower()
            if tx.value == 0 and source == sender:
                return EventKind.SELL, log.address.lower()
        return None

    @staticmethod
    def transferred_amount(receipt: Receipt, token: str, wallet: str, incoming: bool) -> Optional[float]:
        """Whole-token amount of `token` moved to (or from) `wallet`, None without a matching log"""
        wallet = wallet.lower()
        total = 0
        found = False
        for log in receipt.logs:
            if log.address.lower() != token or len(log.topics) != 3 or log.topics[0].lower() != TRANSFER_TOPIC:
                continue
            party = address_from_word(log.topics[2] if incoming else log.topics[1])
            if party == wallet:
                total += int(log.data, 16) if log.data not in ("", "0x") else 0
                found = True
        return total / 10 ** TOKEN_DECIMALS if found else None

    def _record_miss(self, tx_hash: str, reason: str):
        self.counts["decode_miss"] += 1
        self.decode_misses.append((tx_hash, reason))
        self.logger.warning(f"Decode miss for {tx_hash}: {reason}")
        if self.on_decode_miss is not None:
            self.on_decode_miss(tx_hash, reason)

    @staticmethod
    def _event(kind: EventKind, tx: RawTransaction, block: Block, token: str = None,
               token_amount: float = None, venue: Venue = Venue.UNKNOWN) -> ClassifiedEvent:
        return ClassifiedEvent(
            kind=kind,
            block_number=block.number,
            tx_hash=tx.hash,
            from_address=tx.from_address,
            bnb_value=tx.value / 1e18,
            gas_price_gwei=tx.gas_price / 1e9,
            gas_limit=tx.gas,
            timestamp=block.timestamp,
            token_address=token if kind != EventKind.UNKNOWN else None,
            token_amount=token_amount,
            venue=venue if kind != EventKind.UNKNOWN else Venue.UNKNOWN,
        )
