from datetime import datetime, timezone
from typing import Dict, List, Optional
import json
from core.types import Block, LogEntry, RawTransaction, Receipt, TokenInfo
from data.chain_reader import ChainReadError

class ReplayChainReader:
    """
    Chain reader over recorded blocks and receipts, for offline replays and tests.

    Recording layout (JSON):
        {"blocks": [{"number", "timestamp", "transactions": [{"hash", "from", "to",
                     "input", "value", "gas", "gasPrice"}]}],
         "receipts": {tx_hash: {"status", "contractAddress", "logs": [{"address", "topics", "data"}]}},
         "tokenInfo": {token: {"tokenManager", "lastPrice", "offers", "liquidityAdded"}},
         "balances": {"token:wallet": raw_amount},
         "amountsOut": {token: wei_of_wbnb_per_whole_token}}
    """

    def __init__(self):
        self.blocks: Dict[int, Block] = {}
        self.receipts: Dict[str, Receipt] = {}
        self.token_infos: Dict[str, TokenInfo] = {}
        self.balances: Dict[str, int] = {}
        # token -> WBNB wei the router pays for one whole token
        self.amounts_out: Dict[str, int] = {}
        self.head: Optional[int] = None
        # block number -> remaining injected failures
        self.failures: Dict[int, int] = {}
        self.calls: List[str] = []

    @classmethod
    def from_file(cls, path: str) -> "ReplayChainReader":
        with open(path, 'r') as f:
            recording = json.load(f)
        reader = cls()
        for raw_block in recording.get('blocks', []):
            reader.add_block(
                raw_block['number'],
                [_transaction(raw_tx) for raw_tx in raw_block.get('transactions', [])],
                timestamp=datetime.fromtimestamp(int(raw_block.get('timestamp', 0)), tz=timezone.utc),
            )
        for tx_hash, raw_receipt in recording.get('receipts', {}).items():
            reader.add_receipt(Receipt(
                tx_hash=tx_hash.lower(),
                status=int(raw_receipt.get('status', 1)),
                logs=[LogEntry(address=log['address'].lower(), topics=list(log['topics']), data=log.get('data', '0x'))
                      for log in raw_receipt.get('logs', [])],
                contract_address=(raw_receipt.get('contractAddress') or None),
            ))
        for token, raw_info in recording.get('tokenInfo', {}).items():
            reader.token_infos[token.lower()] = TokenInfo(
                token_manager=raw_info['tokenManager'].lower(),
                last_price_wei=int(raw_info['lastPrice']),
                offers=int(raw_info.get('offers', 0)),
                liquidity_added=bool(raw_info.get('liquidityAdded', False)),
            )
        for key, amount in recording.get('balances', {}).items():
            reader.balances[key.lower()] = int(amount)
        for token, amount in recording.get('amountsOut', {}).items():
            reader.amounts_out[token.lower()] = int(amount)
        return reader

    def add_block(self, number: int, transactions: List[RawTransaction], timestamp: datetime = None) -> Block:
        block = Block(number=number,
                      timestamp=timestamp or datetime.now(timezone.utc),
                      transactions=list(transactions))
        self.blocks[number] = block
        return block

    def add_receipt(self, receipt: Receipt):
        self.receipts[receipt.tx_hash.lower()] = receipt

    def set_balance(self, token_address: str, wallet_address: str, amount: int):
        self.balances[f"{token_address}:{wallet_address}".lower()] = amount

    def fail_block(self, number: int, times: int = 1):
        """Make the next `times` fetches of a block raise ChainReadError"""
        self.failures[number] = times

    async def latest_block_number(self) -> int:
        self.calls.append("latest_block_number")
        if self.head is not None:
            return self.head
        return max(self.blocks) if self.blocks else 0

    async def get_block(self, number: int) -> Block:
        self.calls.append(f"get_block:{number}")
        if self.failures.get(number, 0) > 0:
            self.failures[number] -= 1
            raise ChainReadError(f"injected failure for block {number}")
        if number not in self.blocks:
            # Empty block heights are allowed in recordings
            return Block(number=number, timestamp=datetime.now(timezone.utc), transactions=[])
        return self.blocks[number]

    async def get_transaction_receipt(self, tx_hash: str) -> Receipt:
        self.calls.append(f"get_transaction_receipt:{tx_hash}")
        receipt = self.receipts.get(tx_hash.lower())
        if receipt is None:
            return Receipt(tx_hash=tx_hash, status=1, logs=[])
        return receipt

    async def get_token_info(self, token_address: str) -> TokenInfo:
        info = self.token_infos.get(token_address.lower())
        if info is None:
            raise ChainReadError(f"no recorded token info for {token_address}")
        return info

    async def get_token_balance(self, token_address: str, wallet_address: str) -> int:
        key = f"{token_address}:{wallet_address}".lower()
        if key not in self.balances:
            raise ChainReadError(f"no recorded balance for {key}")
        return self.balances[key]

    async def get_amount_out(self, amount_in: int, path: List[str]) -> Optional[int]:
        self.calls.append(f"get_amount_out:{path[0].lower()}")
        per_token = self.amounts_out.get(path[0].lower())
        if not per_token:
            return None
        return amount_in * per_token // 10 ** 18

    async def close(self):
        pass

def _transaction(raw: dict) -> RawTransaction:
    return RawTransaction(
        hash=raw['hash'].lower(),
        from_address=(raw.get('from') or '').lower() or None,
        to_address=(raw.get('to') or '').lower() or None,
        input=raw.get('input', '0x'),
        value=int(raw.get('value', 0)),
        gas=int(raw.get('gas', 0)),
        gas_price=int(raw.get('gasPrice', 0)),
    )
