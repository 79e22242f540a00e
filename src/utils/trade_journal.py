from datetime import datetime
from typing import Dict
import os
import pandas as pd
from core.events import Notification, NotificationKind

COLUMNS = [
    'timestamp', 'outcome', 'side', 'token_address', 'owner_id', 'source', 'pattern_id',
    'bnb_amount', 'percentage', 'token_amount', 'price_bnb', 'tx_hash', 'source_tx_hash', 'reason',
]

_OUTCOMES = {
    NotificationKind.TRADE_EXECUTED: 'executed',
    NotificationKind.TRADE_FAILED: 'failed',
    NotificationKind.TRADE_BLOCKED: 'blocked',
}

class TradeJournal:
    """CSV record of every trade attempt: executed, failed or blocked"""

    def __init__(self, csv_path: str, timestamped: bool = True):
        if timestamped:
            base_dir = os.path.dirname(csv_path)
            name, ext = os.path.splitext(os.path.basename(csv_path))
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            csv_path = os.path.join(base_dir, f"{name}_{timestamp}{ext}")
        self.csv_path = csv_path
        self._initialize_csv()

    def _initialize_csv(self):
        """Create CSV with headers if it doesn't exist"""
        if not os.path.exists(self.csv_path):
            directory = os.path.dirname(self.csv_path)
            if directory:
                os.makedirs(directory, exist_ok=True)
            pd.DataFrame(columns=COLUMNS).to_csv(self.csv_path, index=False)

    async def send(self, notification: Notification):
        outcome = _OUTCOMES.get(notification.kind)
        if outcome is None:
            return
        self.record(outcome, notification)

    def record(self, outcome: str, notification: Notification):
        details = notification.details
        row = {column: details.get(column) for column in COLUMNS}
        row.update({
            'timestamp': notification.timestamp.isoformat(),
            'outcome': outcome,
            'token_address': notification.token_address,
            'reason': details.get('reason') or notification.message,
        })
        pd.DataFrame([row], columns=COLUMNS).to_csv(self.csv_path, mode='a', header=False, index=False)

    def load(self) -> pd.DataFrame:
        return pd.read_csv(self.csv_path)

    def summary(self) -> Dict:
        trades = self.load()
        if trades.empty:
            return {'attempts': 0}
        executed = trades[trades['outcome'] == 'executed']
        return {
            'attempts': len(trades),
            'executed': len(executed),
            'failed': int((trades['outcome'] == 'failed').sum()),
            'blocked': int((trades['outcome'] == 'blocked').sum()),
            'buys': int((executed['side'] == 'buy').sum()),
            'sells': int((executed['side'] == 'sell').sum()),
            'bnb_spent': float(executed.loc[executed['side'] == 'buy', 'bnb_amount'].fillna(0).sum()),
        }
