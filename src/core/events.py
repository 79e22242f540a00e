from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

class NotificationKind(Enum):
    PATTERN_MATCHED = "pattern_matched"
    PATTERN_UNMATCHED = "pattern_unmatched"
    COPY_SIGNAL = "copy_signal"
    TRADE_EXECUTED = "trade_executed"
    TRADE_FAILED = "trade_failed"
    TRADE_BLOCKED = "trade_blocked"
    TRIGGER_FIRED = "trigger_fired"
    POSITION_OPENED = "position_opened"
    POSITION_CLOSED = "position_closed"
    DECODE_MISS = "decode_miss"
    SCANNER_HALTED = "scanner_halted"

@dataclass
class Notification:
    """One decision record handed to the notification sinks"""
    kind: NotificationKind
    timestamp: datetime
    message: str
    token_address: Optional[str] = None
    details: Dict = field(default_factory=dict)

    def __str__(self) -> str:
        token = f" token={self.token_address}" if self.token_address else ""
        return f"[{self.kind.value}]{token} {self.message}"
