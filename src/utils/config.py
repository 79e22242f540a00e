from dataclasses import dataclass, field, fields
from typing import Dict, Any, List, Optional
import json
import os
import re
import yaml
from dotenv import load_dotenv
from core.types import Pattern
from data.four_meme import FOUR_MEME_CREATE_SELECTOR, WBNB

FOUR_MEME_TOKEN_MANAGER_V2 = "0x5c952063c7fc8610FFDB798152D69F0B9550762b"
FOUR_MEME_TOKEN_MANAGER_HELPER = "0xF251F83e40a78868FcfA3FA4599Dad6494E46034"
PANCAKESWAP_V2_ROUTER = "0x10ED43C718714eb63d5aA57B78B54704E256024E"

SELECTOR_OPERATIONS = ("create_token", "buy", "sell")
_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_SELECTOR_RE = re.compile(r"^0x[0-9a-fA-F]{8}$")

class ConfigError(Exception):
    """Invalid configuration, fatal at startup"""

@dataclass
class ChainConfig:
    rpc_url: str = "https://bsc-dataseed.binance.org/"
    token_manager_helper: str = FOUR_MEME_TOKEN_MANAGER_HELPER
    price_router: str = PANCAKESWAP_V2_ROUTER  # getAmountsOut for migrated tokens
    wbnb: str = WBNB
    request_timeout_seconds: float = 10.0
    max_retries: int = 3                  # Attempts per RPC call before ChainReadError
    base_delay_seconds: float = 0.5       # First backoff delay, doubled per attempt
    max_delay_seconds: float = 8.0

@dataclass
class ScannerConfig:
    target_contract: str = FOUR_MEME_TOKEN_MANAGER_V2
    secondary_routers: List[str] = field(default_factory=lambda: [PANCAKESWAP_V2_ROUTER])
    selectors: Dict[str, str] = field(default_factory=lambda: {FOUR_MEME_CREATE_SELECTOR: "create_token"})
    scan_interval_seconds: float = 3.0
    max_retries: int = 5                  # Consecutive failed cycles before the scanner halts
    lookback_blocks: int = 0              # Blocks behind head to start from
    max_blocks_per_cycle: int = 50
    patterns_path: str = "patterns.json"
    pattern_trading_enabled: bool = True

@dataclass
class SafetyConfig:
    max_trades_per_hour: int = 10
    max_trades_per_day: int = 50
    emergency_stop: bool = False

@dataclass
class PriceTrackingConfig:
    enabled: bool = True
    sell_at_partial: bool = True
    sell_at_full: bool = True
    partial_threshold_pct: float = 10.0
    partial_window_seconds: float = 10.0
    partial_sell_pct: float = 50.0
    full_threshold_pct: float = 50.0
    full_window_seconds: float = 20.0
    update_interval_seconds: float = 2.0
    oracle_timeout_seconds: float = 5.0
    dust_balance_raw: int = 0             # Balance at or below this counts as sold

@dataclass
class CopyTradingConfig:
    enabled: bool = False
    tracked_wallets: List[str] = field(default_factory=list)
    copy_ratio: float = 1.0
    min_position_size: float = 0.001      # BNB
    max_position_size: float = 0.1        # BNB
    allowed_tokens: List[str] = field(default_factory=list)
    blocked_tokens: List[str] = field(default_factory=list)
    require_pattern_match: bool = False

@dataclass
class TradingConfig:
    owner_id: str = "default"
    wallet_address: Optional[str] = None
    dry_run: bool = True
    bnb_price_usd: float = 600.0

@dataclass
class NotificationsConfig:
    journal_path: str = "data/trades/trades.csv"
    timeout_seconds: float = 5.0

_SECTIONS = {
    'chain': ChainConfig,
    'scanner': ScannerConfig,
    'safety': SafetyConfig,
    'price_tracking': PriceTrackingConfig,
    'copy_trading': CopyTradingConfig,
    'trading': TradingConfig,
    'notifications': NotificationsConfig,
}

class Config:
    def __init__(self, config_path: Optional[str] = None, load_env: bool = True):
        self.chain = ChainConfig()
        self.scanner = ScannerConfig()
        self.safety = SafetyConfig()
        self.price_tracking = PriceTrackingConfig()
        self.copy_trading = CopyTradingConfig()
        self.trading = TradingConfig()
        self.notifications = NotificationsConfig()

        if load_env:
            load_dotenv()
            config_path = config_path or os.getenv('TRADER_CONFIG')
        config_path = config_path or "config.yaml"

        if os.path.exists(config_path):
            self.load_config(config_path)
        if load_env:
            self.apply_environment()
        self.validate()

    @classmethod
    def from_dict(cls, config_data: Dict[str, Any]) -> "Config":
        """Build a validated config without touching the filesystem or environment"""
        config = cls.__new__(cls)
        for name, section in _SECTIONS.items():
            setattr(config, name, section())
        config._apply(config_data)
        config.validate()
        return config

    def load_config(self, config_path: str):
        """Load configuration from YAML file"""
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ConfigError(f"{config_path}: top level must be a mapping")
        self._apply(config_data)

    def _apply(self, config_data: Dict[str, Any]):
        unknown = set(config_data) - set(_SECTIONS)
        if unknown:
            raise ConfigError(f"Unknown config sections: {sorted(unknown)}")
        for name, section in _SECTIONS.items():
            if name not in config_data:
                continue
            values = config_data[name] or {}
            allowed = {f.name for f in fields(section)}
            unknown_keys = set(values) - allowed
            if unknown_keys:
                raise ConfigError(f"Unknown keys in '{name}': {sorted(unknown_keys)}")
            setattr(self, name, section(**values))

    def apply_environment(self):
        """Environment wins over the YAML file for endpoints and wallet"""
        rpc_url = os.getenv('BSC_RPC_URL')
        if rpc_url:
            self.chain.rpc_url = rpc_url
        wallet = os.getenv('TRADER_WALLET_ADDRESS')
        if wallet:
            self.trading.wallet_address = wallet

    def validate(self):
        """Reject non-positive intervals, inverted ranges and malformed addresses"""
        _positive('chain.request_timeout_seconds', self.chain.request_timeout_seconds)
        _positive('chain.max_retries', self.chain.max_retries)
        _positive('chain.base_delay_seconds', self.chain.base_delay_seconds)
        _positive('chain.max_delay_seconds', self.chain.max_delay_seconds)
        _address('chain.token_manager_helper', self.chain.token_manager_helper)
        _address('chain.price_router', self.chain.price_router)
        _address('chain.wbnb', self.chain.wbnb)

        _address('scanner.target_contract', self.scanner.target_contract)
        for router in self.scanner.secondary_routers:
            _address('scanner.secondary_routers', router)
        for selector, operation in self.scanner.selectors.items():
            if not _SELECTOR_RE.match(str(selector)):
                raise ConfigError(f"scanner.selectors: '{selector}' is not a 4-byte hex selector")
            if operation not in SELECTOR_OPERATIONS:
                raise ConfigError(f"scanner.selectors: unknown operation '{operation}'")
        _positive('scanner.scan_interval_seconds', self.scanner.scan_interval_seconds)
        _positive('scanner.max_retries', self.scanner.max_retries)
        _positive('scanner.max_blocks_per_cycle', self.scanner.max_blocks_per_cycle)
        if self.scanner.lookback_blocks < 0:
            raise ConfigError("scanner.lookback_blocks must be >= 0")

        _positive('safety.max_trades_per_hour', self.safety.max_trades_per_hour)
        _positive('safety.max_trades_per_day', self.safety.max_trades_per_day)

        pt = self.price_tracking
        _positive('price_tracking.partial_threshold_pct', pt.partial_threshold_pct)
        _positive('price_tracking.partial_window_seconds', pt.partial_window_seconds)
        _positive('price_tracking.full_threshold_pct', pt.full_threshold_pct)
        _positive('price_tracking.full_window_seconds', pt.full_window_seconds)
        _positive('price_tracking.update_interval_seconds', pt.update_interval_seconds)
        _positive('price_tracking.oracle_timeout_seconds', pt.oracle_timeout_seconds)
        if not 0 < pt.partial_sell_pct < 100:
            raise ConfigError("price_tracking.partial_sell_pct must be in (0, 100)")
        if pt.dust_balance_raw < 0:
            raise ConfigError("price_tracking.dust_balance_raw must be >= 0")

        ct = self.copy_trading
        if not 0 < ct.copy_ratio <= 1:
            raise ConfigError("copy_trading.copy_ratio must be in (0, 1]")
        _range('copy_trading position size', ct.min_position_size, ct.max_position_size)
        _positive('copy_trading.max_position_size', ct.max_position_size)
        for wallet in ct.tracked_wallets:
            _address('copy_trading.tracked_wallets', wallet)
        for token in ct.allowed_tokens + ct.blocked_tokens:
            _address('copy_trading token lists', token)

        if self.trading.wallet_address:
            _address('trading.wallet_address', self.trading.wallet_address)
        _positive('trading.bnb_price_usd', self.trading.bnb_price_usd)
        _positive('notifications.timeout_seconds', self.notifications.timeout_seconds)

def _positive(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{name} must be a positive number, got {value!r}")

def _range(name: str, low, high) -> None:
    if low > high:
        raise ConfigError(f"{name}: min {low} is greater than max {high}")

def _address(name: str, value) -> None:
    if not isinstance(value, str) or not _ADDRESS_RE.match(value):
        raise ConfigError(f"{name}: '{value}' is not a 20-byte hex address")

def validate_pattern(pattern: Pattern) -> None:
    label = f"pattern '{pattern.id}'"
    if pattern.gas_price_range.unit not in ("gwei", "wei"):
        raise ConfigError(f"{label}: gas price unit must be gwei or wei")
    _range(f"{label} gas price", pattern.gas_price_range.min, pattern.gas_price_range.max)
    _range(f"{label} gas limit", pattern.gas_limit_range.min, pattern.gas_limit_range.max)
    _range(f"{label} transaction value", pattern.value_filter.min_tx_value, pattern.value_filter.max_tx_value)
    if pattern.gas_price_range.min < 0 or pattern.gas_limit_range.min < 0 or pattern.value_filter.min_tx_value < 0:
        raise ConfigError(f"{label}: ranges must not be negative")
    _positive(f"{label} buyAmount", pattern.trading_params.buy_amount)
    if pattern.trading_params.hold_seconds < 0:
        raise ConfigError(f"{label}: holdTimeSeconds must be >= 0")
    if pattern.value_filter.required_confirmations < 0:
        raise ConfigError(f"{label}: requiredConfirmations must be >= 0")

def parse_patterns(raw: Any) -> List[Pattern]:
    """Validate a decoded patterns.json document, keeping declaration order"""
    entries = raw.get('patterns', raw) if isinstance(raw, dict) else raw
    if not isinstance(entries, list):
        raise ConfigError("patterns file must hold a list of patterns")

    patterns: List[Pattern] = []
    seen = set()
    for entry in entries:
        try:
            pattern = Pattern.from_dict(entry)
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Malformed pattern {entry.get('id', '?') if isinstance(entry, dict) else entry!r}: {e}")
        if pattern.id in seen:
            raise ConfigError(f"Duplicate pattern id '{pattern.id}'")
        validate_pattern(pattern)
        seen.add(pattern.id)
        patterns.append(pattern)
    return patterns

def load_patterns(path: str) -> List[Pattern]:
    """Load and validate patterns from a JSON file"""
    try:
        with open(path, 'r') as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Cannot read patterns from {path}: {e}")
    return parse_patterns(raw)

def save_patterns(path: str, patterns: List[Pattern]) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f"{path}.tmp"
    with open(tmp_path, 'w') as f:
        json.dump({'patterns': [p.to_dict() for p in patterns]}, f, indent=2)
    os.replace(tmp_path, path)
