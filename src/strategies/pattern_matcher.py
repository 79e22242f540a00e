from collections import Counter
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Tuple
import logging
import os
from core.types import ClassifiedEvent, MatchResult, Pattern
from utils.config import ConfigError, load_patterns, parse_patterns, save_patterns, validate_pattern

@dataclass
class PatternStats:
    matches: int = 0
    trades: int = 0
    profit_bnb: float = 0.0

def gas_price_in_range(event: ClassifiedEvent, pattern: Pattern) -> bool:
    return pattern.gas_price_range.min_gwei <= event.gas_price_gwei <= pattern.gas_price_range.max_gwei

def gas_limit_in_range(event: ClassifiedEvent, pattern: Pattern) -> bool:
    return pattern.gas_limit_range.min <= event.gas_limit <= pattern.gas_limit_range.max

def value_in_range(event: ClassifiedEvent, pattern: Pattern) -> bool:
    return pattern.value_filter.min_tx_value <= event.bnb_value <= pattern.value_filter.max_tx_value

def confidence(event: ClassifiedEvent, pattern: Pattern) -> float:
    """1.0 when every bound holds, otherwise 0.0. There is no partial credit."""
    if gas_price_in_range(event, pattern) and gas_limit_in_range(event, pattern) and value_in_range(event, pattern):
        return 1.0
    return 0.0

def first_failing_constraint(event: ClassifiedEvent, pattern: Pattern) -> Optional[str]:
    """Reason for the first violated bound, checked gas price, gas limit, then value"""
    if not gas_price_in_range(event, pattern):
        return (f"gas price outside range: {event.gas_price_gwei} gwei not in "
                f"[{pattern.gas_price_range.min_gwei}, {pattern.gas_price_range.max_gwei}]")
    if not gas_limit_in_range(event, pattern):
        return (f"gas limit outside range: {event.gas_limit} not in "
                f"[{pattern.gas_limit_range.min}, {pattern.gas_limit_range.max}]")
    if not value_in_range(event, pattern):
        return (f"transaction value outside range: {event.bnb_value} BNB not in "
                f"[{pattern.value_filter.min_tx_value}, {pattern.value_filter.max_tx_value}]")
    return None

def pattern_analysis(event: ClassifiedEvent, pattern: Pattern) -> Dict:
    return {
        'pattern_id': pattern.id,
        'gas_price_match': gas_price_in_range(event, pattern),
        'gas_limit_match': gas_limit_in_range(event, pattern),
        'value_match': value_in_range(event, pattern),
        'gas_price_range': [pattern.gas_price_range.min_gwei, pattern.gas_price_range.max_gwei],
        'gas_limit_range': [pattern.gas_limit_range.min, pattern.gas_limit_range.max],
        'value_range': [pattern.value_filter.min_tx_value, pattern.value_filter.max_tx_value],
    }

class PatternMatcher:
    """
    Binary matcher over an ordered pattern list.

    The list is replaced as a whole on reload, so a match in progress always
    sees one consistent snapshot.
    """

    def __init__(self, patterns: List[Pattern] = None, patterns_path: str = None, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.patterns_path = patterns_path
        self._mtime: Optional[float] = None
        self._patterns: Tuple[Pattern, ...] = ()
        self.stats: Dict[str, PatternStats] = {}
        self.unmatched_reasons: Counter = Counter()

        if patterns is not None:
            self._install(list(patterns))
        elif patterns_path:
            self._install(load_patterns(patterns_path))
            self._mtime = os.path.getmtime(patterns_path)

    @property
    def patterns(self) -> Tuple[Pattern, ...]:
        return self._patterns

    def active_patterns(self) -> List[Pattern]:
        """Enabled patterns by ascending priority, declaration order breaking ties"""
        ordered = sorted(enumerate(self._patterns), key=lambda item: (item[1].priority, item[0]))
        return [pattern for _, pattern in ordered if pattern.enabled]

    def match(self, event: ClassifiedEvent) -> Optional[MatchResult]:
        patterns = self.active_patterns()
        for pattern in patterns:
            if confidence(event, pattern) == 1.0:
                self.stats.setdefault(pattern.id, PatternStats()).matches += 1
                self.logger.info(f"Pattern '{pattern.name}' matched {event.tx_hash}: "
                                 f"gas={event.gas_price_gwei} gwei, limit={event.gas_limit}, value={event.bnb_value} BNB")
                return MatchResult(pattern=pattern, confidence=1.0, event=event)
        return None

    def unmatched_reason(self, event: ClassifiedEvent) -> Tuple[str, Dict]:
        """Reason and per-constraint analysis against the first active pattern"""
        patterns = self.active_patterns()
        if not patterns:
            reason, analysis = "no enabled patterns", {}
        else:
            reason = first_failing_constraint(event, patterns[0]) or "no patterns matched"
            analysis = pattern_analysis(event, patterns[0])
        self.unmatched_reasons[reason.split(":")[0]] += 1
        self.logger.debug(f"Unmatched pattern for {event.tx_hash}: {reason}")
        return reason, analysis

    def record_trade(self, pattern_id: str, profit_bnb: float = 0.0):
        stats = self.stats.setdefault(pattern_id, PatternStats())
        stats.trades += 1
        stats.profit_bnb += profit_bnb

    def pattern_performance(self) -> List[Dict]:
        performance = []
        for pattern in self._patterns:
            stats = self.stats.get(pattern.id, PatternStats())
            performance.append({
                'pattern_id': pattern.id,
                'name': pattern.name,
                'enabled': pattern.enabled,
                'matches': stats.matches,
                'trades': stats.trades,
                'success_rate': (stats.trades / stats.matches * 100) if stats.matches else 0.0,
                'avg_profit_bnb': (stats.profit_bnb / stats.trades) if stats.trades else 0.0,
            })
        return performance

    def reset_stats(self):
        self.stats = {pattern.id: PatternStats() for pattern in self._patterns}
        self.unmatched_reasons.clear()

    # Pattern management

    def reload_if_changed(self) -> bool:
        """Swap in the pattern file when its mtime moved; an invalid file keeps the current list"""
        if not self.patterns_path or not os.path.exists(self.patterns_path):
            return False
        mtime = os.path.getmtime(self.patterns_path)
        if mtime == self._mtime:
            return False
        try:
            patterns = load_patterns(self.patterns_path)
        except ConfigError as e:
            self.logger.error(f"Pattern reload rejected, keeping {len(self._patterns)} patterns: {e}")
            self._mtime = mtime
            return False
        self._install(patterns)
        self._mtime = mtime
        self.logger.info(f"Reloaded {len(patterns)} patterns from {self.patterns_path}")
        return True

    def add_pattern(self, pattern: Pattern):
        if any(p.id == pattern.id for p in self._patterns):
            raise ConfigError(f"Pattern '{pattern.id}' already exists")
        validate_pattern(pattern)
        self._install(list(self._patterns) + [pattern])

    def update_pattern(self, pattern_id: str, changes: Dict) -> Pattern:
        """Apply patterns.json-shaped changes to one pattern"""
        current = self.get_pattern(pattern_id)
        raw = current.to_dict()
        for key, value in changes.items():
            if isinstance(value, dict) and isinstance(raw.get(key), dict):
                raw[key] = {**raw[key], **value}
            else:
                raw[key] = value
        raw['id'] = pattern_id
        updated = parse_patterns([raw])[0]
        self._install([updated if p.id == pattern_id else p for p in self._patterns])
        return updated

    def remove_pattern(self, pattern_id: str):
        self.get_pattern(pattern_id)
        self._install([p for p in self._patterns if p.id != pattern_id])
        self.stats.pop(pattern_id, None)

    def set_enabled(self, pattern_id: str, enabled: bool):
        current = self.get_pattern(pattern_id)
        self._install([replace(current, enabled=enabled) if p.id == pattern_id else p for p in self._patterns])

    def get_pattern(self, pattern_id: str) -> Pattern:
        for pattern in self._patterns:
            if pattern.id == pattern_id:
                return pattern
        raise KeyError(pattern_id)

    def save(self, path: str = None):
        target = path or self.patterns_path
        if not target:
            raise ConfigError("No patterns path to save to")
        save_patterns(target, list(self._patterns))
        if target == self.patterns_path:
            self._mtime = os.path.getmtime(target)

    def _install(self, patterns: List[Pattern]):
        self._patterns = tuple(patterns)
        for pattern in self._patterns:
            self.stats.setdefault(pattern.id, PatternStats())
