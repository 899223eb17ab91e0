# statcache/models.py

"""
Value types shared by the cache, the timeout evaluator and the poll driver.

- FlowStat / PortStat are immutable snapshots of switch counters. A poll cycle
  replaces them wholesale, they are never updated in place.
- FlowRule is a flow-mod as registered by the policy layer (only the fields the
  cache needs).
- FlowTimeout is the mutable lifecycle record of one registered rule: the
  evaluator refreshes it every cycle and the cache removes it once expired.

Every type converts to/from plain dicts for the persisted cache image.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple

from statcache.flow_utils import MatchKey, match_key


@dataclass(frozen=True)
class FlowStat:
    match: MatchKey
    table_id: int = 0
    priority: int = 0
    cookie: int = 0
    packet_count: int = 0
    byte_count: int = 0
    duration_sec: int = 0
    idle_timeout: int = 0
    hard_timeout: int = 0

    @classmethod
    def from_ofp(cls, stat) -> "FlowStat":
        """Build from a Ryu OFPFlowStats body entry."""
        return cls(
            match=match_key(stat.match),
            table_id=int(stat.table_id),
            priority=int(stat.priority),
            cookie=int(stat.cookie),
            packet_count=int(stat.packet_count),
            byte_count=int(stat.byte_count),
            duration_sec=int(stat.duration_sec),
            idle_timeout=int(stat.idle_timeout),
            hard_timeout=int(stat.hard_timeout),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match": [list(p) for p in self.match],
            "table_id": self.table_id,
            "priority": self.priority,
            "cookie": self.cookie,
            "packet_count": self.packet_count,
            "byte_count": self.byte_count,
            "duration_sec": self.duration_sec,
            "idle_timeout": self.idle_timeout,
            "hard_timeout": self.hard_timeout,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FlowStat":
        kwargs = dict(d)
        kwargs["match"] = match_key(d.get("match", []))
        return cls(**kwargs)


@dataclass(frozen=True)
class PortStat:
    port_no: int
    rx_packets: int = 0
    tx_packets: int = 0
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_dropped: int = 0
    tx_dropped: int = 0
    rx_errors: int = 0
    tx_errors: int = 0
    duration_sec: int = 0

    @classmethod
    def from_ofp(cls, stat) -> "PortStat":
        """Build from a Ryu OFPPortStats body entry."""
        return cls(
            port_no=int(stat.port_no),
            rx_packets=int(stat.rx_packets),
            tx_packets=int(stat.tx_packets),
            rx_bytes=int(stat.rx_bytes),
            tx_bytes=int(stat.tx_bytes),
            rx_dropped=int(stat.rx_dropped),
            tx_dropped=int(stat.tx_dropped),
            rx_errors=int(stat.rx_errors),
            tx_errors=int(stat.tx_errors),
            duration_sec=int(stat.duration_sec),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PortStat":
        return cls(**d)


@dataclass(frozen=True)
class FlowRule:
    match: MatchKey
    priority: int = 0
    cookie: int = 0
    idle_timeout: int = 0
    hard_timeout: int = 0
    table_id: int = 0

    @classmethod
    def from_flow_mod(cls, mod) -> "FlowRule":
        """Build from a Ryu OFPFlowMod (or any object with the same attributes)."""
        return cls(
            match=match_key(mod.match),
            priority=int(getattr(mod, "priority", 0)),
            cookie=int(getattr(mod, "cookie", 0)),
            idle_timeout=int(getattr(mod, "idle_timeout", 0)),
            hard_timeout=int(getattr(mod, "hard_timeout", 0)),
            table_id=int(getattr(mod, "table_id", 0)),
        )

    @classmethod
    def coerce(cls, rule) -> "FlowRule":
        if isinstance(rule, cls):
            return rule
        return cls.from_flow_mod(rule)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match": [list(p) for p in self.match],
            "priority": self.priority,
            "cookie": self.cookie,
            "idle_timeout": self.idle_timeout,
            "hard_timeout": self.hard_timeout,
            "table_id": self.table_id,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FlowRule":
        kwargs = dict(d)
        kwargs["match"] = match_key(d.get("match", []))
        return cls(**kwargs)


@dataclass
class FlowTimeout:
    """
    Lifecycle record of a registered rule.

    hard=True : expires once now - installed_at >= timeout, whatever the counters do.
    hard=False: expires once now - last_used >= timeout; last_used moves forward
                every time the observed packet count changes.

    `missing` is set by the evaluator when none of the tracked flows shows up in
    the latest snapshot; the cache then drops the record on the next sweep.
    """

    slice_name: str
    rule: FlowRule
    hard: bool
    timeout: float
    related: Tuple[FlowRule, ...] = ()
    packet_count: int = 0
    installed_at: float = field(default_factory=time.time)
    last_used: Optional[float] = None
    missing: bool = False

    def __post_init__(self):
        assert self.timeout > 0, f"FlowTimeout: timeout must be > 0, got {self.timeout}"
        if not self.related:
            self.related = (self.rule,)
        if self.last_used is None:
            self.last_used = self.installed_at

    @property
    def key(self):
        return (self.slice_name, self.rule.match, self.rule.priority, self.hard)

    @property
    def rule_key(self):
        return (self.slice_name, self.rule.match, self.rule.priority)

    def matches(self) -> FrozenSet[MatchKey]:
        return frozenset(r.match for r in self.related)

    def update_last_used(self, now: Optional[float] = None):
        self.last_used = time.time() if now is None else float(now)

    def is_expired(self, now: float) -> bool:
        if self.hard:
            return now - self.installed_at >= self.timeout
        return self.missing or now - self.last_used >= self.timeout

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slice": self.slice_name,
            "rule": self.rule.to_dict(),
            "related": [r.to_dict() for r in self.related],
            "hard": self.hard,
            "timeout": self.timeout,
            "packet_count": self.packet_count,
            "installed_at": self.installed_at,
            "last_used": self.last_used,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FlowTimeout":
        return cls(
            slice_name=str(d["slice"]),
            rule=FlowRule.from_dict(d["rule"]),
            hard=bool(d["hard"]),
            timeout=float(d["timeout"]),
            related=tuple(FlowRule.from_dict(r) for r in d.get("related", [])),
            packet_count=int(d.get("packet_count", 0)),
            installed_at=float(d["installed_at"]),
            last_used=None if d.get("last_used") is None else float(d["last_used"]),
        )
