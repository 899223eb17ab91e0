# statcache/stat_cache.py

"""
FlowStatCache: per-switch store of the latest flow/port snapshots plus the
policy state needed to attribute and expire flows.

Per switch we keep:
  - flows    : latest FlowStat list (telemetry, replaced wholesale every cycle)
  - ports    : latest port_no -> PortStat map (telemetry)
  - timeouts : FlowTimeout records of registered rules (policy state)
  - rules    : slice ownership of registered rules, i.e. the slice flow index (policy state)

A failed poll clears telemetry only; policy state survives until the rule is
explicitly removed or expires.

Locking:
  - the top-level map lock is held only to create or list entries,
  - every SwitchEntry has its own RLock guarding all of its fields,
so registration calls for one switch never wait on a poll of another.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union

from statcache.flow_utils import MatchKey, match_key
from statcache.models import FlowRule, FlowStat, FlowTimeout, PortStat

ExpireListener = Callable[[int, FlowTimeout], None]
RuleKey = Tuple[str, MatchKey, int]


class SwitchEntry:
    def __init__(self, dpid: int):
        self.dpid = dpid
        self.lock = threading.RLock()

        self.flows: List[FlowStat] = []
        self.ports: Dict[int, PortStat] = {}
        self.polled_at: Optional[float] = None

        self.timeouts: Dict[tuple, FlowTimeout] = {}
        self.rules: Dict[RuleKey, Tuple[FlowRule, ...]] = {}
        self.slice_index: Dict[str, Set[MatchKey]] = {}

    def reindex(self, slice_name: str):
        owned = set()
        for (name, _match, _prio), related in self.rules.items():
            if name == slice_name:
                owned.update(r.match for r in related)
        if owned:
            self.slice_index[slice_name] = owned
        else:
            self.slice_index.pop(slice_name, None)

    def drop_rule(self, rule_key: RuleKey) -> List[FlowTimeout]:
        removed = [t for t in self.timeouts.values() if t.rule_key == rule_key]
        for t in removed:
            del self.timeouts[t.key]
        if self.rules.pop(rule_key, None) is not None or removed:
            self.reindex(rule_key[0])
        return removed


class FlowStatCache:
    def __init__(
        self,
        expire_listener: Optional[ExpireListener] = None,
        clock: Callable[[], float] = time.time,
        logger=None,
    ):
        self.expire_listener = expire_listener
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._switches: Dict[int, SwitchEntry] = {}

    # ------------------------------------------------------------------
    # Entry management
    # ------------------------------------------------------------------
    def _entry(self, dpid: int) -> SwitchEntry:
        with self._lock:
            entry = self._switches.get(dpid)
            if entry is None:
                entry = SwitchEntry(dpid)
                self._switches[dpid] = entry
            return entry

    def _peek(self, dpid: int) -> Optional[SwitchEntry]:
        with self._lock:
            return self._switches.get(dpid)

    def switch_lock(self, dpid: int):
        """The switch's own lock, for callers that update its records in place."""
        return self._entry(dpid).lock

    def switches(self) -> List[int]:
        with self._lock:
            return sorted(self._switches.keys())

    # ------------------------------------------------------------------
    # Telemetry snapshots
    # ------------------------------------------------------------------
    def set_flow_cache(self, dpid: int, flow_stats: Iterable[FlowStat], polled_at: Optional[float] = None):
        flows = list(flow_stats)
        entry = self._entry(dpid)
        with entry.lock:
            entry.flows = flows
            entry.polled_at = self.clock() if polled_at is None else float(polled_at)

    def set_port_cache(self, dpid: int, port_stats: Union[Mapping[int, PortStat], Iterable[PortStat]]):
        if isinstance(port_stats, Mapping):
            ports = {int(k): v for k, v in port_stats.items()}
        else:
            ports = {p.port_no: p for p in port_stats}
        entry = self._entry(dpid)
        with entry.lock:
            entry.ports = ports

    def clear_flow_cache(self, dpid: int):
        """Drop flow and port snapshots; timeouts and slice ownership are kept."""
        entry = self._peek(dpid)
        if entry is None:
            return
        with entry.lock:
            entry.flows = []
            entry.ports = {}

    def get_switch_flow_stats(self, dpid: int) -> List[FlowStat]:
        entry = self._peek(dpid)
        if entry is None:
            return []
        with entry.lock:
            return list(entry.flows)

    def get_port_stats(self, dpid: int, port_no: Optional[int] = None):
        """
        Without port_no: a copy of the port_no -> PortStat map ({} if unknown).
        With port_no: that port's PortStat, or None.
        """
        entry = self._peek(dpid)
        if entry is None:
            return {} if port_no is None else None
        with entry.lock:
            if port_no is None:
                return dict(entry.ports)
            return entry.ports.get(int(port_no))

    def get_sliced_flow_stats(self, dpid: int, slice_name: str) -> List[FlowStat]:
        entry = self._peek(dpid)
        if entry is None:
            return []
        with entry.lock:
            owned = entry.slice_index.get(slice_name)
            if not owned:
                return []
            return [s for s in entry.flows if s.match in owned]

    def get_polled_at(self, dpid: int) -> Optional[float]:
        entry = self._peek(dpid)
        if entry is None:
            return None
        with entry.lock:
            return entry.polled_at

    def slices(self, dpid: int) -> List[str]:
        entry = self._peek(dpid)
        if entry is None:
            return []
        with entry.lock:
            return sorted(entry.slice_index.keys())

    # ------------------------------------------------------------------
    # Registration (called by the policy layer)
    # ------------------------------------------------------------------
    def add_flow_mod(self, dpid: int, slice_name: str, flow_mod, related_flows=None):
        """
        Register a rule installed for a slice.

        related_flows are the flows actually pushed to the switch for this rule
        (defaults to the rule itself). A hard record is created when the rule has
        a hard_timeout, a soft one when it has an idle_timeout. Registering the
        same rule again replaces its records.
        """
        rule = FlowRule.coerce(flow_mod)
        related = tuple(FlowRule.coerce(r) for r in (related_flows or [])) or (rule,)
        rule_key = (slice_name, rule.match, rule.priority)
        now = self.clock()

        entry = self._entry(dpid)
        with entry.lock:
            entry.drop_rule(rule_key)
            entry.rules[rule_key] = related

            if rule.hard_timeout > 0:
                t = FlowTimeout(slice_name, rule, True, rule.hard_timeout, related=related, installed_at=now)
                entry.timeouts[t.key] = t
            if rule.idle_timeout > 0:
                t = FlowTimeout(slice_name, rule, False, rule.idle_timeout, related=related, installed_at=now)
                entry.timeouts[t.key] = t

            entry.reindex(slice_name)

        self.logger.debug(
            "Registered flow for slice=%s dpid=%s match=%s hard=%s idle=%s related=%d",
            slice_name, dpid, dict(rule.match), rule.hard_timeout, rule.idle_timeout, len(related),
        )

    def del_flow_mod(self, dpid: int, slice_name: str, flow_mod, related_flows=None):
        """Forget a rule removed by the policy layer. Unknown rules are ignored."""
        rule = FlowRule.coerce(flow_mod)
        entry = self._peek(dpid)
        if entry is None:
            return
        with entry.lock:
            entry.drop_rule((slice_name, rule.match, rule.priority))

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------
    def get_possible_expired_flows(self, dpid: int) -> List[FlowTimeout]:
        """Every tracked record of the switch; the caller evaluates each one."""
        entry = self._peek(dpid)
        if entry is None:
            return []
        with entry.lock:
            return list(entry.timeouts.values())

    def check_expire_flows(self, dpid: int, now: Optional[float] = None) -> List[FlowTimeout]:
        """
        Remove every record whose expiry condition holds, together with the
        other records of the same rule and its slice index entries.

        The expire listener is called once per removed rule, after the switch
        lock is released.
        """
        entry = self._peek(dpid)
        if entry is None:
            return []
        now = self.clock() if now is None else now

        expired: List[FlowTimeout] = []
        with entry.lock:
            for t in list(entry.timeouts.values()):
                if t.key not in entry.timeouts:
                    # already dropped together with a sibling record
                    continue
                if not t.is_expired(now):
                    continue
                entry.drop_rule(t.rule_key)
                expired.append(t)

        for t in expired:
            self.logger.info(
                "Flow expired: dpid=%s slice=%s match=%s kind=%s%s",
                dpid, t.slice_name, dict(t.rule.match),
                "hard" if t.hard else "idle", " (gone from switch)" if t.missing else "",
            )
            if self.expire_listener is None:
                continue
            try:
                self.expire_listener(dpid, t)
            except Exception:
                self.logger.exception("Expire listener failed for dpid=%s slice=%s", dpid, t.slice_name)

        return expired

    # ------------------------------------------------------------------
    # Whole-cache image
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            entries = list(self._switches.values())

        switches = {}
        for entry in entries:
            with entry.lock:
                rules: Dict[str, List[Dict[str, Any]]] = {}
                for (slice_name, match, prio), related in entry.rules.items():
                    rules.setdefault(slice_name, []).append({
                        "match": [list(p) for p in match],
                        "priority": prio,
                        "related": [r.to_dict() for r in related],
                    })
                switches[str(entry.dpid)] = {
                    "polled_at": entry.polled_at,
                    "flows": [s.to_dict() for s in entry.flows],
                    "ports": [p.to_dict() for _, p in sorted(entry.ports.items())],
                    "timeouts": [t.to_dict() for t in entry.timeouts.values()],
                    "slices": rules,
                }
        return {"switches": switches}

    def load_dict(self, data: Dict[str, Any]):
        """
        Replace the whole cache with a previously saved image.
        Raises KeyError/TypeError/ValueError on malformed content; nothing is
        replaced in that case.
        """
        switches = _require(data.get("switches") if isinstance(data, dict) else None, dict, "switches")

        loaded: Dict[int, SwitchEntry] = {}
        for dpid_s, sw in switches.items():
            sw = _require(sw, dict, f"switch {dpid_s}")
            entry = SwitchEntry(int(dpid_s))
            polled_at = sw.get("polled_at")
            entry.polled_at = None if polled_at is None else float(polled_at)
            entry.flows = [FlowStat.from_dict(_require(s, dict, "flow")) for s in _require(sw.get("flows", []), list, "flows")]
            entry.ports = {
                p.port_no: p
                for p in (PortStat.from_dict(_require(d, dict, "port")) for d in _require(sw.get("ports", []), list, "ports"))
            }

            for slice_name, rules in _require(sw.get("slices", {}), dict, "slices").items():
                for r in _require(rules, list, f"slice {slice_name}"):
                    r = _require(r, dict, f"rule of slice {slice_name}")
                    related = tuple(FlowRule.from_dict(_require(x, dict, "related flow")) for x in _require(r["related"], list, "related"))
                    match = match_key(r["match"])
                    entry.rules[(slice_name, match, int(r["priority"]))] = related
                entry.reindex(slice_name)

            for d in _require(sw.get("timeouts", []), list, "timeouts"):
                t = FlowTimeout.from_dict(_require(d, dict, "timeout"))
                entry.timeouts[t.key] = t

            loaded[entry.dpid] = entry

        with self._lock:
            self._switches = loaded


def _require(value, kind, what):
    if not isinstance(value, kind):
        raise ValueError(f"cache image: {what} must be a {kind.__name__}, got {type(value).__name__}")
    return value
