# statcache/timeouts.py

"""
TimeoutEvaluator: compares a fresh flow snapshot with the FlowTimeout records
of the same switch.

Soft (idle) records:
  - packet count unchanged      -> nothing to do, idle time keeps accruing
  - packet count changed        -> store the new count, last_used = now
  - no tracked flow in snapshot -> mark as missing (the rule is already gone
                                   from the switch), unless it was registered
                                   after the snapshot was taken
Hard records are left alone: FlowTimeout.is_expired() decides on age only.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from statcache.flow_utils import MatchKey
from statcache.models import FlowStat, FlowTimeout


class TimeoutEvaluator:
    def __init__(self, clock: Callable[[], float] = time.time, logger=None):
        self.clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def update_expire(
        self,
        timeouts: Iterable[FlowTimeout],
        flow_stats: List[FlowStat],
        now: Optional[float] = None,
        polled_at: Optional[float] = None,
    ) -> int:
        """
        Refresh idle bookkeeping of `timeouts` against `flow_stats`.
        Returns the number of records whose last_used moved forward.
        """
        now = self.clock() if now is None else now
        polled_at = now if polled_at is None else polled_at

        counts: Dict[MatchKey, int] = {}
        for stat in flow_stats:
            counts[stat.match] = counts.get(stat.match, 0) + int(stat.packet_count)

        refreshed = 0
        for t in timeouts:
            if t.hard:
                continue

            seen = [counts[m] for m in t.matches() if m in counts]
            if not seen:
                if t.installed_at <= polled_at:
                    t.missing = True
                continue

            t.missing = False
            packet_count = sum(seen)
            if packet_count == t.packet_count:
                continue

            if packet_count < t.packet_count:
                self.logger.warning(
                    "Packet counter went backwards for slice=%s match=%s (%d -> %d), flow reinstalled?",
                    t.slice_name, dict(t.rule.match), t.packet_count, packet_count,
                )
            t.packet_count = packet_count
            t.update_last_used(now)
            refreshed += 1

        return refreshed
