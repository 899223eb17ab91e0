# statcache/stat_cacher.py

"""
StatCacher: the poll cycle driver.

One cycle:
  for every managed switch (sequentially, or on a small thread pool):
    1. fetch all flow stats
    2. fetch all port stats
    3. replace the switch's snapshots in the cache
    4. refresh idle bookkeeping of its FlowTimeout records, then sweep expired ones
  then write the whole cache to disk.

Failure isolation:
  - a switch whose query fails (timeout, bad reply, disconnect) gets its
    telemetry cleared; its timeouts and slice ownership are untouched,
  - anything unexpected raised while handling one switch is treated the same way,
  - a failed write is logged and retried by the next cycle.

Cycles never overlap: run() returns immediately if the previous one is still busy.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from statcache import persistence
from statcache.errors import StatsQueryError
from statcache.models import FlowStat, FlowTimeout, PortStat
from statcache.stats_config import CACHE_FILE, PERSIST_ENABLED, POLL_CONCURRENCY, QUERY_TIMEOUT_S
from statcache.timeouts import TimeoutEvaluator

POLL_OK = "ok"
POLL_EMPTY = "empty"
POLL_FAILED = "failed"


@dataclass
class PollResult:
    dpid: int
    status: str
    polled_at: float
    flows: List[FlowStat] = field(default_factory=list)
    ports: Dict[int, PortStat] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class CycleReport:
    started_at: float
    elapsed: float = 0.0
    statuses: Dict[int, str] = field(default_factory=dict)
    expired: List[Tuple[int, FlowTimeout]] = field(default_factory=list)
    persisted: bool = False

    def count(self, status: str) -> int:
        return sum(1 for s in self.statuses.values() if s == status)


class StatCacher:
    """
    switch_source() must return the current {dpid: datapath} map.
    query_client must provide get_flow_stats(datapath, timeout) and
    get_port_stats(datapath, timeout), raising StatsQueryError on failure.
    """

    def __init__(
        self,
        *,
        cache,
        query_client,
        switch_source: Callable[[], Mapping[int, Any]],
        cache_file: str = CACHE_FILE,
        query_timeout: float = QUERY_TIMEOUT_S,
        concurrency: int = POLL_CONCURRENCY,
        persist_enabled: bool = PERSIST_ENABLED,
        evaluator: Optional[TimeoutEvaluator] = None,
        logger=None,
    ):
        self.cache = cache
        self.query_client = query_client
        self.switch_source = switch_source
        self.cache_file = cache_file
        self.query_timeout = float(query_timeout)
        self.concurrency = int(concurrency)
        self.persist_enabled = bool(persist_enabled)
        self.logger = logger or logging.getLogger(__name__)
        self.evaluator = evaluator or TimeoutEvaluator(clock=cache.clock, logger=self.logger)
        self.clock = cache.clock

        assert self.query_timeout > 0, f"StatCacher: query_timeout must be > 0, got {self.query_timeout}"
        assert self.concurrency >= 1, f"StatCacher: concurrency must be >= 1, got {self.concurrency}"

        self._cycle_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------
    def run(self) -> Optional[CycleReport]:
        """Run one cycle. Returns None if the previous cycle is still running."""
        if not self._cycle_lock.acquire(blocking=False):
            self.logger.warning("Previous poll cycle still running, skipping this tick.")
            return None
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleReport:
        report = CycleReport(started_at=self.clock())
        switches = list(dict(self.switch_source()).items())

        if self.concurrency == 1 or len(switches) <= 1:
            outcomes = [self._process_switch(dpid, dp) for dpid, dp in switches]
        else:
            with ThreadPoolExecutor(max_workers=self.concurrency) as pool:
                outcomes = list(pool.map(lambda item: self._process_switch(*item), switches))

        for dpid, status, expired in outcomes:
            report.statuses[dpid] = status
            report.expired.extend((dpid, t) for t in expired)

        if self.persist_enabled:
            report.persisted = self.persist()

        report.elapsed = self.clock() - report.started_at
        self.logger.info(
            "Poll cycle done: switches=%d ok=%d empty=%d failed=%d expired=%d persisted=%s (%.2fs)",
            len(switches), report.count(POLL_OK), report.count(POLL_EMPTY), report.count(POLL_FAILED),
            len(report.expired), report.persisted, report.elapsed,
        )
        return report

    def _process_switch(self, dpid: int, datapath) -> Tuple[int, str, List[FlowTimeout]]:
        try:
            result = self.poll_switch(dpid, datapath)
            if result.status == POLL_FAILED:
                self.logger.error("Stats collection failed for dpid=%s: %s", dpid, result.error)
                self.cache.clear_flow_cache(dpid)
                return dpid, POLL_FAILED, []

            self.cache.set_flow_cache(dpid, result.flows, polled_at=result.polled_at)
            self.cache.set_port_cache(dpid, result.ports)

            now = self.clock()
            with self.cache.switch_lock(dpid):
                timeouts = self.cache.get_possible_expired_flows(dpid)
                self.evaluator.update_expire(timeouts, result.flows, now=now, polled_at=result.polled_at)
            expired = self.cache.check_expire_flows(dpid, now=now)

            self.logger.debug(
                "Stats cached for dpid=%s: flows=%d ports=%d tracked=%d expired=%d",
                dpid, len(result.flows), len(result.ports), len(timeouts), len(expired),
            )
            return dpid, result.status, expired

        except Exception:
            self.logger.exception("Unexpected error in stats collection for dpid=%s", dpid)
            self.cache.clear_flow_cache(dpid)
            return dpid, POLL_FAILED, []

    def poll_switch(self, dpid: int, datapath) -> PollResult:
        """Query one switch; query errors become a failed PollResult."""
        polled_at = self.clock()
        try:
            flows = list(self.query_client.get_flow_stats(datapath, self.query_timeout))
            ports = dict(self.query_client.get_port_stats(datapath, self.query_timeout))
        except StatsQueryError as e:
            return PollResult(dpid, POLL_FAILED, polled_at, error=str(e))

        status = POLL_OK if (flows or ports) else POLL_EMPTY
        return PollResult(dpid, status, polled_at, flows=flows, ports=ports)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def persist(self) -> bool:
        try:
            persistence.save_cache(self.cache, self.cache_file)
        except (OSError, TypeError, ValueError):
            self.logger.exception("Error writing stats cache to %s", self.cache_file)
            return False
        return True

    def load_cache(self) -> bool:
        """Warm the cache from disk; only meant to be called at startup."""
        return persistence.load_cache(self.cache, self.cache_file, logger=self.logger)

    # ------------------------------------------------------------------
    # Read API
    # ------------------------------------------------------------------
    def get_switch_stats(self, dpid: int) -> List[FlowStat]:
        return self.cache.get_switch_flow_stats(dpid)

    def get_sliced_flow_stats(self, dpid: int, slice_name: str) -> List[FlowStat]:
        return self.cache.get_sliced_flow_stats(dpid, slice_name)

    def get_port_stats(self, dpid: int, port_no: Optional[int] = None):
        return self.cache.get_port_stats(dpid, port_no)

    def clear_cache(self, dpid: int):
        self.cache.clear_flow_cache(dpid)

    # ------------------------------------------------------------------
    # Registration API
    # ------------------------------------------------------------------
    def add_flow_cache(self, dpid: int, slice_name: str, flow_mod, related_flows=None):
        self.cache.add_flow_mod(dpid, slice_name, flow_mod, related_flows)

    def del_flow_cache(self, dpid: int, slice_name: str, flow_mod, related_flows=None):
        self.cache.del_flow_mod(dpid, slice_name, flow_mod, related_flows)
