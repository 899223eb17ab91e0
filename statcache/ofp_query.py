# statcache/ofp_query.py

"""
OFStatsClient: bounded-wait flow/port stats queries over OpenFlow 1.3 (Ryu).

How a query works:
  1. the request gets an xid and a waiter keyed by (dpid, xid),
  2. the app's reply handlers feed every multipart reply into on_reply(),
  3. the waiter is released once a reply without OFPMPF_REPLY_MORE arrives,
  4. the caller waits on it for at most `timeout` seconds.

The waiter is always removed when the call returns, so a reply that arrives
after the timeout finds nothing to attach to and is dropped.

This module MUST NOT define a RyuApp; StatCacheApp owns the event handlers.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from ryu.lib import hub

from statcache.errors import StatsQueryError, StatsQueryTimeout
from statcache.flow_utils import build_flow_stats_request, build_port_stats_request
from statcache.models import FlowStat, PortStat


class _Waiter:
    def __init__(self, kind: str):
        self.kind = kind
        self.event = hub.Event()
        self.body: List = []
        self.error: Optional[str] = None


class OFStatsClient:
    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self._waiters: Dict[Tuple[int, int], _Waiter] = {}

    # ------------------------------------------------------------------
    # Public queries
    # ------------------------------------------------------------------
    def get_flow_stats(self, datapath, timeout: float) -> List[FlowStat]:
        body = self._query(datapath, build_flow_stats_request(datapath), "flow", timeout)
        try:
            return [FlowStat.from_ofp(s) for s in body]
        except (AttributeError, TypeError, ValueError) as e:
            raise StatsQueryError(datapath.id, f"malformed flow stats reply: {e}") from e

    def get_port_stats(self, datapath, timeout: float) -> Dict[int, PortStat]:
        body = self._query(datapath, build_port_stats_request(datapath), "port", timeout)
        try:
            return {p.port_no: p for p in (PortStat.from_ofp(s) for s in body)}
        except (AttributeError, TypeError, ValueError) as e:
            raise StatsQueryError(datapath.id, f"malformed port stats reply: {e}") from e

    # ------------------------------------------------------------------
    # Reply plumbing (called from the app's event handlers)
    # ------------------------------------------------------------------
    def on_reply(self, msg):
        dpid = msg.datapath.id
        waiter = self._waiters.get((dpid, msg.xid))
        if waiter is None:
            self.logger.debug("Discarding stats reply with no waiter: dpid=%s xid=%s", dpid, msg.xid)
            return

        waiter.body.extend(msg.body)
        if not (msg.flags & msg.datapath.ofproto.OFPMPF_REPLY_MORE):
            waiter.event.set()

    def on_error(self, msg):
        dpid = msg.datapath.id
        waiter = self._waiters.get((dpid, msg.xid))
        if waiter is None:
            return
        waiter.error = f"switch returned error type={msg.type} code={msg.code}"
        waiter.event.set()

    def cancel_all(self, dpid: int):
        """Fail every pending query of a switch (it disconnected)."""
        for (w_dpid, _xid), waiter in list(self._waiters.items()):
            if w_dpid != dpid:
                continue
            waiter.error = "switch disconnected"
            waiter.event.set()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------
    def _query(self, datapath, req, kind: str, timeout: float) -> List:
        assert timeout > 0, f"_query: timeout must be > 0, got {timeout}"
        dpid = datapath.id

        datapath.set_xid(req)
        key = (dpid, req.xid)
        waiter = _Waiter(kind)
        self._waiters[key] = waiter

        try:
            # Datapath.send_msg() returns False once the connection is closed.
            if datapath.send_msg(req) is False:
                raise StatsQueryError(dpid, f"{kind} stats request not sent, switch not connected")

            if not waiter.event.wait(timeout=timeout):
                raise StatsQueryTimeout(dpid, f"{kind} stats reply not complete after {timeout}s")

            if waiter.error is not None:
                raise StatsQueryError(dpid, f"{kind} stats: {waiter.error}")

            self.logger.debug("dpid=%s %s stats: %d entries", dpid, kind, len(waiter.body))
            return waiter.body
        finally:
            self._waiters.pop(key, None)
