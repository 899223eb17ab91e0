# statcache/stats_app.py

"""
StatCacheApp: the RyuApp hosting the statistics cache.

Responsibilities:
- Track connected datapaths (StateChange); they are the switches polled each cycle.
- Feed flow/port stats multipart replies (and errors) to the OFStatsClient waiters.
- Warm the cache from disk at startup, then run the poll loop on a hub thread.
- Delete a rule's flows on the switch when the cache expires it.

Other apps reach it with app_manager.lookup_service_brick("StatCacheApp") and use:
  - registration: add_flow_cache(), del_flow_cache()
  - reads: get_switch_stats(), get_sliced_flow_stats(), get_port_stats(), clear_cache()
"""

from __future__ import annotations

import logging

from ryu.base import app_manager
from ryu.controller import ofp_event
from ryu.controller.handler import MAIN_DISPATCHER, DEAD_DISPATCHER, set_ev_cls
from ryu.ofproto import ofproto_v1_3
from ryu.lib import hub

from statcache.flow_utils import delete_flow_strict
from statcache.ofp_query import OFStatsClient
from statcache.stat_cache import FlowStatCache
from statcache.stat_cacher import StatCacher
from statcache.stats_config import (
    CACHE_FILE,
    DELETE_EXPIRED_FLOWS,
    PERSIST_ENABLED,
    POLL_CONCURRENCY,
    POLL_INTERVAL_S,
    QUERY_TIMEOUT_S,
)


class StatCacheApp(app_manager.RyuApp):
    OFP_VERSIONS = [ofproto_v1_3.OFP_VERSION]

    def __init__(self, *args, **kwargs):
        super(StatCacheApp, self).__init__(*args, **kwargs)

        self.logger.setLevel(logging.INFO)

        assert POLL_INTERVAL_S > 0, f"POLL_INTERVAL_S must be > 0, got {POLL_INTERVAL_S}"

        self.datapaths = {}
        self.query_client = OFStatsClient(logger=self.logger)
        self.cache = FlowStatCache(expire_listener=self._on_flow_expired, logger=self.logger)
        self.cacher = StatCacher(
            cache=self.cache,
            query_client=self.query_client,
            switch_source=lambda: dict(self.datapaths),
            cache_file=CACHE_FILE,
            query_timeout=QUERY_TIMEOUT_S,
            concurrency=POLL_CONCURRENCY,
            persist_enabled=PERSIST_ENABLED,
            logger=self.logger,
        )

        if PERSIST_ENABLED:
            self.cacher.load_cache()

        self.monitor_thread = hub.spawn(self._monitor)

        self.logger.info(
            "StatCacheApp initialized: interval=%ss query_timeout=%ss concurrency=%s cache_file=%s",
            POLL_INTERVAL_S, QUERY_TIMEOUT_S, POLL_CONCURRENCY, CACHE_FILE,
        )

    # ------------------------------------------------------------------
    # Datapath state tracking
    # ------------------------------------------------------------------
    @set_ev_cls(ofp_event.EventOFPStateChange, [MAIN_DISPATCHER, DEAD_DISPATCHER])
    def _state_change_handler(self, ev):
        dp = ev.datapath
        dpid = dp.id

        if ev.state == MAIN_DISPATCHER:
            if dpid not in self.datapaths:
                self.datapaths[dpid] = dp
                self.logger.info("Register datapath: %s", dpid)

        elif ev.state == DEAD_DISPATCHER:
            if dpid in self.datapaths:
                self.logger.warning("Unregister datapath: %s", dpid)
                del self.datapaths[dpid]
                self.query_client.cancel_all(dpid)
                self.cache.clear_flow_cache(dpid)

    # ------------------------------------------------------------------
    # Stats replies
    # ------------------------------------------------------------------
    @set_ev_cls(ofp_event.EventOFPFlowStatsReply, MAIN_DISPATCHER)
    def _flow_stats_reply_handler(self, ev):
        self.query_client.on_reply(ev.msg)

    @set_ev_cls(ofp_event.EventOFPPortStatsReply, MAIN_DISPATCHER)
    def _port_stats_reply_handler(self, ev):
        self.query_client.on_reply(ev.msg)

    @set_ev_cls(ofp_event.EventOFPErrorMsg, MAIN_DISPATCHER)
    def _error_msg_handler(self, ev):
        self.query_client.on_error(ev.msg)

    # ------------------------------------------------------------------
    # Monitor thread
    # ------------------------------------------------------------------
    def _monitor(self):
        while True:
            try:
                self.cacher.run()
            except Exception:
                self.logger.exception("Poll cycle failed")
            hub.sleep(POLL_INTERVAL_S)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------
    def _on_flow_expired(self, dpid, timeout):
        if not DELETE_EXPIRED_FLOWS or timeout.missing:
            return

        dp = self.datapaths.get(dpid)
        if dp is None:
            self.logger.warning(
                "Flow for slice=%s expired on dpid=%s but the switch is not connected.",
                timeout.slice_name, dpid,
            )
            return

        for rule in timeout.related:
            delete_flow_strict(dp, rule.match, rule.priority, table_id=rule.table_id)

        self.logger.info(
            "Deleted %d expired flow(s) of slice=%s on dpid=%s",
            len(timeout.related), timeout.slice_name, dpid,
        )

    # ------------------------------------------------------------------
    # API for co-located apps
    # ------------------------------------------------------------------
    def add_flow_cache(self, dpid, slice_name, flow_mod, related_flows=None):
        self.cacher.add_flow_cache(dpid, slice_name, flow_mod, related_flows)

    def del_flow_cache(self, dpid, slice_name, flow_mod, related_flows=None):
        self.cacher.del_flow_cache(dpid, slice_name, flow_mod, related_flows)

    def get_switch_stats(self, dpid):
        return self.cacher.get_switch_stats(dpid)

    def get_sliced_flow_stats(self, dpid, slice_name):
        return self.cacher.get_sliced_flow_stats(dpid, slice_name)

    def get_port_stats(self, dpid, port_no=None):
        return self.cacher.get_port_stats(dpid, port_no)

    def clear_cache(self, dpid):
        self.cacher.clear_cache(dpid)
