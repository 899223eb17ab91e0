#!/usr/bin/env python3

"""
inspect_cache.py: print the content of a persisted stats cache image.

Usage:
  python3 -m statcache.inspect_cache
  python3 -m statcache.inspect_cache --file /tmp/flow_cache.json --switch 1
  python3 -m statcache.inspect_cache --switch 1 --slice latency
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

from statcache.persistence import load_cache
from statcache.stat_cache import FlowStatCache
from statcache.stats_config import CACHE_FILE


def _dpid(value: str) -> int:
    # accepts "1", "0x1", "00:00:00:00:00:00:00:01"
    if ":" in value:
        return int(value.replace(":", ""), 16)
    return int(value, 0)


def print_switch(cache: FlowStatCache, dpid: int, now: float, verbose: bool = False):
    flows = cache.get_switch_flow_stats(dpid)
    ports = cache.get_port_stats(dpid)
    timeouts = cache.get_possible_expired_flows(dpid)
    polled_at = cache.get_polled_at(dpid)

    age = "never" if polled_at is None else f"{now - polled_at:.0f}s ago"
    print(f"dpid={dpid:#x} flows={len(flows)} ports={len(ports)} timeouts={len(timeouts)} polled={age}")
    print(f"  slices: {', '.join(cache.slices(dpid)) or '-'}")

    for t in timeouts:
        kind = "hard" if t.hard else "idle"
        ref = t.installed_at if t.hard else t.last_used
        print(
            f"  [{kind} {t.timeout:.0f}s] slice={t.slice_name} match={dict(t.rule.match)} "
            f"packets={t.packet_count} remaining={t.timeout - (now - ref):.0f}s"
        )

    if verbose:
        for s in flows:
            print(f"  flow table={s.table_id} prio={s.priority} pkts={s.packet_count} bytes={s.byte_count} match={dict(s.match)}")
        for port_no, p in sorted(ports.items()):
            print(f"  port {port_no}: rx={p.rx_packets}/{p.rx_bytes}B tx={p.tx_packets}/{p.tx_bytes}B")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Inspect a persisted flow/port stats cache image."
    )
    parser.add_argument(
        "--file",
        default=CACHE_FILE,
        help=f"Cache image path (default: {CACHE_FILE})",
    )
    parser.add_argument(
        "--switch",
        type=_dpid,
        default=None,
        help="Only show this datapath id (decimal, 0x-hex or colon form)",
    )
    parser.add_argument(
        "--slice",
        default=None,
        help="With --switch: list the cached flow stats owned by this slice",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Also list every cached flow and port",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    cache = FlowStatCache()
    if not load_cache(cache, args.file):
        print(f"Cannot load cache image: {args.file}", file=sys.stderr)
        return 1

    now = time.time()

    if args.slice is not None:
        if args.switch is None:
            parser.error("--slice requires --switch")
        for s in cache.get_sliced_flow_stats(args.switch, args.slice):
            print(f"pkts={s.packet_count} bytes={s.byte_count} prio={s.priority} match={dict(s.match)}")
        return 0

    dpids = [args.switch] if args.switch is not None else cache.switches()
    for dpid in dpids:
        print_switch(cache, dpid, now, verbose=args.verbose)
    return 0


if __name__ == "__main__":
    sys.exit(main())
