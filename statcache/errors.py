# statcache/errors.py

"""Errors raised by stats query clients and handled by the poll driver."""


class StatsQueryError(Exception):
    """A stats request failed: malformed reply, switch gone, send failure."""

    def __init__(self, dpid, message):
        super().__init__(f"dpid={dpid}: {message}")
        self.dpid = dpid


class StatsQueryTimeout(StatsQueryError):
    """No complete reply within the configured bound."""
