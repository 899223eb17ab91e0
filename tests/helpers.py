from statcache.flow_utils import match_key
from statcache.models import FlowRule, FlowStat, PortStat


MATCH_A = {"eth_type": 0x0800, "ipv4_src": "10.0.0.2", "ipv4_dst": "10.0.0.3"}
MATCH_B = {"eth_type": 0x0800, "ipv4_src": "10.0.0.3", "ipv4_dst": "10.0.0.2"}


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = float(start)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeQueryClient:
    """
    Replies from canned data. Datapaths are plain dpids.
    Setting flows[dpid] / ports[dpid] to an exception makes the query raise it.
    """

    def __init__(self):
        self.flows = {}
        self.ports = {}
        self.calls = []

    def get_flow_stats(self, datapath, timeout):
        self.calls.append(("flow", datapath, timeout))
        value = self.flows.get(datapath, [])
        if isinstance(value, Exception):
            raise value
        return list(value)

    def get_port_stats(self, datapath, timeout):
        self.calls.append(("port", datapath, timeout))
        value = self.ports.get(datapath, {})
        if isinstance(value, Exception):
            raise value
        return dict(value)


def flow_stat(match, packets=0, priority=10, **kw):
    return FlowStat(match=match_key(match), priority=priority, packet_count=packets, **kw)


def rule(match, idle=0, hard=0, priority=10, **kw):
    return FlowRule(match=match_key(match), priority=priority, idle_timeout=idle, hard_timeout=hard, **kw)


def port_stat(port_no, rx=0, tx=0):
    return PortStat(port_no=port_no, rx_packets=rx, tx_packets=tx, rx_bytes=rx * 100, tx_bytes=tx * 100)


