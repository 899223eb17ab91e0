from types import SimpleNamespace

import pytest

from statcache.flow_utils import (
    build_flow_stats_request,
    build_port_stats_request,
    delete_flow_strict,
    match_key,
    match_to_dict,
)


class _Match:
    # mimics OFPMatch: exposes items() as a list of pairs
    def __init__(self, **fields):
        self._fields = list(fields.items())

    def items(self):
        return self._fields


class _Parser:
    def OFPMatch(self, **kwargs):
        return ("match", kwargs)

    def OFPFlowMod(self, **kwargs):
        return ("flow_mod", kwargs)

    def OFPFlowStatsRequest(self, *args):
        return ("flow_stats", args)

    def OFPPortStatsRequest(self, *args):
        return ("port_stats", args)


class _Datapath:
    def __init__(self):
        self.ofproto = SimpleNamespace(
            OFPTT_ALL=0xFF, OFPP_ANY=0xFFFFFFFF, OFPG_ANY=0xFFFFFFFF, OFPFC_DELETE_STRICT=4,
        )
        self.ofproto_parser = _Parser()
        self.sent = []

    def send_msg(self, msg):
        self.sent.append(msg)


def test_match_key_is_order_independent():
    a = match_key({"ipv4_dst": "10.0.0.3", "eth_type": 0x0800})
    b = match_key({"eth_type": 0x0800, "ipv4_dst": "10.0.0.3"})
    assert a == b
    assert a == (("eth_type", 0x0800), ("ipv4_dst", "10.0.0.3"))


def test_match_key_freezes_masked_values():
    from_json = match_key([["ipv4_src", ["10.0.0.0", "255.0.0.0"]]])
    from_ryu = match_key(_Match(ipv4_src=("10.0.0.0", "255.0.0.0")))
    assert from_json == from_ryu
    hash(from_json)


def test_match_key_empty_and_passthrough():
    assert match_key(None) == ()
    assert match_key({}) == ()
    key = match_key({"in_port": 1})
    assert match_key(key) == key


def test_match_key_rejects_unknown_objects():
    with pytest.raises(AssertionError):
        match_key(42)


def test_match_to_dict_inverts_match_key():
    d = {"eth_type": 0x0800, "ip_proto": 6, "tcp_dst": 5001}
    assert match_to_dict(match_key(d)) == d


def test_flow_stats_request_asks_for_everything():
    dp = _Datapath()
    kind, args = build_flow_stats_request(dp)
    assert kind == "flow_stats"
    assert args[0] is dp
    assert args[2] == dp.ofproto.OFPTT_ALL
    assert args[3] == dp.ofproto.OFPP_ANY
    assert args[4] == dp.ofproto.OFPG_ANY
    assert args[-1] == ("match", {})


def test_port_stats_request_all_ports():
    dp = _Datapath()
    assert build_port_stats_request(dp) == ("port_stats", (dp, 0, dp.ofproto.OFPP_ANY))


def test_delete_flow_strict_sends_exact_delete():
    dp = _Datapath()
    delete_flow_strict(dp, match_key({"in_port": 2}), 20, table_id=1)

    assert len(dp.sent) == 1
    kind, kwargs = dp.sent[0]
    assert kind == "flow_mod"
    assert kwargs["command"] == dp.ofproto.OFPFC_DELETE_STRICT
    assert kwargs["priority"] == 20
    assert kwargs["table_id"] == 1
    assert kwargs["match"] == ("match", {"in_port": 2})


def test_delete_flow_strict_defaults_to_all_tables():
    dp = _Datapath()
    delete_flow_strict(dp, (), 0)
    _, kwargs = dp.sent[0]
    assert kwargs["table_id"] == dp.ofproto.OFPTT_ALL
