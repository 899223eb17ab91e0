# statcache/flow_utils.py

"""
Utility functions for normalizing OpenFlow matches and building stats/delete requests.

Architecture:
- The cache compares matches coming from two places: flow-mods registered by the
  policy layer and FlowStats replies from the switch. Both are reduced to the same
  hashable "match key" so equality is exact and order-independent.
- Requests are built from the datapath's own parser (OpenFlow 1.3 in practice),
  so this module never imports Ryu itself.

Design goals:
- Keep matching consistent between registration and polling.
- Avoid silent behavior: unsupported match objects fail fast.
"""

from typing import Any, Optional, Tuple


MatchKey = Tuple[Tuple[str, Any], ...]


# -------------------------------------------------------------------
# Match normalization
# -------------------------------------------------------------------
def _freeze(value):
    # Masked fields arrive as lists from JSON and as tuples from Ryu.
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def match_key(match) -> MatchKey:
    """
    Reduce a match to a sorted tuple of (field, value) pairs.

    Accepted inputs:
      - None (the empty / wildcard-all match)
      - a dict of OXM fields, e.g. {"eth_type": 0x0800, "ipv4_dst": "10.0.0.3"}
      - a Ryu OFPMatch (anything exposing items())
      - an already-normalized key (tuple of pairs or list of [field, value])
    """
    if match is None:
        return ()

    if isinstance(match, (tuple, list)):
        pairs = []
        for item in match:
            assert len(item) == 2, f"match_key: expected (field, value) pairs, got {item!r}"
            pairs.append((str(item[0]), _freeze(item[1])))
        return tuple(sorted(pairs, key=lambda p: p[0]))

    assert hasattr(match, "items"), f"match_key: unsupported match object {type(match).__name__}"
    return tuple(sorted(((str(k), _freeze(v)) for k, v in match.items()), key=lambda p: p[0]))


def match_to_dict(key: MatchKey):
    """Inverse of match_key(), usable as OFPMatch(**kwargs)."""
    return {field: value for field, value in key}


# -------------------------------------------------------------------
# Stats request builders
# -------------------------------------------------------------------
def build_flow_stats_request(datapath):
    """
    Flow stats for every flow: all tables, any out port/group, no cookie filter,
    empty (wildcard-all) match.
    """
    ofproto = datapath.ofproto
    parser = datapath.ofproto_parser

    return parser.OFPFlowStatsRequest(
        datapath,
        0,
        ofproto.OFPTT_ALL,
        ofproto.OFPP_ANY,
        ofproto.OFPG_ANY,
        0,
        0,
        parser.OFPMatch(),
    )


def build_port_stats_request(datapath):
    """Port stats for all ports."""
    ofproto = datapath.ofproto
    parser = datapath.ofproto_parser
    return parser.OFPPortStatsRequest(datapath, 0, ofproto.OFPP_ANY)


# -------------------------------------------------------------------
# Flow removal
# -------------------------------------------------------------------
def delete_flow_strict(datapath, key: MatchKey, priority: int, table_id: Optional[int] = None):
    """
    Delete exactly one flow entry: same match and same priority.

    Used when a tracked rule expires, so flows owned by other slices that share
    a broader match are left alone.
    """
    ofproto = datapath.ofproto
    parser = datapath.ofproto_parser

    kwargs = dict(
        datapath=datapath,
        command=ofproto.OFPFC_DELETE_STRICT,
        priority=int(priority),
        out_port=ofproto.OFPP_ANY,
        out_group=ofproto.OFPG_ANY,
        match=parser.OFPMatch(**match_to_dict(key)),
    )
    kwargs["table_id"] = ofproto.OFPTT_ALL if table_id is None else int(table_id)

    mod = parser.OFPFlowMod(**kwargs)
    datapath.send_msg(mod)
