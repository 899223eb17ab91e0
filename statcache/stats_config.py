# statcache/stats_config.py

"""
Static configuration for the statistics cache.
This module contains only configuration data.
"""


# Persisted cache image: rewritten at the end of every poll cycle,
# read once at startup to warm the cache.
CACHE_FILE = "/var/run/statcache/flow_cache.json"
CACHE_IMAGE_VERSION = 1
PERSIST_ENABLED = True

# Poll cycle period (seconds). A cycle never overlaps the previous one.
POLL_INTERVAL_S = 10

# Upper bound on each flow/port stats request (seconds).
# Exceeding it fails that switch for the current cycle; no retry until the next one.
QUERY_TIMEOUT_S = 10

# Number of switches polled in parallel within one cycle (1 = sequential).
POLL_CONCURRENCY = 1

# When a tracked rule expires, also delete its installed flows on the switch.
DELETE_EXPIRED_FLOWS = True
