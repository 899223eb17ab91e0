"""Flow/port statistics cache and idle/hard flow expiry for a Ryu controller."""
