"""latmon: per-phase network latency monitor."""

__version__ = "0.1.0"
