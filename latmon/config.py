"""Constants and configuration for latmon."""

# Default measurement settings
DEFAULT_INTERVAL = 2.0      # seconds between pings
DEFAULT_TIMEOUT = 2.0       # per-phase deadline, seconds
DEFAULT_BATCH_SIZE = 3600   # samples per flushed batch
DEFAULT_OUTPUT_DIR = "."

# Consecutive failed pings tolerated before a target is declared unreachable
MAX_CONSECUTIVE_FAILURES = 3

# Default ports per scheme
DEFAULT_PORTS = {
    "http": 80,
    "https": 443,
}

SCHEMES = ("http", "https", "icmp")

# Request sent by the HTTP pinger
PING_METHOD = "HEAD"
USER_AGENT = "latmon/0.1.0"

# Legend labels per metric (column) name
METRIC_LABELS = {
    "dns": "DNS",
    "tcp": "TCP",
    "tls": "TLS",
    "http": "HTTP",
    "e2e": "End-to-end",
    "rtt": "ICMP RTT",
}

# On-disk layout below the output directory
STATS_DIR = "stats"
CHARTS_DIR = "charts"
BATCH_TIME_FORMAT = "%Y%m%d-%H%M%S.%f"  # batches can start within the same second

# Log destinations understood by the CLI
LOG_STDERR = "-"
LOG_SYSLOG = "SYSLOG"
