"""Data models for latmon."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from latmon.config import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_INTERVAL,
    DEFAULT_OUTPUT_DIR,
    DEFAULT_PORTS,
    DEFAULT_TIMEOUT,
    MAX_CONSECUTIVE_FAILURES,
    SCHEMES,
)

_SECONDS_PER_DAY = 86400


class PingState(enum.Enum):
    """Where a pinger is within one tick."""

    IDLE = "idle"
    RESOLVING = "resolving"
    CONNECTING = "connecting"
    TLS_HANDSHAKE = "tls_handshake"
    SENDING = "sending"
    AWAITING_RESPONSE = "awaiting_response"
    MEASURING = "measuring"
    SLEEPING = "sleeping"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Target:
    """One remote endpoint to ping; immutable for the life of the process."""

    host: str
    port: int = 0
    scheme: str = "https"
    interval: float = DEFAULT_INTERVAL
    timeout: float = DEFAULT_TIMEOUT
    path: str = "/"

    def __post_init__(self) -> None:
        if self.scheme not in SCHEMES:
            raise ValueError(f"unknown proto {self.scheme!r}; expected one of {', '.join(SCHEMES)}")
        if not self.host:
            raise ValueError("empty host")
        if self.scheme != "icmp" and not 0 < self.port <= 0xFFFF:
            raise ValueError(f"{self.host}: port {self.port} out of range")
        if self.interval <= 0:
            raise ValueError(f"{self.host}: interval must be positive")
        if self.timeout <= 0:
            raise ValueError(f"{self.host}: timeout must be positive")

    @property
    def name(self) -> str:
        if self.scheme == "icmp":
            return f"icmp:{self.host}"
        return f"{self.scheme}:{self.host}:{self.port}"

    @property
    def url(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}{self.path}"

    @property
    def encrypted(self) -> bool:
        return self.scheme == "https"

    @classmethod
    def parse(
        cls,
        spec: str,
        interval: float = DEFAULT_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> Target:
        """Parse ``proto:host[:port]`` (e.g. ``https:example.com:8443``)."""
        parts = spec.split(":")
        if len(parts) < 2 or not parts[1]:
            raise ValueError(f"malformed ping specification {spec!r}")

        scheme = parts[0].lower()
        host = parts[1]
        if scheme not in SCHEMES:
            raise ValueError(f"unknown proto {scheme!r}")

        port = DEFAULT_PORTS.get(scheme, 0)
        if len(parts) > 2:
            if scheme == "icmp":
                raise ValueError(f"{spec!r}: icmp targets take no port")
            try:
                port = int(parts[2], 0)
            except ValueError:
                raise ValueError(f"{spec!r}: bad port {parts[2]!r}") from None

        return cls(host=host, port=port, scheme=scheme, interval=interval, timeout=timeout)


@dataclass(frozen=True)
class HttpsResult:
    """Phase timings of one HTTP(S) ping, in nanoseconds."""

    dns: int = 0
    tcp: int = 0
    tls: int = 0
    http: int = 0
    e2e: int = 0
    encrypted: bool = True

    primary = "e2e"

    def metrics(self) -> dict[str, int]:
        m = {"dns": self.dns, "tcp": self.tcp}
        if self.encrypted:
            m["tls"] = self.tls
        m["http"] = self.http
        m["e2e"] = self.e2e
        return m

    def __str__(self) -> str:
        return ", ".join(f"{k}: {v / 1e6:.3f}ms" for k, v in self.metrics().items())


@dataclass(frozen=True)
class IcmpResult:
    """Round-trip time of one ICMP echo, in nanoseconds."""

    rtt: int = 0

    primary = "rtt"

    def metrics(self) -> dict[str, int]:
        return {"rtt": self.rtt}

    def __str__(self) -> str:
        return f"rtt: {self.rtt / 1e6:.3f}ms"


PingResult = Union[HttpsResult, IcmpResult]


@dataclass
class LatencyStats:
    """Aggregated statistics for one metric of a batch, in milliseconds."""

    count: int = 0
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    median: float = 0.0
    p95: float = 0.0
    stdev: float = 0.0
    jitter: float = 0.0


@dataclass
class OutputColumns:
    """Snapshot of one full batch, ready to be persisted."""

    name: str
    start: datetime
    names: list[str] = field(default_factory=list)
    columns: list[list[int]] = field(default_factory=list)

    @property
    def minlen(self) -> int:
        """Alignment length: rows beyond this are not present in every column."""
        if not self.columns:
            return 0
        return min(len(c) for c in self.columns)

    def column(self, name: str) -> list[int]:
        return self.columns[self.names.index(name)][: self.minlen]

    def rows(self):
        """Yield aligned rows, one value per column."""
        n = self.minlen
        for i in range(n):
            yield [c[i] for c in self.columns]


@dataclass
class MonitorConfig:
    """Runtime configuration for a monitoring run.

    Attributes
    ----------
    interval:
        Seconds between pings of each target.
    timeout:
        Deadline, in seconds, applied to each network phase of a ping.
    batch_size:
        Samples per target collected before a batch is flushed to disk.
    output_dir:
        Root directory for per-target ``stats`` and ``charts`` trees.
    max_failures:
        Consecutive failed pings tolerated before the run is aborted.
    """

    interval: float = DEFAULT_INTERVAL
    timeout: float = DEFAULT_TIMEOUT
    batch_size: int = DEFAULT_BATCH_SIZE
    output_dir: str = DEFAULT_OUTPUT_DIR
    max_failures: int = MAX_CONSECUTIVE_FAILURES

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ValueError("interval must be positive")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.batch_size <= 0:
            raise ValueError("batch-size must be positive")
        if self.max_failures < 0:
            raise ValueError("max-failures can't be negative")

        # a batch must complete at least once a day
        per_day = int(_SECONDS_PER_DAY / self.interval)
        if self.batch_size >= per_day:
            raise ValueError(
                f"batch-size is greater than total samples per day ({per_day})"
            )

    def target(self, spec: str) -> Target:
        """Build a :class:`Target` from ``proto:host[:port]`` using these settings."""
        return Target.parse(spec, interval=self.interval, timeout=self.timeout)


def safe_name(name: str) -> str:
    """Turn a target name into a single path component."""
    return name.replace(":", "_").replace("/", "_").replace("\\", "_")
