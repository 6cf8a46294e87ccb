"""Prometheus text-format metrics for the delivery server."""

from __future__ import annotations

import threading
from typing import Callable, Dict


class Counter:
    def __init__(self, name: str, description: str = "") -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._lock = threading.Lock()

    def inc(self, amount: float = 1.0) -> None:
        with self._lock:
            self._value += amount

    @property
    def value(self) -> float:
        return self._value

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} counter\n{self.name} {self._value}\n"


class Gauge:
    def __init__(self, name: str, description: str = "", supplier: Callable[[], float] | None = None) -> None:
        self.name = name
        self.description = description
        self._value = 0.0
        self._supplier = supplier

    def set(self, value: float) -> None:
        self._value = value

    def inc(self, amount: float = 1.0) -> None:
        self._value += amount

    def dec(self, amount: float = 1.0) -> None:
        self._value -= amount

    @property
    def value(self) -> float:
        return self._supplier() if self._supplier else self._value

    def render(self) -> str:
        return f"# HELP {self.name} {self.description}\n# TYPE {self.name} gauge\n{self.name} {self.value}\n"


class Histogram:
    def __init__(self, name: str, buckets: list[float], description: str = "") -> None:
        self.name = name
        self.description = description
        self._buckets = sorted(buckets)
        self._counts = [0 for _ in self._buckets]
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            self._count += 1
            self._sum += value
            for index, bucket in enumerate(self._buckets):
                if value <= bucket:
                    self._counts[index] += 1

    def render(self) -> str:
        lines = [f"# HELP {self.name} {self.description}", f"# TYPE {self.name} histogram"]
        # per-bucket counts are already cumulative since observe() bumps every bucket >= value
        for bucket, count in zip(self._buckets, self._counts):
            lines.append(f'{self.name}_bucket{{le="{bucket}"}} {count}')
        lines.append(f'{self.name}_bucket{{le="+Inf"}} {self._count}')
        lines.append(f"{self.name}_sum {self._sum}")
        lines.append(f"{self.name}_count {self._count}")
        return "\n".join(lines) + "\n"


class MetricsRegistry:
    def __init__(self) -> None:
        self._metrics: Dict[str, object] = {}

    def register(self, metric):
        # re-registering a name (module reloads in tests) keeps the first instance
        return self._metrics.setdefault(getattr(metric, "name"), metric)

    def get(self, name: str):
        return self._metrics.get(name)

    def render(self) -> str:
        return "\n".join(metric.render() for metric in self._metrics.values()) + "\n"


GLOBAL_REGISTRY = MetricsRegistry()


REQUEST_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_requests_total", "Total delivery requests"))
MEMORY_HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_cache_memory_hits_total", "Memory tier hits"))
DISK_HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_cache_disk_hits_total", "Disk tier hits"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_cache_misses_total", "Cache misses"))
ORIGIN_FETCH_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_origin_fetches_total", "Origin store content fetches"))
COMPRESSION_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_compressions_total", "Compressed variants computed"))
COMPRESSION_FAILURE_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_compression_failures_total", "Compression runs that fell back to identity")
)
EVICTION_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_cache_evictions_total", "Entries evicted for capacity"))
INVALIDATION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("stratus_cache_invalidations_total", "File invalidations triggered by mutations")
)
BYTES_SERVED_COUNTER = GLOBAL_REGISTRY.register(Counter("stratus_bytes_served_total", "Response body bytes streamed"))
MEMORY_BYTES_GAUGE = GLOBAL_REGISTRY.register(Gauge("stratus_cache_memory_bytes", "Bytes held by the memory tier"))
DISK_BYTES_GAUGE = GLOBAL_REGISTRY.register(Gauge("stratus_cache_disk_bytes", "Bytes held by the disk tier"))
SPOOL_BYTES_GAUGE = GLOBAL_REGISTRY.register(
    Gauge("stratus_spool_bytes", "Bytes held in temporary spools for oversized files")
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "stratus_request_latency_seconds",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
        description="Delivery request latency",
    )
)
