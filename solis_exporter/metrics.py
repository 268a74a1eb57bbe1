"""Gauges, counters, a registry with text exposition, and Modbus register handlers."""

from __future__ import annotations

import math
import platform
import sys
import threading
import time
from collections.abc import Callable

import psutil


class AlreadyRegisteredError(ValueError):
    """The very same collector was registered twice."""

    def __init__(self, existing: object) -> None:
        names = ", ".join(getattr(existing, "names", ()))
        super().__init__(f"collector already registered: {names}")
        self.existing = existing


def _format_value(value: float) -> str:
    value = float(value)
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _header(name: str, help_text: str, kind: str) -> str:
    return f"# HELP {name} {_escape_help(help_text)}\n# TYPE {name} {kind}\n"


def _sample(name: str, labels: dict[str, str], value: float) -> str:
    if labels:
        pairs = ",".join(f'{key}="{_escape_label(val)}"' for key, val in labels.items())
        return f"{name}{{{pairs}}} {_format_value(value)}\n"
    return f"{name} {_format_value(value)}\n"


class Gauge:
    """A single value that can go up and down."""

    kind = "gauge"

    def __init__(self, name: str, help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def names(self) -> tuple[str, ...]:
        return (self.name,)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)

    def set_to_current_time(self) -> None:
        self.set(time.time())

    def expose(self) -> str:
        return _header(self.name, self.help_text, self.kind) + _sample(self.name, {}, self.value)


class Counter:
    """A monotonically increasing value."""

    kind = "counter"

    def __init__(self, name: str, help_text: str = "") -> None:
        self.name = name
        self.help_text = help_text
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def names(self) -> tuple[str, ...]:
        return (self.name,)

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters can only be increased")
        with self._lock:
            self._value += amount

    def expose(self) -> str:
        return _header(self.name, self.help_text, self.kind) + _sample(self.name, {}, self.value)


class _MetricVec:
    kind = ""

    def __init__(self, name: str, help_text: str, labelnames: tuple[str, ...] | list[str]) -> None:
        self.name = name
        self.help_text = help_text
        self.labelnames = tuple(labelnames)
        self._children: dict[tuple[str, ...], Gauge | Counter] = {}
        self._lock = threading.Lock()

    @property
    def names(self) -> tuple[str, ...]:
        return (self.name,)

    def _make_child(self) -> Gauge | Counter:
        raise NotImplementedError

    def _child(self, values: tuple[object, ...]):
        if len(values) != len(self.labelnames):
            raise ValueError(
                f"{self.name}: expected {len(self.labelnames)} label values, got {len(values)}"
            )
        key = tuple(str(value) for value in values)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._make_child()
            return child

    def expose(self) -> str:
        with self._lock:
            children = sorted(self._children.items())
        if not children:
            return ""
        lines = [_header(self.name, self.help_text, self.kind)]
        lines.extend(
            _sample(self.name, dict(zip(self.labelnames, key)), child.value)
            for key, child in children
        )
        return "".join(lines)


class GaugeVec(_MetricVec):
    """A family of gauges distinguished by label values."""

    kind = "gauge"

    def _make_child(self) -> Gauge:
        return Gauge(self.name, self.help_text)

    def labels(self, *args: object) -> Gauge:
        return self._child(args)

    def reset(self) -> None:
        with self._lock:
            self._children.clear()

    def expose(self) -> str:
        return super().expose()


class CounterVec(_MetricVec):
    """A family of counters distinguished by label values."""

    kind = "counter"

    def _make_child(self) -> Counter:
        return Counter(self.name, self.help_text)

    def labels(self, *args: object) -> Counter:
        return self._child(args)

    def expose(self) -> str:
        return super().expose()


class BuildInfoCollector:
    """Exposes information about the running interpreter."""

    names = ("python_info",)

    def expose(self) -> str:
        info = sys.version_info
        labels = {
            "implementation": platform.python_implementation(),
            "major": str(info.major),
            "minor": str(info.minor),
            "patchlevel": str(info.micro),
            "version": f"{info.major}.{info.minor}.{info.micro}",
        }
        return _header("python_info", "Python platform information", "gauge") + _sample(
            "python_info", labels, 1
        )


class ProcessCollector:
    """Exposes CPU, memory and file descriptor usage of a process."""

    names = (
        "process_cpu_seconds_total",
        "process_open_fds",
        "process_resident_memory_bytes",
        "process_start_time_seconds",
        "process_virtual_memory_bytes",
    )

    def __init__(self, pid: int | None = None) -> None:
        self._process = psutil.Process(pid)

    def expose(self) -> str:
        proc = self._process
        with proc.oneshot():
            cpu = proc.cpu_times()
            memory = proc.memory_info()
            started = proc.create_time()
            open_fds = proc.num_fds() if hasattr(proc, "num_fds") else None
        families = [
            ("process_cpu_seconds_total", "Total user and system CPU time spent in seconds.",
             "counter", cpu.user + cpu.system),
        ]
        if open_fds is not None:
            families.append(
                ("process_open_fds", "Number of open file descriptors.", "gauge", open_fds)
            )
        families += [
            ("process_resident_memory_bytes", "Resident memory size in bytes.", "gauge",
             memory.rss),
            ("process_start_time_seconds",
             "Start time of the process since unix epoch in seconds.", "gauge", started),
            ("process_virtual_memory_bytes", "Virtual memory size in bytes.", "gauge",
             memory.vms),
        ]
        return "".join(
            _header(name, help_text, kind) + _sample(name, {}, value)
            for name, help_text, kind, value in families
        )


class Registry:
    """A set of collectors exposed together in the text format."""

    def __init__(self) -> None:
        self._collectors: list = []
        self._lock = threading.Lock()

    def register(self, collector) -> None:
        """Add a collector; raises AlreadyRegisteredError if it is already present."""
        with self._lock:
            for existing in self._collectors:
                if existing is collector:
                    raise AlreadyRegisteredError(existing)
                clash = set(existing.names) & set(collector.names)
                if clash:
                    raise ValueError(
                        f"duplicate metric registration: {', '.join(sorted(clash))}"
                    )
            self._collectors.append(collector)

    def exposition(self) -> str:
        """Render every registered collector, ordered by metric name."""
        with self._lock:
            collectors = sorted(self._collectors, key=lambda c: c.names[0])
        return "".join(collector.expose() for collector in collectors)


GaugeFunc = Callable[[Gauge, bytes], None]
GaugeVecFunc = Callable[[GaugeVec, bytes], None]


class GaugeHandler:
    """Updates a gauge from register data; the gauge is registered on first update."""

    def __init__(self, gauge: Gauge, func: GaugeFunc) -> None:
        self.gauge = gauge
        self.func = func
        self._registry: Registry | None = None

    def process(self, data: bytes) -> None:
        # Registering on demand avoids exposing spurious zero values.
        if self._registry is not None:
            self._registry.register(self.gauge)
            self._registry = None
        self.func(self.gauge, bytes(data))

    def set_registry(self, registry: Registry) -> None:
        self._registry = registry


class GaugeVecHandler:
    """Updates a gauge vector from register data; vectors may be shared between handlers."""

    def __init__(self, gauge_vec: GaugeVec, func: GaugeVecFunc) -> None:
        self.gauge_vec = gauge_vec
        self.func = func

    def process(self, data: bytes) -> None:
        self.func(self.gauge_vec, bytes(data))

    def set_registry(self, registry: Registry) -> None:
        try:
            registry.register(self.gauge_vec)
        except AlreadyRegisteredError:
            pass


def _u16(data: bytes) -> int:
    if len(data) < 2:
        raise ValueError("need at least 2 bytes of register data")
    return int.from_bytes(data[:2], "big")


def _s16(data: bytes) -> int:
    if len(data) < 2:
        raise ValueError("need at least 2 bytes of register data")
    return int.from_bytes(data[:2], "big", signed=True)


def _u32(data: bytes) -> int | None:
    return int.from_bytes(data[:4], "big") if len(data) >= 4 else None


def _s32(data: bytes) -> int | None:
    return int.from_bytes(data[:4], "big", signed=True) if len(data) >= 4 else None


def scaled_gauge_u16(scale: float) -> GaugeFunc:
    def update(gauge: Gauge, data: bytes) -> None:
        gauge.set(_u16(data) * scale)
    return update


def scaled_gauge_s16(scale: float) -> GaugeFunc:
    def update(gauge: Gauge, data: bytes) -> None:
        gauge.set(_s16(data) * scale)
    return update


def scaled_gauge_u32(scale: float) -> GaugeFunc:
    def update(gauge: Gauge, data: bytes) -> None:
        value = _u32(data)
        if value is not None:
            gauge.set(value * scale)
    return update


def scaled_gauge_s32(scale: float) -> GaugeFunc:
    def update(gauge: Gauge, data: bytes) -> None:
        value = _s32(data)
        if value is not None:
            gauge.set(value * scale)
    return update


gauge_u16 = scaled_gauge_u16(1.0)
gauge_s16 = scaled_gauge_s16(1.0)
gauge_u32 = scaled_gauge_u32(1.0)
gauge_s32 = scaled_gauge_s32(1.0)


def scaled_gauge_vec_u16(scale: float, *args: str) -> GaugeVecFunc:
    def update(vec: GaugeVec, data: bytes) -> None:
        vec.labels(*args).set(_u16(data) * scale)
    return update


def scaled_gauge_vec_s16(scale: float, *args: str) -> GaugeVecFunc:
    def update(vec: GaugeVec, data: bytes) -> None:
        vec.labels(*args).set(_s16(data) * scale)
    return update


def scaled_gauge_vec_u32(scale: float, *args: str) -> GaugeVecFunc:
    def update(vec: GaugeVec, data: bytes) -> None:
        value = _u32(data)
        if value is not None:
            vec.labels(*args).set(value * scale)
    return update


def scaled_gauge_vec_u32_nonzero(scale: float, *args: str) -> GaugeVecFunc:
    def update(vec: GaugeVec, data: bytes) -> None:
        value = _u32(data)
        if value:
            vec.labels(*args).set(value * scale)
    return update


def scaled_gauge_vec_s32(scale: float, *args: str) -> GaugeVecFunc:
    def update(vec: GaugeVec, data: bytes) -> None:
        value = _s32(data)
        if value is not None:
            vec.labels(*args).set(value * scale)
    return update


gauge_vec_u16 = scaled_gauge_vec_u16(1.0)
gauge_vec_s16 = scaled_gauge_vec_s16(1.0)
gauge_vec_u32 = scaled_gauge_vec_u32(1.0)
gauge_vec_s32 = scaled_gauge_vec_s32(1.0)