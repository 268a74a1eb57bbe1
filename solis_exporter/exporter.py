"""Prometheus exporter that turns sniffed Modbus exchanges into inverter metrics."""

from __future__ import annotations

import gc
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Union

from .config import SolisExporterConfig, _parse_listen
from .metrics import (
    BuildInfoCollector,
    CounterVec,
    Gauge,
    GaugeHandler,
    GaugeVec,
    GaugeVecHandler,
    ProcessCollector,
    Registry,
    gauge_s32,
    gauge_u16,
    gauge_u32,
    scaled_gauge_s16,
    scaled_gauge_u16,
    scaled_gauge_vec_u16,
    scaled_gauge_vec_u32,
    scaled_gauge_vec_u32_nonzero,
)
from .modbus import (
    CRCError,
    InvalidPacketError,
    ModbusExchange,
    ReceiveTimeoutError,
    ResponseMismatchError,
    error_label,
)

log = logging.getLogger(__name__)

MetricHandler = Union[GaugeHandler, GaugeVecHandler]

_ERROR_LABELS = sorted(
    cls.label for cls in (CRCError, InvalidPacketError, ResponseMismatchError, ReceiveTimeoutError)
)


class _GCCollector:
    """Exposes the interpreter's garbage collector statistics."""

    names = ("python_gc_collections_total",)

    def expose(self) -> str:
        lines = [
            "# HELP python_gc_collections_total Number of times this generation was collected\n",
            "# TYPE python_gc_collections_total counter\n",
        ]
        lines += [
            f'python_gc_collections_total{{generation="{gen}"}} {stat.get("collections", 0)}\n'
            for gen, stat in enumerate(gc.get_stats())
        ]
        return "".join(lines)


def _inverter_info(vec: GaugeVec, data: bytes) -> None:
    if len(data) < 40:
        return
    vec.reset()
    versions = [data[i:i + 2].hex().upper() for i in range(0, 8, 2)]
    serial = data[8:40].rstrip(b"\x00").decode("utf-8", errors="replace")
    vec.labels(*versions, serial).set(1)


def _battery_current(gauge: Gauge, data: bytes) -> None:
    if len(data) < 4:
        return
    value = int.from_bytes(data[0:2], "big") * 0.1
    # Direction register: 0 = charging, 1 = discharging (matches the vendor cloud graphs)
    gauge.set(-value if int.from_bytes(data[2:4], "big") == 1 else value)


# Single-value registers: (register, name, help, decoder)
_GAUGES: tuple[tuple[int, str, str, Callable[[Gauge, bytes], None]], ...] = (
    (33057, "solis_inverter_dc_power", "Total DC output power (W)", gauge_u32),
    (33079, "solis_inverter_power_active", "Inverter total active power (W)", gauge_s32),
    (33081, "solis_inverter_power_reactive", "Inverter total reactive power (Var)", gauge_s32),
    (33083, "solis_inverter_power_apparent", "Inverter total apparent power (VA)", gauge_s32),
    (33093, "solis_inverter_temperature", "Inverter temperature - °C", scaled_gauge_s16(0.1)),
    (33094, "solis_inverter_frequency", "Inverter output frequency", scaled_gauge_u16(0.01)),
    (33095, "solis_inverter_operating_state", "Inverter operating state, register 33095",
     gauge_u16),
    (33121, "solis_inverter_working_status_flags", "Working status bits, register 33121",
     gauge_u16),
    (33132, "solis_inverter_storage_control_flags",
     "Energy storage control mode, register 33132", gauge_u16),
    (33133, "solis_battery_voltage", "Battery voltage", scaled_gauge_u16(0.1)),
    (33134, "solis_battery_current", "Battery current (+ = charging, - = discharging)",
     _battery_current),
    (33137, "solis_inverter_backup_voltage", "Backup output voltage", scaled_gauge_u16(0.1)),
    # The documented scale factor appears to be wrong
    (33138, "solis_inverter_backup_current", "Backup output current", scaled_gauge_u16(0.01)),
    (33139, "solis_battery_soc", "Battery state of charge - percent", gauge_u16),
    (33140, "solis_battery_soh", "Battery state of health - percent", gauge_u16),
    (33141, "solis_bms_battery_voltage", "BMS Battery Voltage", scaled_gauge_u16(0.01)),
    (33142, "solis_bms_battery_current", "BMS Battery Current", scaled_gauge_s16(0.1)),
    (33143, "solis_bms_charge_limit_current", "BMS Battery Charge Limit - Amps",
     scaled_gauge_u16(0.1)),
    (33144, "solis_bms_discharge_limit_current", "BMS Battery Discharge Limit - Amps",
     scaled_gauge_u16(0.1)),
    (33147, "solis_inverter_load_power", "House load power (W)", gauge_u16),
    (33148, "solis_inverter_backup_power", "Backup load power (W)", gauge_u16),
    (33263, "solis_grid_power_active", "Grid total active power (W)", gauge_s32),
    (33271, "solis_grid_power_reactive", "Grid total reactive power (Var)", gauge_s32),
    (33279, "solis_grid_power_apparent", "Grid total apparent power (VA)", gauge_s32),
    (33281, "solis_grid_power_factor", "Grid power factor", scaled_gauge_s16(0.01)),
    (33282, "solis_grid_frequency", "Grid frequency", scaled_gauge_u16(0.01)),
)


class SolisExporter:
    """Collects inverter metrics from Modbus exchanges and serves them over HTTP."""

    def __init__(self, config: SolisExporterConfig, modbus: Any = None) -> None:
        config.listen = config.listen or ":3105"
        config.station = config.station or 1
        self.config = config
        self.modbus = modbus
        self.registry = Registry()
        self.metrics: dict[int, MetricHandler] = {}
        self.messages = CounterVec(
            "solis_serial_messages_total", "Number of packet exchanges", ["source"]
        )
        self.errors = CounterVec(
            "solis_serial_errors_total", "Serial bus transmission or reception errors", ["error"]
        )
        self.last_message = Gauge(
            "solis_serial_last_message_time_seconds", "Time when last message received, in unixtime"
        )
        for collector in (self.messages, self.errors, self.last_message):
            self.registry.register(collector)
        for source in ("sniffed", "injected"):
            self.messages.labels(source)
        for label in _ERROR_LABELS:
            self.errors.labels(label)

        self.registry.register(BuildInfoCollector())
        if config.go_collector:
            self.registry.register(_GCCollector())
        if config.process_collector:
            self.registry.register(ProcessCollector())
        self._add_solis_metrics()

    def _add(self, register: int, handler: MetricHandler) -> None:
        if register in self.metrics:
            raise ValueError(f"Duplicate metric registration: {register}")
        self.metrics[register] = handler
        handler.set_registry(self.registry)

    def _vec(self, register: int, vec: GaugeVec, func: Callable[[GaugeVec, bytes], None]) -> None:
        self._add(register, GaugeVecHandler(vec, func))

    def _add_solis_metrics(self) -> None:
        self._vec(33000, GaugeVec(
            "solis_inverter_info", "Static information about the inverter",
            ["model", "dsp_version", "lcd_version", "protocol_version", "serial"],
        ), _inverter_info)

        energy = GaugeVec(
            "solis_inverter_energy", "Inverter total power generation and use", ["type", "period"]
        )
        for register, period in ((33029, "all"), (33031, "month"), (33033, "month-1"),
                                  (33037, "year"), (33039, "year-1")):
            self._vec(register, energy, scaled_gauge_vec_u32(1, "yield", period))
        self._vec(33035, energy, scaled_gauge_vec_u16(0.1, "yield", "day"))
        self._vec(33036, energy, scaled_gauge_vec_u16(0.1, "yield", "day-1"))

        dc_voltage = GaugeVec("solis_inverter_dc_voltage", "PV array DC voltage", ["pv"])
        dc_current = GaugeVec("solis_inverter_dc_current", "PV array DC current", ["pv"])
        for pv in range(2):
            self._vec(33049 + pv * 2, dc_voltage, scaled_gauge_vec_u16(0.1, str(pv + 1)))
            self._vec(33050 + pv * 2, dc_current, scaled_gauge_vec_u16(0.1, str(pv + 1)))

        ac_voltage = GaugeVec("solis_inverter_ac_voltage", "Inverter AC voltage", ["phase"])
        ac_current = GaugeVec("solis_inverter_ac_current", "Inverter AC current", ["phase"])
        for i, phase in enumerate("UVW"):
            self._vec(33073 + i, ac_voltage, scaled_gauge_vec_u16(0.1, phase))
            self._vec(33076 + i, ac_current, scaled_gauge_vec_u16(0.1, phase))

        fault = GaugeVec("solis_inverter_fault_flags", "Fault flags, register 33116-33120", ["code"])
        for i in range(5):
            self._vec(33116 + i, fault, scaled_gauge_vec_u16(1.0, f"{i + 1:02d}"))
        battery_failure = GaugeVec(
            "solis_bms_failure_flags", "BMS battery failure information, register 33145-33146",
            ["code"],
        )
        for i in range(2):
            self._vec(33145 + i, battery_failure, scaled_gauge_vec_u16(1.0, f"{i + 1:02d}"))

        for base, kind in ((33161, "charge"), (33165, "discharge"), (33169, "import"),
                           (33173, "export"), (33177, "load")):
            self._vec(base, energy, scaled_gauge_vec_u32(1, kind, "all"))
            self._vec(base + 2, energy, scaled_gauge_vec_u16(0.1, kind, "day"))
            self._vec(base + 3, energy, scaled_gauge_vec_u16(0.1, kind, "day-1"))

        grid_voltage = GaugeVec("solis_grid_voltage", "Grid AC voltage", ["phase"])
        grid_current = GaugeVec("solis_grid_current", "Grid AC current", ["phase"])
        for i, phase in enumerate("UVW"):
            self._vec(33251 + i * 2, grid_voltage, scaled_gauge_vec_u16(0.1, phase))
            self._vec(33252 + i * 2, grid_current, scaled_gauge_vec_u16(0.01, phase))
        grid_energy = GaugeVec(
            "solis_grid_energy", "Grid meter total power import and export", ["type", "period"]
        )
        # Just after an inverter restart these can read zero for a while; ignore that.
        self._vec(33283, grid_energy, scaled_gauge_vec_u32_nonzero(0.01, "import", "all"))
        self._vec(33285, grid_energy, scaled_gauge_vec_u32_nonzero(0.01, "export", "all"))

        for register, name, help_text, func in _GAUGES:
            self._add(register, GaugeHandler(Gauge(name, help_text), func))

    def handle_message(self, m: ModbusExchange) -> None:
        """Update counters and inverter metrics from one exchange."""
        self.messages.labels("sniffed" if m.sniffed else "injected").inc()
        if m.error is not None:
            self.errors.labels(error_label(m.error)).inc()
            return
        self.last_message.set_to_current_time()
        if m.exception != 0 or m.station != self.config.station or m.function not in (3, 4):
            return
        data = m.data or b""
        for register in range(m.base, (m.base + m.count) & 0xFFFF):
            handler = self.metrics.get(register)
            offset = (register - m.base) * 2
            if handler is not None and offset < len(data) - 1:
                handler.process(data[offset:])

    def metrics_text(self) -> str:
        """The current metrics in the Prometheus text exposition format."""
        return self.registry.exposition()

    def consume(self) -> None:
        """Handle exchanges from the message source until it ends or yields None."""
        source = self.modbus
        if source is None:
            return
        for m in iter(source.get, None) if hasattr(source, "get") else source:
            if m is None:
                break
            self.handle_message(m)

    def run(self) -> None:
        """Consume exchanges in the background and serve /metrics until stopped."""
        exporter = self

        class _MetricsHandler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:  # noqa: N802
                if self.path.split("?", 1)[0] != "/metrics":
                    self.send_error(404)
                    return
                body = exporter.metrics_text().encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4; charset=utf-8")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
                log.debug(format, *args)

        threading.Thread(target=self.consume, name="exporter-consumer", daemon=True).start()
        log.info("Starting metrics listener on %s", self.config.listen)
        with ThreadingHTTPServer(_parse_listen(self.config.listen), _MetricsHandler) as server:
            server.serve_forever()