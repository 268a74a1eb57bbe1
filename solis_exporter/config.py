"""YAML configuration file for the serial bus, exporter and gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from os import PathLike
from typing import Any

import yaml

from .rules import Rule


class ConfigError(ValueError):
    """The configuration is malformed."""


@dataclass
class SerialConfig:
    device: str = ""
    dump: bool = False


@dataclass
class SolisExporterConfig:
    listen: str = ""
    station: int = 0
    go_collector: bool = False
    process_collector: bool = False


@dataclass
class GatewayConfig:
    listen: str = ""
    rules: list[Rule] = field(default_factory=list)


@dataclass
class Config:
    serial: SerialConfig | None = None
    solis_exporter: SolisExporterConfig | None = None
    gateway: GatewayConfig | None = None


def _parse_listen(listen: str) -> tuple[str, int]:
    host, sep, port = listen.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid listen address: {listen!r}")
    return host.strip("[]"), int(port)


def _mapping(value: Any, allowed: set[str], where: str) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: expected a mapping, got {value!r}")
    unknown = sorted(str(key) for key in value if key not in allowed)
    if unknown:
        raise ConfigError(f"{where}: unknown field(s) {', '.join(unknown)}")
    return value


def _value(value: Any, kind: type, where: str, upper: int = 0) -> Any:
    """Check a scalar's type (and an integer's range); None gives the zero value."""
    if value is None:
        return kind()
    if kind is int:
        ok = isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= upper
    else:
        ok = isinstance(value, kind)
    if not ok:
        raise ConfigError(f"{where}: expected {kind.__name__}, got {value!r}")
    return value


def _bytes(value: Any, where: str) -> tuple[int, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise ConfigError(f"{where}: expected a list, got {value!r}")
    return tuple(_value(item, int, where, 0xFF) for item in value)


def _rule(value: Any, where: str) -> Rule:
    s = _mapping(value, {"from", "to", "functions", "station"}, where)
    return Rule(
        start=_value(s.get("from"), int, f"{where}.from", 0xFFFF),
        end=_value(s.get("to"), int, f"{where}.to", 0xFFFF),
        functions=_bytes(s.get("functions"), f"{where}.functions"),
        stations=_bytes(s.get("station"), f"{where}.station"),
    )


def _serial(value: Any) -> SerialConfig:
    s = _mapping(value, {"device", "dump"}, "serial")
    return SerialConfig(
        device=_value(s.get("device"), str, "serial.device"),
        dump=_value(s.get("dump"), bool, "serial.dump"),
    )


def _exporter(value: Any) -> SolisExporterConfig:
    w = "solis_exporter"
    s = _mapping(value, {"listen", "station", "go_collector", "process_collector"}, w)
    return SolisExporterConfig(
        listen=_value(s.get("listen"), str, f"{w}.listen"),
        station=_value(s.get("station"), int, f"{w}.station", 0xFF),
        go_collector=_value(s.get("go_collector"), bool, f"{w}.go_collector"),
        process_collector=_value(s.get("process_collector"), bool, f"{w}.process_collector"),
    )


def _gateway(value: Any) -> GatewayConfig:
    s = _mapping(value, {"listen", "rules"}, "gateway")
    rules = _value(s.get("rules"), list, "gateway.rules")
    return GatewayConfig(
        listen=_value(s.get("listen"), str, "gateway.listen"),
        rules=[_rule(rule, f"gateway.rules[{n}]") for n, rule in enumerate(rules)],
    )


def parse_config(data: str | bytes) -> Config:
    """Parse YAML configuration text, rejecting unknown fields and empty configurations."""
    try:
        document = yaml.safe_load(data)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}") from exc
    if document is None:
        raise ConfigError("empty document")
    top = _mapping(document, {"serial", "solis_exporter", "gateway"}, "configuration")
    parsers = {"serial": _serial, "solis_exporter": _exporter, "gateway": _gateway}
    config = Config(**{
        key: None if top.get(key) is None else parse(top[key]) for key, parse in parsers.items()
    })
    if config.serial is None and config.solis_exporter is None and config.gateway is None:
        raise ConfigError("Empty configuration!")
    return config


def read_config_file(filename: str | PathLike[str]) -> Config:
    """Read and parse a configuration file."""
    with open(filename, encoding="utf-8") as file:
        return parse_config(file.read())