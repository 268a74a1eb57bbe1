import pytest

from solis_exporter.config import (
    Config,
    ConfigError,
    GatewayConfig,
    SerialConfig,
    SolisExporterConfig,
    parse_config,
    read_config_file,
)
from solis_exporter.modbus import ModbusExchange
from solis_exporter.rules import Rule, check_rules

FULL = """
serial:
  device: /dev/ttyUSB0
  dump: true
solis_exporter:
  listen: ":3105"
  station: 1
  go_collector: true
gateway:
  listen: 127.0.0.1:502
  rules:
    - from: 30001
      to: 39999
      functions: [3, 4]
    - from: 43110
      functions: [6]
      station: [1, 2]
"""


def test_full_config():
    config = parse_config(FULL)
    assert config.serial == SerialConfig(device="/dev/ttyUSB0", dump=True)
    assert config.solis_exporter == SolisExporterConfig(
        listen=":3105", station=1, go_collector=True, process_collector=False
    )
    assert config.gateway == GatewayConfig(
        listen="127.0.0.1:502",
        rules=[
            Rule(start=30001, end=39999, functions=(3, 4)),
            Rule(start=43110, end=0, functions=(6,), stations=(1, 2)),
        ],
    )


def test_rules_from_config_are_usable():
    rules = parse_config(FULL).gateway.rules
    allowed = ModbusExchange(station=2, base=43110, count=1, function=6)
    denied = ModbusExchange(station=2, base=30001, count=1, function=4)
    assert check_rules(allowed, rules) is True
    assert check_rules(denied, rules) is False


def test_single_section_leaves_others_absent():
    config = parse_config("serial:\n  device: /dev/ttyS0\n")
    assert config == Config(serial=SerialConfig(device="/dev/ttyS0"))


def test_empty_section_mapping_uses_defaults():
    config = parse_config("solis_exporter: {}\n")
    assert config.solis_exporter == SolisExporterConfig()
    assert config.serial is None


def test_null_sections_count_as_empty_configuration():
    with pytest.raises(ConfigError):
        parse_config("serial:\ngateway:\n")


def test_empty_document_rejected():
    with pytest.raises(ConfigError):
        parse_config("")


def test_unknown_top_level_field_rejected():
    with pytest.raises(ConfigError, match="bogus"):
        parse_config("serial: {}\nbogus: 1\n")


def test_unknown_nested_field_rejected():
    with pytest.raises(ConfigError, match="baud"):
        parse_config("serial:\n  device: /dev/ttyS0\n  baud: 9600\n")


def test_wrong_types_rejected():
    with pytest.raises(ConfigError):
        parse_config("serial:\n  dump: 1\n")
    with pytest.raises(ConfigError):
        parse_config("solis_exporter:\n  station: 300\n")
    with pytest.raises(ConfigError):
        parse_config("gateway:\n  rules:\n    - from: 70000\n")


def test_invalid_yaml_rejected():
    with pytest.raises(ConfigError):
        parse_config("serial: [unclosed\n")


def test_read_config_file(tmp_path):
    path = tmp_path / "solis_exporter.yml"
    path.write_text(FULL, encoding="utf-8")
    assert read_config_file(path) == parse_config(FULL)


def test_read_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_config_file(tmp_path / "missing.yml")