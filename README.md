# solis_exporter

Monitor a Solis hybrid inverter from the RS-485 bus it shares with its
data logger.

The program listens on the serial line and passively decodes the Modbus
request/response pairs exchanged by the logger and the inverter. The
register values it sees are published as Prometheus metrics (battery
state of charge, PV voltages and currents, grid power, energy totals,
fault flags and more). Optionally, it runs a Modbus TCP gateway that
injects your own requests onto the bus in the gaps between the
logger's polls, restricted by a set of allow rules.

## Installation

```
pip install .
```

This installs the `solis_exporter` command.

## Running

```
solis_exporter --config solis_exporter.yml
```

Without `--config` (also accepted as `-config`), the file
`solis_exporter.yml` in the current directory is read. The command
starts every configured section in its own thread and exits with status
1 if the configuration cannot be read, a section cannot be set up, or a
running section fails.

## Configuration

The configuration is a YAML file with up to three sections. Unknown keys
are rejected, values are type-checked, and at least one section must be
present.

```yaml
serial:
  device: /dev/ttyUSB0      # RS-485 adapter, opened at 9600 baud, 8N1
  dump: false               # log every packet in hex

solis_exporter:
  listen: ":3105"           # address for the /metrics endpoint
  station: 1                # inverter Modbus station id
  go_collector: false       # Python garbage collector statistics
  process_collector: false  # process CPU, memory and file descriptor metrics

gateway:
  listen: "127.0.0.1:502"   # Modbus TCP listener
  rules:
    - from: 30001
      to: 39999
      functions: [3, 4]
    - from: 43110           # "to" defaults to "from"
      functions: [6]
    - from: 43143
      to: 43150
      functions: [16]
      station: [1]
```

The defaults shown for `listen` and `station` apply when the keys are
left out.

### Serial

With `dump: true` every packet is logged in hex, with log timestamps in
milliseconds: `->` and `-<` for a sniffed request and response, `=>` and
`=<` for an injected request and its response.

### Exporter

Metrics are served at `http://<listen>/metrics`; other paths return 404.
Only read responses (function codes 3 and 4) from the configured station
update inverter metrics. Besides the inverter gauges, the exporter
always exposes:

- `solis_serial_messages_total{source="sniffed"|"injected"}`
- `solis_serial_errors_total{error="crc_failed"|"decode_failed"|"response_mismatch"|"timeout"}`
- `solis_serial_last_message_time_seconds`
- `python_info`

`go_collector` adds `python_gc_collections_total`; `process_collector`
adds `process_cpu_seconds_total`, `process_open_fds` (where the platform
provides it), `process_resident_memory_bytes`,
`process_start_time_seconds` and `process_virtual_memory_bytes`.

Single-value gauges appear only once the inverter has reported them, so
no spurious zeroes are exported after a restart. The grid meter energy
totals ignore zero readings for the same reason.

### Gateway

The gateway needs the `serial` section. Each TCP request is checked
against the rules; a request is accepted when every register it touches
lies within one rule's `from`..`to` range and its station and function
code are listed in that rule. When omitted, `station` defaults to `[1]`
and `functions` to `[1, 2, 3, 4]`. Rejected requests get Modbus
exception 2; malformed ones get exception 1. If the exchange on the bus
fails, the TCP connection is closed.

Requests are only sent once the bus has been quiet for a while, so the
inverter's own logger is not disturbed. Broadcasts (station 0) get no
response.

## Library use

The Modbus framing can be used on its own:

```python
from solis_exporter.modbus import ModbusExchange, modbus_crc

m = ModbusExchange()
m.parse_request(bytes.fromhex("010480E80001983E"))
m.parse_response(bytes.fromhex("01040231056CA3"))
print(m.base, m.count, m.data.hex())
```

`parse_request` and `parse_response` return the number of bytes still
needed, or 0 when the packet is complete. A bad packet raises a
`ModbusError` subclass (`CRCError`, `InvalidPacketError`,
`ResponseMismatchError`), which is also stored in the exchange's `error`
attribute. An exception response from the device sets `exception`.
Function codes 2, 3, 4, 6 and 16 are understood.

`solis_exporter.rules.check_rules(m, rules)` applies a list of `Rule`
objects to a parsed exchange, and `solis_exporter.config.parse_config`
and `read_config_file` load the configuration described above.

## Tests

```
pip install .[test]
pytest
```