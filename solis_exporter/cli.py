"""Command line entry point: wires the serial bus, exporter and gateway together."""

from __future__ import annotations

import argparse
import logging
import queue
import threading
from collections.abc import Callable, Sequence

from .config import ConfigError, read_config_file
from .exporter import SolisExporter
from .gateway import Gateway
from .serial_bus import open_serial

log = logging.getLogger(__name__)

_DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


def _run_all(runners: dict[str, Callable[[], None]]) -> int:
    """Run each component in a thread; stop at the first failure."""
    results: queue.Queue[tuple[str, Exception | None]] = queue.Queue()

    def target(name: str, func: Callable[[], None]) -> None:
        try:
            func()
        except Exception as exc:  # any failing component ends the program
            results.put((name, exc))
        else:
            results.put((name, None))

    for name, func in runners.items():
        threading.Thread(target=target, args=(name, func), name=name, daemon=True).start()
    for _ in runners:
        name, error = results.get()
        if error is not None:
            log.error("%s: %s", name, error)
            return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Run the configured components; returns the process exit status."""
    parser = argparse.ArgumentParser(prog="solis_exporter")
    parser.add_argument("-config", "--config", dest="config", default="solis_exporter.yml",
                        help="path to configuration file")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s", datefmt=_DATE_FORMAT)

    try:
        config = read_config_file(args.config)
    except (OSError, ConfigError) as exc:
        log.error("read config: %s", exc)
        return 1

    runners: dict[str, Callable[[], None]] = {}
    bus = None
    try:
        if config.serial is not None:
            section = "serial"
            bus = open_serial(config.serial)
            if config.serial.dump:
                formatter = logging.Formatter("%(asctime)s.%(msecs)03d %(message)s",
                                              datefmt=_DATE_FORMAT)
                for handler in logging.getLogger().handlers:
                    handler.setFormatter(formatter)
        if config.solis_exporter is not None:
            section = "solis_exporter"
            exporter = SolisExporter(config.solis_exporter,
                                     bus.subscribe(5) if bus is not None else None)
            runners["solis_exporter"] = exporter.run
        if config.gateway is not None:
            section = "gateway"
            if bus is None:
                log.error("gateway requires serial")
                return 1
            runners["gateway"] = Gateway(config.gateway, bus.inject).run
    except (OSError, ValueError) as exc:
        log.error("%s: %s", section, exc)
        return 1
    if bus is not None:
        runners["serial"] = bus.run
    return _run_all(runners)


if __name__ == "__main__":
    raise SystemExit(main())