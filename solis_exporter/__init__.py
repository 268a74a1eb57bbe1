"""Prometheus exporter and Modbus TCP gateway for Solis inverters on an RS-485 bus."""

__version__ = "0.1.0"

__all__ = ["__version__"]