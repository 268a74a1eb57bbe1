[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "solis_exporter"
version = "0.1.0"
description = "Prometheus exporter and Modbus TCP gateway for Solis inverters on an RS-485 bus"
requires-python = ">=3.10"
keywords = ["solis", "inverter", "modbus", "prometheus", "exporter", "rs485", "solar"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
    "Topic :: Home Automation",
]
dependencies = [
    "pyserial",
    "pyyaml",
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
solis_exporter = "solis_exporter.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["solis_exporter"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
