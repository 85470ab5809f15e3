[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vmmserial"
version = "0.1.0"
description = "Device models for a virtual machine monitor: a 16550A UART, a partitioning block server and guest configuration tables"
requires-python = ">=3.10"
dependencies = []
keywords = ["uart", "16550a", "serial", "emulation", "virtual machine", "mbr", "partition"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vmmserial"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"
