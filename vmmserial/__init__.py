"""Device models for a virtual machine monitor: a 16550A UART, a partitioning block server and guest configuration tables."""

__version__ = "0.1.0"