"""Register bit definitions and the 16-byte FIFO of a 16550A UART."""

from __future__ import annotations

from enum import IntEnum, IntFlag

__all__ = [
    "UART_FIFO_LENGTH",
    "LINE_CONTROL_DLAB",
    "INTERRUPT_ID_MASK",
    "TRIGGER_LEVELS",
    "InterruptEnable",
    "InterruptId",
    "LineStatus",
    "ModemControl",
    "ModemStatus",
    "FifoControl",
    "SerialFifo",
]

UART_FIFO_LENGTH = 16
"""Depth of each 16550A FIFO in bytes."""

LINE_CONTROL_DLAB = 0x80
"""Divisor latch access bit of the line control register."""

INTERRUPT_ID_MASK = 0x06
"""Mask selecting the interrupt identifier bits of the IIR."""


class InterruptEnable(IntFlag):
    """Bits of the interrupt enable register (IER)."""

    RDI = 0x01
    THRI = 0x02
    RLSI = 0x04
    MSI = 0x08


class InterruptId(IntEnum):
    """Values reported in the interrupt identification register (IIR)."""

    MSI = 0x00
    NO_INT = 0x01
    THRI = 0x02
    RDI = 0x04
    RLSI = 0x06
    CTI = 0x0C
    FIFO_NOT_FUNCTIONING = 0x80
    FIFO_ENABLED = 0xC0


class LineStatus(IntFlag):
    """Bits of the line status register (LSR)."""

    DR = 0x01
    OE = 0x02
    PE = 0x04
    FE = 0x08
    BI = 0x10
    THRE = 0x20
    TEMT = 0x40
    INT_ANY = 0x1E


class ModemControl(IntFlag):
    """Bits of the modem control register (MCR)."""

    DTR = 0x01
    RTS = 0x02
    OUT1 = 0x04
    OUT2 = 0x08
    LOOP = 0x10


class ModemStatus(IntFlag):
    """Bits of the modem status register (MSR)."""

    DCTS = 0x01
    DDSR = 0x02
    TERI = 0x04
    DDCD = 0x08
    CTS = 0x10
    DSR = 0x20
    RI = 0x40
    DCD = 0x80
    ANY_DELTA = 0x0F


class FifoControl(IntFlag):
    """Bits of the FIFO control register (FCR)."""

    ENABLE = 0x01
    RECV_RESET = 0x02
    XMIT_RESET = 0x04
    DMA_MODE = 0x08
    ITL_MASK = 0xC0


TRIGGER_LEVELS = {0x00: 1, 0x40: 4, 0x80: 8, 0xC0: 14}
"""Receive interrupt trigger level in bytes, keyed by the FCR ITL bits."""


class SerialFifo:
    """A 16-byte ring as found in the 16550A.

    A transmit FIFO (``overwrite=True``) keeps writing into the ring when
    full; a receive FIFO drops the byte and reports an overrun instead.
    """

    def __init__(self, overwrite: bool) -> None:
        self.overwrite = overwrite
        self.itl = 0
        self._data = [0] * UART_FIFO_LENGTH
        self._count = 0
        self._head = 0
        self._tail = 0

    def clear(self) -> None:
        """Empty the FIFO and zero its storage."""
        self._data = [0] * UART_FIFO_LENGTH
        self._count = 0
        self._head = 0
        self._tail = 0

    def put(self, value: int) -> bool:
        """Append a byte; return True if it caused a receive overrun."""
        if self.overwrite or self._count < UART_FIFO_LENGTH:
            self._data[self._head] = value & 0xFF
            self._head = (self._head + 1) % UART_FIFO_LENGTH
        if self._count < UART_FIFO_LENGTH:
            self._count += 1
            return False
        return not self.overwrite

    def get(self) -> int:
        """Remove and return the oldest byte, or 0 if the FIFO is empty."""
        if self._count == 0:
            return 0
        value = self._data[self._tail]
        self._tail = (self._tail + 1) % UART_FIFO_LENGTH
        self._count -= 1
        return value

    def __len__(self) -> int:
        return self._count