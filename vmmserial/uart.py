"""Emulation of a 16550A UART attached to a guest's legacy serial port."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Iterable, Optional

from vmmserial.uart_fifo import (
    INTERRUPT_ID_MASK,
    LINE_CONTROL_DLAB,
    TRIGGER_LEVELS,
    UART_FIFO_LENGTH,
    FifoControl,
    InterruptEnable,
    InterruptId,
    LineStatus,
    ModemControl,
    ModemStatus,
    SerialFifo,
)

__all__ = [
    "NS_PER_SECOND",
    "NS_PER_MS",
    "MAX_XMIT_RETRY",
    "INPUT_RING_SIZE",
    "Timer",
    "SerialHost",
    "InputRing",
    "SerialPort",
]

NS_PER_SECOND = 1_000_000_000
NS_PER_MS = 1_000_000
MAX_XMIT_RETRY = 4
INPUT_RING_SIZE = 4096 - 8
"""Data bytes in the shared input page (a 4 KiB page less two 32-bit indices)."""

_CHARS_PER_TRANSMIT_BURST = 16
_MORE_CHARS_DELAY_NS = 3 * NS_PER_MS


class Timer(IntEnum):
    """Timers the UART arms on its host."""

    FIFO_TIMEOUT = 0
    TRANSMIT = 1
    MODEM_STATUS = 2
    MORE_CHARS = 3


@dataclass
class SerialHost:
    """The environment a UART runs in: interrupt line, output, timers and clock.

    Output bytes are collected in ``output``; armed timers are kept in
    ``timers`` as absolute deadlines in nanoseconds.
    """

    clock: Callable[[], int] = time.monotonic_ns
    irq_level: bool = False
    output: bytearray = field(default_factory=bytearray)
    timers: dict = field(default_factory=dict)

    def set_irq(self, level: bool) -> None:
        """Drive the UART's interrupt line high or low."""
        self.irq_level = bool(level)

    def putchar(self, char: int) -> None:
        """Emit one transmitted byte."""
        self.output.append(char & 0xFF)

    def start_timer(self, timer: Timer, deadline_ns: int) -> None:
        """Arm a one-shot timer that fires at an absolute time."""
        self.timers[timer] = deadline_ns

    def start_relative_timer(self, timer: Timer, delay_ns: int) -> None:
        """Arm a one-shot timer that fires after a delay from now."""
        self.timers[timer] = self.now_ns() + delay_ns

    def stop_timer(self, timer: Timer) -> None:
        """Disarm a timer if it is armed."""
        self.timers.pop(timer, None)

    def now_ns(self) -> int:
        """Current time in nanoseconds."""
        return self.clock()


class InputRing:
    """Single-producer, single-consumer byte ring feeding the UART."""

    def __init__(self, size: int = INPUT_RING_SIZE) -> None:
        if size < 2:
            raise ValueError("input ring needs room for at least one byte")
        self._buf = bytearray(size)
        self._head = 0
        self._tail = 0

    def push(self, data: bytes) -> int:
        """Append bytes until the ring is full; return how many were taken."""
        size = len(self._buf)
        accepted = 0
        for byte in data:
            following = (self._tail + 1) % size
            if following == self._head:
                break
            self._buf[self._tail] = byte
            self._tail = following
            accepted += 1
        return accepted

    def pop(self) -> Optional[int]:
        """Remove and return the oldest byte, or None if the ring is empty."""
        if self._head == self._tail:
            return None
        value = self._buf[self._head]
        self._head = (self._head + 1) % len(self._buf)
        return value


class SerialPort:
    """A 16550A UART whose registers are reached through eight I/O ports."""

    def __init__(self, host: SerialHost, input_ring: InputRing, baudbase: int = 115200) -> None:
        self.host = host
        self.input_ring = input_ring
        self.baudbase = baudbase

        self.divider = 0
        self.rbr = 0
        self.thr = 0
        self.tsr = 0
        self.ier = 0
        self.iir = 0
        self.lcr = 0
        self.mcr = 0
        self.lsr = 0
        self.msr = 0
        self.scr = 0
        self.fcr = 0
        self.thr_ipending = False
        self.timeout_ipending = False
        self.last_break_enable = 0
        self.tsr_retry = 0
        self.last_xmit_ts = 0
        self.char_transmit_time = 0
        self.poll_msl = 0
        self.chars_sent = 0

        self.speed = 0
        self.parity = "N"
        self.data_bits = 8
        self.stop_bits = 1

        self.recv_fifo = SerialFifo(overwrite=False)
        self.xmit_fifo = SerialFifo(overwrite=True)

        self.reset()
        self.update_modem_status()

    def reset(self) -> None:
        """Return the registers to their power-on values (9600 8N1)."""
        self.rbr = 0
        self.ier = 0
        self.iir = InterruptId.NO_INT
        self.lcr = 0
        self.lsr = LineStatus.TEMT | LineStatus.THRE
        self.msr = ModemStatus.DCD | ModemStatus.DSR | ModemStatus.CTS
        self.divider = 0x0C
        self.mcr = ModemControl.OUT2
        self.scr = 0
        self.tsr_retry = 0
        self.char_transmit_time = (NS_PER_SECOND // 9600) * 10
        self.poll_msl = 0
        self.recv_fifo.clear()
        self.xmit_fifo.clear()
        self.last_xmit_ts = self.host.now_ns()
        self.thr_ipending = False
        self.last_break_enable = 0

    # Internal state updates

    def _update_irq(self) -> None:
        pending = InterruptId.NO_INT
        if (self.ier & InterruptEnable.RLSI) and (self.lsr & LineStatus.INT_ANY):
            pending = InterruptId.RLSI
        elif (self.ier & InterruptEnable.RDI) and self.timeout_ipending:
            pending = InterruptId.CTI
        elif (
            (self.ier & InterruptEnable.RDI)
            and (self.lsr & LineStatus.DR)
            and (not (self.fcr & FifoControl.ENABLE) or len(self.recv_fifo) >= self.recv_fifo.itl)
        ):
            pending = InterruptId.RDI
        elif (self.ier & InterruptEnable.THRI) and self.thr_ipending:
            pending = InterruptId.THRI
        elif (self.ier & InterruptEnable.MSI) and (self.msr & ModemStatus.ANY_DELTA):
            pending = InterruptId.MSI

        self.iir = int(pending) | (self.iir & 0xF0)
        self.host.set_irq(pending != InterruptId.NO_INT)

    def _update_parameters(self) -> None:
        if self.divider == 0:
            return
        frame_size = 1
        if self.lcr & 0x08:
            frame_size += 1
            parity = "E" if self.lcr & 0x10 else "O"
        else:
            parity = "N"
        stop_bits = 2 if self.lcr & 0x04 else 1
        data_bits = (self.lcr & 0x03) + 5
        frame_size += data_bits + stop_bits
        speed = self.baudbase // self.divider
        if speed <= 0:
            raise ValueError(f"baud base {self.baudbase} too low for divider {self.divider}")
        self.speed = speed
        self.parity = parity
        self.data_bits = data_bits
        self.stop_bits = stop_bits
        self.char_transmit_time = (NS_PER_SECOND // speed) * frame_size

    def update_modem_status(self) -> None:
        """Refresh the modem status lines, setting delta bits on change."""
        old = self.msr
        self.msr |= ModemStatus.CTS | ModemStatus.DCD
        if self.msr != old:
            self.msr = self.msr | ((self.msr >> 4) ^ (old >> 4))
            if (self.msr & ModemStatus.TERI) and not (old & ModemStatus.RI):
                self.msr &= ~ModemStatus.TERI & 0xFF
            self._update_irq()

    def transmit(self) -> None:
        """Move the next byte into the shift register and send it."""
        new_xmit_ts = self.host.now_ns()

        if self.tsr_retry <= 0:
            if self.fcr & FifoControl.ENABLE:
                self.tsr = self.xmit_fifo.get()
                if not len(self.xmit_fifo):
                    self.lsr |= LineStatus.THRE
            else:
                self.tsr = self.thr
                self.lsr |= LineStatus.THRE

        if self.mcr & ModemControl.LOOP:
            self.receive(bytes([self.tsr]))
        elif self.chars_sent >= _CHARS_PER_TRANSMIT_BURST:
            if self.tsr_retry <= MAX_XMIT_RETRY:
                self.tsr_retry += 1
                self.host.start_timer(Timer.TRANSMIT, new_xmit_ts + self.char_transmit_time)
                return
            if self.poll_msl < 0:
                self.tsr_retry = -1
        else:
            self.host.putchar(self.tsr)
            self.chars_sent += 1
            self.tsr_retry = 0

        self.last_xmit_ts = self.host.now_ns()
        if not (self.lsr & LineStatus.THRE):
            self.host.start_timer(Timer.TRANSMIT, self.last_xmit_ts + self.char_transmit_time)
        else:
            self.lsr |= LineStatus.TEMT
            self.thr_ipending = True
            self._update_irq()

    # Register access

    def write(self, addr: int, value: int) -> None:
        """Write a value to register ``addr`` (taken modulo 8)."""
        addr &= 7
        if addr == 0:
            if self.lcr & LINE_CONTROL_DLAB:
                self.divider = ((self.divider & 0xFF00) | value) & 0xFFFF
                self._update_parameters()
            else:
                self.thr = value & 0xFF
                if self.fcr & FifoControl.ENABLE:
                    self.xmit_fifo.put(self.thr)
                    self.lsr &= ~(LineStatus.TEMT | LineStatus.THRE) & 0xFF
                else:
                    self.lsr &= ~LineStatus.THRE & 0xFF
                self.thr_ipending = False
                self._update_irq()
                self.transmit()
        elif addr == 1:
            if self.lcr & LINE_CONTROL_DLAB:
                self.divider = ((self.divider & 0x00FF) | (value << 8)) & 0xFFFF
                self._update_parameters()
            else:
                self.ier = value & 0x0F
                if self.poll_msl >= 0:
                    if self.ier & InterruptEnable.MSI:
                        self.poll_msl = 1
                        self.update_modem_status()
                    else:
                        self.poll_msl = 0
                if self.lsr & LineStatus.THRE:
                    self.thr_ipending = True
                    self._update_irq()
        elif addr == 2:
            self._write_fifo_control(value & 0xFF)
        elif addr == 3:
            self.lcr = value & 0xFF
            self._update_parameters()
            self.last_break_enable = (value >> 6) & 1
        elif addr == 4:
            self.mcr = value & 0x1F
        elif addr == 7:
            self.scr = value & 0xFF

    def _write_fifo_control(self, value: int) -> None:
        if self.fcr == value:
            return
        if (value ^ self.fcr) & FifoControl.ENABLE:
            value |= FifoControl.XMIT_RESET | FifoControl.RECV_RESET
        if value & FifoControl.RECV_RESET:
            self.host.stop_timer(Timer.FIFO_TIMEOUT)
            self.timeout_ipending = False
            self.recv_fifo.clear()
        if value & FifoControl.XMIT_RESET:
            self.xmit_fifo.clear()
        if value & FifoControl.ENABLE:
            self.iir |= InterruptId.FIFO_ENABLED
            self.recv_fifo.itl = TRIGGER_LEVELS[value & FifoControl.ITL_MASK]
        else:
            self.iir &= ~InterruptId.FIFO_ENABLED & 0xFF
        self.fcr = value & 0xC9
        self._update_irq()

    def read(self, addr: int) -> int:
        """Read register ``addr`` (taken modulo 8), with its side effects."""
        addr &= 7
        if addr == 0:
            if self.lcr & LINE_CONTROL_DLAB:
                return self.divider & 0xFF
            if self.fcr & FifoControl.ENABLE:
                ret = self.recv_fifo.get()
                if len(self.recv_fifo) == 0:
                    self.lsr &= ~(LineStatus.DR | LineStatus.BI) & 0xFF
                else:
                    self.host.start_timer(
                        Timer.FIFO_TIMEOUT, self.host.now_ns() + self.char_transmit_time * 4
                    )
                self.timeout_ipending = False
            else:
                ret = self.rbr
                self.lsr &= ~(LineStatus.DR | LineStatus.BI) & 0xFF
            self._update_irq()
            return ret
        if addr == 1:
            if self.lcr & LINE_CONTROL_DLAB:
                return (self.divider >> 8) & 0xFF
            return self.ier
        if addr == 2:
            ret = self.iir
            if (ret & INTERRUPT_ID_MASK) == InterruptId.THRI:
                self.thr_ipending = False
                self._update_irq()
            return int(ret)
        if addr == 3:
            return self.lcr
        if addr == 4:
            return int(self.mcr)
        if addr == 5:
            ret = int(self.lsr)
            if self.lsr & (LineStatus.BI | LineStatus.OE):
                self.lsr &= ~(LineStatus.BI | LineStatus.OE) & 0xFF
                self._update_irq()
            return ret
        if addr == 6:
            if self.mcr & ModemControl.LOOP:
                ret = (self.mcr & 0x0C) << 4
                ret |= (self.mcr & 0x02) << 3
                ret |= (self.mcr & 0x01) << 5
                return ret
            if self.poll_msl >= 0:
                self.update_modem_status()
            ret = int(self.msr)
            if self.msr & ModemStatus.ANY_DELTA:
                self.msr &= 0xF0
                self._update_irq()
            return ret
        return self.scr

    # Receive path

    def receive(self, data: bytes) -> None:
        """Deliver bytes arriving on the line to the receiver."""
        if not data:
            raise ValueError("no data to receive")
        if self.fcr & FifoControl.ENABLE:
            for byte in data:
                if self.recv_fifo.put(byte):
                    self.lsr |= LineStatus.OE
            self.lsr |= LineStatus.DR
            self.host.start_timer(
                Timer.FIFO_TIMEOUT, self.host.now_ns() + self.char_transmit_time * 4
            )
        else:
            if self.lsr & LineStatus.DR:
                self.lsr |= LineStatus.OE
            self.rbr = data[0] & 0xFF
            self.lsr |= LineStatus.DR
        self._update_irq()

    def can_receive(self) -> int:
        """Number of bytes the receiver is willing to accept now."""
        if self.fcr & FifoControl.ENABLE:
            count = len(self.recv_fifo)
            if count < UART_FIFO_LENGTH:
                itl = self.recv_fifo.itl
                return itl - count if count <= itl else 1
            return 0
        return 0 if self.lsr & LineStatus.DR else 1

    def fifo_timeout(self) -> None:
        """Raise a character timeout if the receive FIFO still holds data."""
        if len(self.recv_fifo):
            self.timeout_ipending = True
            self._update_irq()

    def _drain_input(self) -> None:
        while self.can_receive() and (byte := self.input_ring.pop()) is not None:
            self.receive(bytes([byte]))
        if not self.can_receive():
            self.host.start_relative_timer(Timer.MORE_CHARS, _MORE_CHARS_DELAY_NS)

    # Entry points from the surrounding monitor

    def timer_interrupt(self, completed: Iterable[Timer]) -> None:
        """Handle the timers that have fired."""
        fired = set(completed)
        if Timer.FIFO_TIMEOUT in fired:
            self.fifo_timeout()
        if Timer.TRANSMIT in fired:
            self.chars_sent = 0
            self.transmit()
        if Timer.MODEM_STATUS in fired:
            self.update_modem_status()
        if Timer.MORE_CHARS in fired:
            self._drain_input()

    def character_interrupt(self) -> None:
        """Pull newly arrived input from the ring into the receiver."""
        self._drain_input()

    def port_in(self, port: int, size: int) -> int:
        """Handle a guest ``in`` instruction on one of the UART's ports."""
        if size != 1:
            raise ValueError("serial only supports reads of size 1")
        return self.read(port)

    def port_out(self, port: int, size: int, value: int) -> None:
        """Handle a guest ``out`` instruction on one of the UART's ports."""
        if size != 1:
            raise ValueError("serial only supports writes of size 1")
        self.write(port, value)