# vmmserial

Device models for a virtual machine monitor, written as plain Python objects
that a host program drives:

- `vmmserial.uart` – a 16550A UART (`SerialPort`) with receive and transmit
  FIFOs, interrupt identification, loopback, modem status and timer-driven
  transmission. Its surroundings are a `SerialHost`: the interrupt line, the
  output bytes, the armed timers and the clock. Input for the guest arrives
  through an `InputRing`.
- `vmmserial.uart_fifo` – the register bit definitions (`InterruptEnable`,
  `InterruptId`, `LineStatus`, `ModemControl`, `ModemStatus`, `FifoControl`)
  and the 16-byte `SerialFifo`.
- `vmmserial.sataserver` – `SataServer`, which shares the MBR partitions of
  one disk (`BlockDevice`, held in memory) among several clients. Each client
  sees its own virtual disk: sector 0 is the disk's MBR with a rewritten
  partition table, sectors 1–63 read as zeros, and the client's partitions
  follow one another from sector 64. Helpers: `PartitionEntry`, `lba_to_chs`,
  `pack_sec_cyl`, `parse_mbr`.
- `vmmserial.vmconfig` – lookup tables built from a guest's configuration:
  `ExcludedRegions`, `ExtraRam`, `GuestMappings`, `InitConnections`,
  `IoPorts`, `VmIrqs` and `PciDevices`, with capability slots handed out by a
  `CapAllocator`.
- `vmmserial.string_reverse` – `reverse_dataport_string`, which reverses a
  NUL-terminated string held in a fixed-size buffer.

## Installing

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## The UART

```python
from vmmserial.uart import InputRing, SerialHost, SerialPort, Timer

host = SerialHost()                  # collects output, records timers
ring = InputRing()
port = SerialPort(host, ring, baudbase=115200)

port.port_out(0x3F8, 1, ord("A"))    # guest writes the transmit register
assert bytes(host.output) == b"A"
lsr = port.port_in(0x3FD, 1)         # guest reads the line status register

ring.push(b"hi")
port.character_interrupt()           # move input into the receiver
assert port.port_in(0x3F8, 1) == ord("h")
```

Port numbers are taken modulo 8. `SerialHost` keeps armed timers in
`host.timers` as absolute deadlines in nanoseconds; when one is due, call
`port.timer_interrupt([Timer.MORE_CHARS])` (or whichever timers fired).
`host.irq_level` shows the state of the interrupt line. Subclass `SerialHost`
to connect these to something real.

Accesses of any size other than one byte raise `ValueError`, as does a
divisor that gives a baud rate of zero.

## The block server

```python
from vmmserial.sataserver import BlockDevice, PartitionEntry, SataServer

image = bytearray(256 * 512)
image[446:462] = PartitionEntry(sys_id=0x83, start_lba=100, num_sectors=50).pack()
image[462:478] = PartitionEntry(sys_id=0x83, start_lba=150, num_sectors=40).pack()

server = SataServer(BlockDevice(image))
server.configure({1: [1], 2: [2]})
server.capacity(1)                   # 114 sectors: 64 + 50
mbr = server.rx(1, 0, 512)           # virtual MBR for client 1
server.tx(1, 64, bytes(512))         # writes physical sector 100
```

A partition may be given to one client only, and a client may hold at most
four. A configuration that breaks this raises `SataServerError` and leaves
`server.status()` at `ServerStatus.INVALID_CONF`. Requests larger than 4096
bytes, for unknown clients or for sectors outside a client's partitions also
raise `SataServerError`.

## Guest configuration tables

```python
from vmmserial.vmconfig import CapAllocator, ExtraRam, IoPorts

caps = CapAllocator()
ram = ExtraRam([(0x40000000, 28)], caps)
ports = IoPorts([{"start": 0x3F8, "end": 0x3FF, "name": '"com1"', "pci_device": None}], caps)
ports.find(0x3F8, 0x3FF)             # capability of the covering range
```

Allocating the same object name twice returns the same capability.

## What it does not do

The package has no command-line program and no I/O of its own. The UART
does not attach to a terminal or a real serial line; its output goes to
`SerialHost.putchar`. The block server works on an in-memory `BlockDevice`
and does not drive any disk controller. The configuration tables record
capability slots in a `CapAllocator` and do not create kernel objects.