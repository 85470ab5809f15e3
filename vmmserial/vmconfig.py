"""Per-VM resource tables built from the Init component's configuration.

Each table takes the configuration attribute as it appears in the
component description, allocates the capabilities the resources need from
a :class:`CapAllocator`, and answers the monitor's lookups by index or
address.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence, TypeVar

__all__ = [
    "ObjectType",
    "CapObject",
    "CapAllocator",
    "ExcludedRegions",
    "RamRegion",
    "ExtraRam",
    "GuestMapping",
    "GuestMappings",
    "Connection",
    "InitConnections",
    "IoPort",
    "IoPorts",
    "VmIrq",
    "VmIrqs",
    "MemoryRange",
    "PciDevice",
    "PciDevices",
]

_T = TypeVar("_T")


class ObjectType(Enum):
    """Kinds of kernel object a capability can refer to."""

    UNTYPED = "untyped"
    FRAME = "frame"
    SECTION = "section"
    IO_PORT = "io_port"
    NOTIFICATION = "notification"
    IRQ_HANDLER = "irq_handler"
    IO_SPACE = "io_space"


_FRAME_TYPES = {12: ObjectType.FRAME, 20: ObjectType.SECTION, 21: ObjectType.SECTION}


@dataclass(frozen=True)
class CapObject:
    """An allocated object together with the capability slot that names it."""

    name: str
    kind: ObjectType
    cap: int
    attrs: Mapping[str, Any] = field(default_factory=dict)


class CapAllocator:
    """Hands out capability slots for named objects.

    Allocating a name that already exists returns the capability given the
    first time, so several tables may refer to the same object.
    """

    def __init__(self, first_cap: int = 1) -> None:
        if first_cap < 1:
            raise ValueError("capability slot 0 is the null capability")
        self._next = first_cap
        self._objects: dict[str, CapObject] = {}

    def alloc(self, name: str, kind: ObjectType, **kwargs: Any) -> int:
        """Allocate (or reuse) the object ``name`` and return its capability."""
        existing = self._objects.get(name)
        if existing is not None:
            if existing.kind is not kind:
                raise ValueError(
                    f"object {name!r} already allocated as {existing.kind.value}, not {kind.value}"
                )
            return existing.cap
        obj = CapObject(name, kind, self._next, dict(kwargs))
        self._objects[name] = obj
        self._next += 1
        return obj.cap

    def lookup(self, name: str) -> int:
        """Return the capability of an allocated object."""
        return self.describe(name).cap

    def describe(self, name: str) -> CapObject:
        """Return the full record of an allocated object."""
        try:
            return self._objects[name]
        except KeyError:
            raise KeyError(f"no object named {name!r}") from None

    def __iter__(self) -> Iterator[CapObject]:
        return iter(self._objects.values())

    def __len__(self) -> int:
        return len(self._objects)


def _strip(name: str) -> str:
    return name.strip('"')


def _item(items: Sequence[_T], index: int, what: str) -> _T:
    if not 0 <= index < len(items):
        raise IndexError(f"{what} {index} out of range (have {len(items)})")
    return items[index]


def _frame_type(page_bits: int) -> ObjectType:
    try:
        return _FRAME_TYPES[page_bits]
    except KeyError:
        raise ValueError(f"unsupported page size of {page_bits} bits") from None


def _allocate_frames(
    allocator: CapAllocator, prefix: str, paddr: int, size: int, page_bits: int
) -> Iterator[tuple[int, int]]:
    kind = _frame_type(page_bits)
    for offset in range(0, size, 2**page_bits):
        frame = paddr + offset
        cap = allocator.alloc(f"{prefix}_{frame}", kind, paddr=frame, read=True, write=True)
        yield frame, cap


def _frame_index(frames: Iterable[tuple[int, int]]) -> dict[int, int]:
    index: dict[int, int] = {}
    for frame, cap in frames:
        if frame in index:
            raise ValueError(f"frame {frame:#x} is mapped more than once")
        index[frame] = cap
    return index


class ExcludedRegions:
    """Guest-physical ranges the VM must not be given."""

    def __init__(self, regions: Optional[Iterable[tuple[int, int]]]) -> None:
        self._regions = [(paddr, size) for paddr, size in (regions or ())]

    def __len__(self) -> int:
        return len(self._regions)

    def get(self, index: int) -> tuple[int, int]:
        """Return ``(paddr, bytes)`` of an excluded region."""
        return _item(self._regions, index, "region")


@dataclass(frozen=True)
class RamRegion:
    paddr: int
    size_bits: int
    cap: int


class ExtraRam:
    """Untyped memory at fixed physical addresses given to the guest as RAM."""

    def __init__(self, regions: Optional[Iterable[tuple[int, int]]], allocator: CapAllocator) -> None:
        self._regions = [
            RamRegion(
                paddr,
                size_bits,
                allocator.alloc(
                    f"extra_ram_cap_{paddr}",
                    ObjectType.UNTYPED,
                    read=True,
                    write=True,
                    paddr=paddr,
                    size_bits=size_bits,
                ),
            )
            for paddr, size_bits in (regions or ())
        ]

    def __len__(self) -> int:
        return len(self._regions)

    def get(self, index: int) -> RamRegion:
        """Return the untyped region at ``index``."""
        return _item(self._regions, index, "untyped")


@dataclass(frozen=True)
class GuestMapping:
    region_paddr: int
    size: int
    page_bits: int
    frame: int
    cap: int


class GuestMappings:
    """Device frames mapped into the guest, one entry per page."""

    def __init__(self, mappings: Optional[Iterable[Mapping[str, int]]], allocator: CapAllocator) -> None:
        self._maps: list[GuestMapping] = []
        for gmap in mappings or ():
            page_bits = gmap["page_bits"]
            for frame, cap in _allocate_frames(
                allocator, "gmap_frame", gmap["paddr"], gmap["size"], page_bits
            ):
                self._maps.append(GuestMapping(gmap["paddr"], 2**page_bits, page_bits, frame, cap))
        self._by_frame = _frame_index((m.frame, m.cap) for m in self._maps)

    def __len__(self) -> int:
        return len(self._maps)

    def get(self, index: int) -> tuple[int, int]:
        """Return ``(frame, size)`` of the page at ``index``."""
        entry = _item(self._maps, index, "guest mapping")
        return entry.frame, entry.size

    def frame_cap(self, paddr: int) -> int:
        """Return the capability of the frame starting at ``paddr``."""
        try:
            return self._by_frame[paddr]
        except KeyError:
            raise KeyError(f"no guest mapping frame at {paddr:#x}") from None


@dataclass(frozen=True)
class Connection:
    init: str
    irq: Optional[str] = None
    badge: Optional[int] = None


class InitConnections:
    """Device initialisers to run at VM start and their interrupt handlers."""

    def __init__(self, connections: Optional[Iterable[Mapping[str, Any]]]) -> None:
        self._cons: list[Connection] = []
        for con in connections or ():
            if "irq" in con:
                self._cons.append(Connection(_strip(con["init"]), _strip(con["irq"]), con["badge"]))
            else:
                self._cons.append(Connection(_strip(con["init"])))

    def __len__(self) -> int:
        return len(self._cons)

    def init_function(self, index: int) -> str:
        """Name of the initialiser of connection ``index``."""
        return _item(self._cons, index, "connection").init

    def interrupt(self, index: int) -> Optional[tuple[int, str]]:
        """Return ``(badge, handler)`` for a connection, or None if it has no interrupt."""
        con = _item(self._cons, index, "connection")
        if con.irq is None:
            return None
        return con.badge, con.irq


@dataclass(frozen=True)
class IoPort:
    cap: int
    start: int
    end: int
    name: str


class IoPorts:
    """I/O port ranges passed through to the guest."""

    def __init__(self, ports: Optional[Iterable[Mapping[str, Any]]], allocator: CapAllocator) -> None:
        self._pci: list[IoPort] = []
        self._nonpci: list[IoPort] = []
        for port in ports or ():
            start, end = port["start"], port["end"]
            cap = allocator.alloc(
                f"iport_{start}_{end}", ObjectType.IO_PORT, start_port=start, end_port=end
            )
            entry = IoPort(cap, start, end, _strip(port["name"]))
            if port.get("pci_device") is not None:
                self._pci.append(entry)
            else:
                self._nonpci.append(entry)

    def pci_ports(self) -> list[IoPort]:
        """Port ranges belonging to PCI devices."""
        return list(self._pci)

    def nonpci_ports(self) -> list[IoPort]:
        """Port ranges not belonging to any PCI device."""
        return list(self._nonpci)

    def find(self, start: int, end: int) -> Optional[int]:
        """Capability of the first range containing ``start..end``, or None."""
        for port in (*self._pci, *self._nonpci):
            if start >= port.start and end <= port.end:
                return port.cap
        return None


@dataclass(frozen=True)
class VmIrq:
    name: str
    source: int
    level_trig: int
    active_low: int
    dest: int
    cap: int


class VmIrqs:
    """Hardware interrupts routed to the guest, all signalling one notification."""

    def __init__(self, irqs: Optional[Iterable[Mapping[str, Any]]], allocator: CapAllocator) -> None:
        self.notification = allocator.alloc(
            "irq_notification_obj", ObjectType.NOTIFICATION, read=True
        )
        self._irqs: list[VmIrq] = []
        for irq in irqs or ():
            cap = allocator.alloc(
                f"irq_{irq['source']}",
                ObjectType.IRQ_HANDLER,
                vector=irq["dest"],
                ioapic=irq["ioapic"],
                ioapic_pin=irq["source"],
                level=irq["level_trig"],
                polarity=irq["active_low"],
                notification=self.notification,
            )
            self._irqs.append(
                VmIrq(
                    _strip(irq["name"]),
                    irq["source"],
                    irq["level_trig"],
                    irq["active_low"],
                    irq["dest"],
                    cap,
                )
            )

    def __len__(self) -> int:
        return len(self._irqs)

    def get(self, index: int) -> VmIrq:
        """Return the interrupt at ``index``."""
        return _item(self._irqs, index, "irq")


@dataclass(frozen=True)
class MemoryRange:
    paddr: int
    size: int
    page_bits: int


@dataclass(frozen=True)
class PciDevice:
    name: str
    bus: int
    dev: int
    fun: int
    iospace_cap: int
    irq: str
    memory: tuple[MemoryRange, ...]


class PciDevices:
    """PCI devices passed through to the guest with their MMIO frames."""

    def __init__(
        self,
        devices: Optional[Iterable[Mapping[str, Any]]],
        iospace_domain: Optional[int],
        has_iospace: bool,
        allocator: CapAllocator,
    ) -> None:
        self._devices: list[PciDevice] = []
        frames: list[tuple[int, int]] = []
        for device in devices or ():
            bus, dev, fun = device["bus"], device["dev"], device["fun"]
            iospace_cap = 0
            if has_iospace:
                if iospace_domain is None:
                    raise ValueError("an IOSpace needs an iospace domain")
                devid = iospace_domain * 65536 + bus * 256 + dev * 8 + fun
                iospace_cap = allocator.alloc(
                    f"iospace_{devid}",
                    ObjectType.IO_SPACE,
                    domainID=iospace_domain,
                    bus=bus,
                    dev=dev,
                    fun=fun,
                )
            ranges = []
            for mem in device["memory"]:
                frames.extend(
                    _allocate_frames(
                        allocator, "mmio_frame", mem["paddr"], mem["size"], mem["page_bits"]
                    )
                )
                ranges.append(MemoryRange(mem["paddr"], mem["size"], mem["page_bits"]))
            self._devices.append(
                PciDevice(
                    _strip(device["name"]),
                    bus,
                    dev,
                    fun,
                    iospace_cap,
                    _strip(device["irq"]),
                    tuple(ranges),
                )
            )
        self._frames = _frame_index(frames)

    def __len__(self) -> int:
        return len(self._devices)

    def get(self, index: int) -> PciDevice:
        """Return the device at ``index``; its IOSpace cap is 0 if it has none."""
        return _item(self._devices, index, "pci device")

    def memory(self, index: int) -> tuple[MemoryRange, ...]:
        """Memory ranges of the device at ``index``."""
        return self.get(index).memory

    def irq(self, index: int) -> str:
        """Name of the interrupt of the device at ``index``."""
        return self.get(index).irq

    def frame_cap(self, paddr: int) -> int:
        """Return the capability of the MMIO frame starting at ``paddr``."""
        try:
            return self._frames[paddr]
        except KeyError:
            raise KeyError(f"no device frame at {paddr:#x}") from None