"""A block server that shares one disk's MBR partitions among several guests.

Each client is given a set of physical partitions. Every client sees its own
virtual disk: sector 0 holds the disk's MBR with a rewritten partition table,
sectors 1 to 63 read back as zeros, and the client's partitions follow one
another without gaps from sector 64 onwards.
"""

from __future__ import annotations

import struct
import threading
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterable, Mapping

__all__ = [
    "SECTOR_SIZE",
    "MAX_PARTITIONS",
    "VIRT_START_SECTOR",
    "BUF_SIZE",
    "PART_OFFSET",
    "MAX_NUM_CYL",
    "MAX_NUM_HEAD",
    "MAX_NUM_SECT",
    "ServerStatus",
    "SataServerError",
    "PartitionEntry",
    "BlockDevice",
    "Client",
    "SataServer",
    "lba_to_chs",
    "pack_sec_cyl",
    "parse_mbr",
]

SECTOR_SIZE = 512
MAX_PARTITIONS = 4
VIRT_START_SECTOR = 64
BUF_SIZE = 4096
PART_OFFSET = 446
"""Byte offset of the partition table within the MBR."""

MAX_NUM_CYL = 1023
MAX_NUM_HEAD = 255
MAX_NUM_SECT = 63
START_SECTOR = 0

_ENTRY = struct.Struct("<BBHBBHII")


class ServerStatus(IntEnum):
    """State reported to clients asking whether the server is ready."""

    GOOD = 0
    NOT_DONE = 1
    INVALID_CONF = 2


class SataServerError(Exception):
    """Raised for invalid configurations and failed client requests."""


@dataclass
class PartitionEntry:
    """One 16-byte entry of an MBR partition table."""

    boot: int = 0
    head: int = 0
    sec_cyl: int = 0
    sys_id: int = 0
    end_head: int = 0
    end_sec_cyl: int = 0
    start_lba: int = 0
    num_sectors: int = 0

    def pack(self) -> bytes:
        """Encode the entry in its on-disk little-endian layout."""
        return _ENTRY.pack(
            self.boot,
            self.head,
            self.sec_cyl,
            self.sys_id,
            self.end_head,
            self.end_sec_cyl,
            self.start_lba,
            self.num_sectors,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "PartitionEntry":
        """Decode an entry from exactly 16 bytes."""
        if len(data) != _ENTRY.size:
            raise ValueError(f"partition entry must be {_ENTRY.size} bytes, got {len(data)}")
        return cls(*_ENTRY.unpack(bytes(data)))


def lba_to_chs(lba: int) -> tuple[int, int, int]:
    """Convert a logical block address to (cylinder, head, sector).

    Addresses beyond the last representable cylinder map to the maximum
    geometry, as the MBR convention requires.
    """
    if lba // (MAX_NUM_HEAD * MAX_NUM_SECT) > MAX_NUM_CYL:
        return MAX_NUM_CYL, MAX_NUM_HEAD, MAX_NUM_SECT
    cyl = lba // (MAX_NUM_HEAD * MAX_NUM_SECT)
    head = (lba // MAX_NUM_SECT) % MAX_NUM_HEAD
    sec = (lba % MAX_NUM_SECT) + 1
    return cyl, head, sec


def pack_sec_cyl(cyl: int, head: int, sec: int) -> int:
    """Pack a CHS address's sector and cylinder into the MBR's 16-bit field.

    The 6-bit sector sits in the low byte together with the top two bits of
    the 10-bit cylinder; the cylinder's low eight bits form the high byte.
    The head is stored in its own byte and is only range-checked here.
    """
    if not 0 <= head <= 0xFF:
        raise ValueError(f"head {head} does not fit in a byte")
    return (sec | ((cyl & 0x0300) >> 2) | ((cyl & 0x00FF) << 8)) & 0xFFFF


def parse_mbr(sector: bytes) -> list[PartitionEntry]:
    """Return the four partition entries of a master boot record."""
    if len(sector) < SECTOR_SIZE:
        raise ValueError(f"an MBR needs {SECTOR_SIZE} bytes, got {len(sector)}")
    return [
        PartitionEntry.unpack(sector[offset : offset + _ENTRY.size])
        for offset in range(PART_OFFSET, PART_OFFSET + MAX_PARTITIONS * _ENTRY.size, _ENTRY.size)
    ]


class BlockDevice:
    """An in-memory disk addressed in 512-byte sectors."""

    def __init__(self, image: bytes | bytearray) -> None:
        if len(image) % SECTOR_SIZE:
            raise ValueError("disk image size must be a multiple of the sector size")
        self._image = bytearray(image)

    @property
    def num_sectors(self) -> int:
        return len(self._image) // SECTOR_SIZE

    def _check(self, start: int, count: int) -> None:
        if start < 0 or count < 0 or start + count > self.num_sectors:
            raise SataServerError(
                f"sectors {start}..{start + count} outside a disk of {self.num_sectors}"
            )

    def read_sectors(self, start: int, count: int) -> bytes:
        """Read ``count`` sectors beginning at ``start``."""
        self._check(start, count)
        return bytes(self._image[start * SECTOR_SIZE : (start + count) * SECTOR_SIZE])

    def write_sectors(self, start: int, data: bytes) -> None:
        """Write whole sectors of ``data`` beginning at ``start``."""
        if len(data) % SECTOR_SIZE:
            raise SataServerError("write length must be a multiple of the sector size")
        count = len(data) // SECTOR_SIZE
        self._check(start, count)
        self._image[start * SECTOR_SIZE : (start + count) * SECTOR_SIZE] = data


@dataclass
class Client:
    """A guest served by the server, with its virtual partition table."""

    client_id: int
    partitions: tuple[int, ...]
    partition_tables: list[PartitionEntry] = field(
        default_factory=lambda: [PartitionEntry() for _ in range(MAX_PARTITIONS)]
    )
    capacity: int = 0

    def packed_tables(self) -> bytes:
        return b"".join(entry.pack() for entry in self.partition_tables)


class SataServer:
    """Multiplexes a partitioned disk between clients."""

    def __init__(self, device: BlockDevice) -> None:
        self.device = device
        self._mbr = device.read_sectors(START_SECTOR, 1)
        self.physical_tables = parse_mbr(self._mbr)
        self.clients: dict[int, Client] = {}
        self._assigned = [False] * MAX_PARTITIONS
        self._done_init = False
        self._invalid_config = False
        self._lock = threading.Lock()

    def assign_partition(self, partition: int) -> None:
        """Mark a 1-based partition number as taken, rejecting invalid or reused ones."""
        part = (partition - 1) & 0xFF
        if part >= MAX_PARTITIONS or self._assigned[part]:
            raise SataServerError(f"partition {partition} is invalid or already assigned")
        self._assigned[part] = True

    def configure(self, clients: Mapping[int, Iterable[int]]) -> None:
        """Assign partitions to clients and build their virtual disks.

        ``clients`` maps each client id to the 1-based partition numbers it
        owns. An invalid assignment leaves the server in the
        ``INVALID_CONF`` state and raises :class:`SataServerError`.
        """
        if self._done_init:
            raise SataServerError("server is already configured")
        with self._lock:
            self.clients = {
                client_id: Client(client_id, tuple(parts)) for client_id, parts in clients.items()
            }
            try:
                for client in self.clients.values():
                    if len(client.partitions) > MAX_PARTITIONS:
                        raise SataServerError(
                            f"client {client.client_id} has more than {MAX_PARTITIONS} partitions"
                        )
                    for partition in client.partitions:
                        self.assign_partition(partition)
            except SataServerError:
                self._invalid_config = True
                self._done_init = True
                raise
            for client in self.clients.values():
                self._build_virtual_tables(client)
            self._done_init = True

    def _build_virtual_tables(self, client: Client) -> None:
        sectors = VIRT_START_SECTOR
        client.partition_tables = [PartitionEntry() for _ in range(MAX_PARTITIONS)]
        for entry, partition in zip(client.partition_tables, client.partitions):
            phys = self.physical_tables[partition - 1]
            entry.boot = phys.boot
            entry.sys_id = phys.sys_id
            entry.num_sectors = phys.num_sectors
            entry.start_lba = sectors

            cyl, head, sec = lba_to_chs(entry.start_lba)
            entry.head = head
            entry.sec_cyl = pack_sec_cyl(cyl, head, sec)

            end_lba = entry.start_lba + entry.num_sectors - 1
            cyl, head, sec = lba_to_chs(end_lba)
            entry.end_head = head
            entry.end_sec_cyl = pack_sec_cyl(cyl, head, sec)

            sectors += entry.num_sectors
        client.capacity = sectors

    def _client(self, client_id: int) -> Client:
        try:
            return self.clients[client_id]
        except KeyError:
            raise SataServerError(f"unknown client {client_id}") from None

    def _sector_offset(self, client: Client, sector: int) -> int:
        for entry, partition in zip(client.partition_tables, client.partitions):
            if entry.start_lba <= sector < entry.start_lba + entry.num_sectors:
                return self.physical_tables[partition - 1].start_lba - entry.start_lba
        raise SataServerError(f"sector {sector} is outside client {client.client_id}'s partitions")

    def _check_request(self, length: int) -> None:
        if not self._done_init:
            raise SataServerError("server is not initialised")
        if length > BUF_SIZE:
            raise SataServerError(f"request of {length} bytes exceeds {BUF_SIZE}")

    def rx(self, client_id: int, sector: int, length: int) -> bytes:
        """Read ``length`` bytes from a client's virtual disk at ``sector``."""
        self._check_request(length)
        with self._lock:
            client = self._client(client_id)
            if sector == START_SECTOR:
                part_data = bytearray(self._mbr)
                tables = client.packed_tables()
                part_data[PART_OFFSET : PART_OFFSET + len(tables)] = tables
                return bytes(part_data)
            if sector < VIRT_START_SECTOR:
                return bytes(length)
            offset = self._sector_offset(client, sector)
            return self.device.read_sectors(sector + offset, length // SECTOR_SIZE)

    def tx(self, client_id: int, sector: int, data: bytes) -> int:
        """Write ``data`` to a client's virtual disk; return the bytes accepted.

        Writes below the first virtual partition sector are ignored.
        """
        length = len(data)
        self._check_request(length)
        with self._lock:
            client = self._client(client_id)
            if sector >= VIRT_START_SECTOR:
                offset = self._sector_offset(client, sector)
                count = length // SECTOR_SIZE
                self.device.write_sectors(sector + offset, bytes(data[: count * SECTOR_SIZE]))
            return length

    def capacity(self, client_id: int) -> int:
        """Size of a client's virtual disk in sectors, or 0 before initialisation."""
        if not self._done_init:
            return 0
        return self._client(client_id).capacity

    def status(self) -> ServerStatus:
        """Whether the server is ready, still starting, or misconfigured."""
        if self._invalid_config:
            return ServerStatus.INVALID_CONF
        if not self._done_init:
            return ServerStatus.NOT_DONE
        return ServerStatus.GOOD