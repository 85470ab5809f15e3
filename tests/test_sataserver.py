import pytest

from vmmserial.sataserver import (
    BUF_SIZE,
    MAX_NUM_CYL,
    MAX_NUM_HEAD,
    MAX_NUM_SECT,
    PART_OFFSET,
    SECTOR_SIZE,
    VIRT_START_SECTOR,
    BlockDevice,
    PartitionEntry,
    SataServer,
    SataServerError,
    ServerStatus,
    lba_to_chs,
    pack_sec_cyl,
    parse_mbr,
)

DISK_SECTORS = 400

PHYSICAL = [
    PartitionEntry(boot=0x80, sys_id=0x83, start_lba=100, num_sectors=50),
    PartitionEntry(boot=0x00, sys_id=0x0C, start_lba=200, num_sectors=40),
    PartitionEntry(boot=0x00, sys_id=0x07, start_lba=250, num_sectors=30),
    PartitionEntry(boot=0x00, sys_id=0x82, start_lba=300, num_sectors=20),
]


def make_mbr(entries):
    mbr = bytearray(SECTOR_SIZE)
    mbr[0:4] = b"BOOT"
    for index, entry in enumerate(entries):
        start = PART_OFFSET + index * 16
        mbr[start : start + 16] = entry.pack()
    mbr[510] = 0x55
    mbr[511] = 0xAA
    return bytes(mbr)


def make_device():
    image = bytearray(DISK_SECTORS * SECTOR_SIZE)
    image[:SECTOR_SIZE] = make_mbr(PHYSICAL)
    return BlockDevice(image)


@pytest.fixture
def server():
    srv = SataServer(make_device())
    srv.configure({1: [1, 3], 2: [2]})
    return srv


def test_partition_entry_round_trip():
    entry = PartitionEntry(0x80, 1, 0x0102, 0x83, 2, 0x0304, 64, 1000)
    packed = entry.pack()
    assert len(packed) == 16
    assert PartitionEntry.unpack(packed) == entry


def test_partition_entry_unpack_wrong_length():
    with pytest.raises(ValueError):
        PartitionEntry.unpack(b"\x00" * 15)


def test_parse_mbr_reads_entries():
    assert parse_mbr(make_mbr(PHYSICAL)) == PHYSICAL


def test_parse_mbr_short_sector():
    with pytest.raises(ValueError):
        parse_mbr(b"\x00" * 100)


def test_lba_to_chs_first_sector():
    assert lba_to_chs(0) == (0, 0, 1)


def test_lba_to_chs_clamps_large_addresses():
    lba = (MAX_NUM_CYL + 1) * MAX_NUM_HEAD * MAX_NUM_SECT
    assert lba_to_chs(lba) == (MAX_NUM_CYL, MAX_NUM_HEAD, MAX_NUM_SECT)


def test_lba_to_chs_invariant():
    for lba in (1, 62, 63, 64, 16064, 16065, 100000):
        cyl, head, sec = lba_to_chs(lba)
        assert (cyl * MAX_NUM_HEAD + head) * MAX_NUM_SECT + sec - 1 == lba


def test_pack_sec_cyl_fields():
    value = pack_sec_cyl(MAX_NUM_CYL, MAX_NUM_HEAD, MAX_NUM_SECT)
    assert value & 0x3F == MAX_NUM_SECT
    assert ((value & 0xC0) << 2) | (value >> 8) == MAX_NUM_CYL


def test_pack_sec_cyl_rejects_large_head():
    with pytest.raises(ValueError):
        pack_sec_cyl(0, 256, 1)


def test_status_before_and_after_configure():
    srv = SataServer(make_device())
    assert srv.status() == ServerStatus.NOT_DONE
    assert srv.capacity(1) == 0
    srv.configure({1: [1]})
    assert srv.status() == ServerStatus.GOOD


def test_virtual_tables_are_contiguous(server):
    tables = server.clients[1].partition_tables
    assert tables[0].start_lba == VIRT_START_SECTOR
    assert tables[0].num_sectors == PHYSICAL[0].num_sectors
    assert tables[0].sys_id == PHYSICAL[0].sys_id
    assert tables[0].boot == PHYSICAL[0].boot
    assert tables[1].start_lba == VIRT_START_SECTOR + PHYSICAL[0].num_sectors
    assert tables[1].num_sectors == PHYSICAL[2].num_sectors
    assert tables[2] == PartitionEntry()
    assert server.capacity(1) == (
        VIRT_START_SECTOR + PHYSICAL[0].num_sectors + PHYSICAL[2].num_sectors
    )


def test_virtual_table_chs_matches_lba(server):
    entry = server.clients[2].partition_tables[0]
    cyl, head, sec = lba_to_chs(entry.start_lba)
    assert entry.head == head
    assert entry.sec_cyl == pack_sec_cyl(cyl, head, sec)
    cyl, head, sec = lba_to_chs(entry.start_lba + entry.num_sectors - 1)
    assert entry.end_head == head
    assert entry.end_sec_cyl == pack_sec_cyl(cyl, head, sec)


def test_client_without_partitions_has_base_capacity():
    srv = SataServer(make_device())
    srv.configure({5: []})
    assert srv.capacity(5) == VIRT_START_SECTOR


def test_rx_sector_zero_returns_virtual_mbr(server):
    data = server.rx(2, 0, SECTOR_SIZE)
    assert len(data) == SECTOR_SIZE
    assert data[:4] == b"BOOT"
    assert data[510:512] == b"\x55\xaa"
    assert parse_mbr(data) == server.clients[2].partition_tables


def test_rx_reserved_sectors_are_zero(server):
    assert server.rx(1, 10, SECTOR_SIZE) == bytes(SECTOR_SIZE)


def test_tx_rx_round_trip_maps_to_physical(server):
    payload = bytes(range(256)) * 4
    sector = VIRT_START_SECTOR + PHYSICAL[0].num_sectors + 3
    assert server.tx(1, sector, payload) == len(payload)
    assert server.rx(1, sector, len(payload)) == payload
    phys = PHYSICAL[2].start_lba + 3
    assert server.device.read_sectors(phys, 2) == payload


def test_clients_see_separate_disks(server):
    payload = b"\xab" * SECTOR_SIZE
    server.tx(2, VIRT_START_SECTOR, payload)
    assert server.device.read_sectors(PHYSICAL[1].start_lba, 1) == payload
    assert server.rx(1, VIRT_START_SECTOR, SECTOR_SIZE) != payload
    assert server.rx(2, VIRT_START_SECTOR, SECTOR_SIZE) == payload


def test_tx_below_virtual_start_is_ignored(server):
    before = server.device.read_sectors(0, VIRT_START_SECTOR)
    assert server.tx(1, 5, b"\xff" * SECTOR_SIZE) == SECTOR_SIZE
    assert server.device.read_sectors(0, VIRT_START_SECTOR) == before


def test_rx_outside_partitions_fails(server):
    with pytest.raises(SataServerError):
        server.rx(2, server.capacity(2), SECTOR_SIZE)


def test_request_too_large_fails(server):
    with pytest.raises(SataServerError):
        server.rx(1, VIRT_START_SECTOR, BUF_SIZE + 1)
    with pytest.raises(SataServerError):
        server.tx(1, VIRT_START_SECTOR, bytes(BUF_SIZE + SECTOR_SIZE))


def test_rx_before_configure_fails():
    srv = SataServer(make_device())
    with pytest.raises(SataServerError):
        srv.rx(1, 0, SECTOR_SIZE)


def test_unknown_client_fails(server):
    with pytest.raises(SataServerError):
        server.rx(9, 0, SECTOR_SIZE)
    with pytest.raises(SataServerError):
        server.capacity(9)


def test_shared_partition_is_invalid():
    srv = SataServer(make_device())
    with pytest.raises(SataServerError):
        srv.configure({1: [1], 2: [1]})
    assert srv.status() == ServerStatus.INVALID_CONF


@pytest.mark.parametrize("partition", [0, 5])
def test_out_of_range_partition_is_invalid(partition):
    srv = SataServer(make_device())
    with pytest.raises(SataServerError):
        srv.configure({1: [partition]})
    assert srv.status() == ServerStatus.INVALID_CONF


def test_too_many_partitions_is_invalid():
    srv = SataServer(make_device())
    with pytest.raises(SataServerError):
        srv.configure({1: [1, 2, 3, 4, 1]})
    assert srv.status() == ServerStatus.INVALID_CONF


def test_assign_partition_twice():
    srv = SataServer(make_device())
    srv.assign_partition(2)
    with pytest.raises(SataServerError):
        srv.assign_partition(2)


def test_configure_twice_fails(server):
    with pytest.raises(SataServerError):
        server.configure({3: [4]})


def test_block_device_bounds():
    device = BlockDevice(bytes(4 * SECTOR_SIZE))
    assert device.num_sectors == 4
    with pytest.raises(SataServerError):
        device.read_sectors(3, 2)
    with pytest.raises(SataServerError):
        device.write_sectors(0, b"\x00" * 10)


def test_block_device_rejects_partial_image():
    with pytest.raises(ValueError):
        BlockDevice(bytes(SECTOR_SIZE + 1))