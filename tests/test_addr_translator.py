import errno
import fcntl

import pytest

from rxdm.addr_translator import FasTrakAddrTranslator
from rxdm.dmabuf import (
    GET_IOVECS_HEADER,
    HELPER_MAX_IOVECS_COUNT,
    IMPORT_HELPER_GET_IOVECS,
    IMPORT_HELPER_MAP,
    IMPORT_HELPER_UNMAP,
    IOVEC_ENTRY,
    IOVECS_OFFSET,
    MAP_PARAM,
    UNMAP_PARAM,
)
from rxdm.iovecs import Iovec, coalesce_iovecs
from rxdm.messages import RxdmError, StatusCode
from rxdm.pci import parse_pci_addr

NIC_PCI = "0000:0a:00.0"
SEGMENTS = [Iovec(0x1000, 0x1000), Iovec(0x2000, 0x1000), Iovec(0x8000, 0x1000)]


class FakeHelper:
    def __init__(self, segments, fail=()):
        self.segments = list(segments)
        self.fail = set(fail)
        self.maps = []
        self.unmaps = []
        self.get_calls = 0

    def __call__(self, fd, request, arg=0, mutate=True):
        if request in self.fail:
            raise OSError(errno.EINVAL, "fake failure")
        if request == IMPORT_HELPER_MAP:
            values = list(MAP_PARAM.unpack(arg))
            self.maps.append(list(values))
            values[6] = len(self.segments)
            MAP_PARAM.pack_into(arg, 0, *values)
        elif request == IMPORT_HELPER_GET_IOVECS:
            self.get_calls += 1
            handle, offset, _ = GET_IOVECS_HEADER.unpack_from(arg)
            batch = self.segments[offset : offset + HELPER_MAX_IOVECS_COUNT]
            GET_IOVECS_HEADER.pack_into(arg, 0, handle, offset, len(batch))
            for position, vec in enumerate(batch):
                IOVEC_ENTRY.pack_into(
                    arg, IOVECS_OFFSET + position * IOVEC_ENTRY.size, vec.base, vec.length
                )
        elif request == IMPORT_HELPER_UNMAP:
            (handle,) = UNMAP_PARAM.unpack(arg)
            self.unmaps.append(handle)
        return 0


@pytest.fixture
def device(tmp_path):
    path = tmp_path / "helper"
    path.write_bytes(b"")
    return path


@pytest.fixture
def fake(monkeypatch):
    helper = FakeHelper(SEGMENTS)
    monkeypatch.setattr(fcntl, "ioctl", helper)
    return helper


def test_init_rejects_bad_pci(device):
    assert FasTrakAddrTranslator("not-a-pci", device).init() is False


def test_init_fails_without_device(tmp_path):
    assert FasTrakAddrTranslator(NIC_PCI, tmp_path / "absent").init() is False


def test_map_before_init_raises(device):
    translator = FasTrakAddrTranslator(NIC_PCI, device)
    with pytest.raises(RxdmError) as info:
        translator.map(3)
    assert info.value.code == StatusCode.INTERNAL


def test_map_assigns_sequential_ids(device, fake):
    pci = parse_pci_addr(NIC_PCI)
    with FasTrakAddrTranslator(NIC_PCI, device) as translator:
        assert translator.init()
        first = translator.map(11)
        second = translator.map(12)
    assert (first, second) == (0, 1)
    assert [m[:5] for m in fake.maps] == [
        [11, pci.domain, pci.bus, pci.device, pci.function],
        [12, pci.domain, pci.bus, pci.device, pci.function],
    ]
    assert [m[5] for m in fake.maps] == [0, 1]


def test_map_failure_keeps_counters(device, monkeypatch):
    helper = FakeHelper(SEGMENTS, fail={IMPORT_HELPER_MAP})
    monkeypatch.setattr(fcntl, "ioctl", helper)
    with FasTrakAddrTranslator(NIC_PCI, device) as translator:
        assert translator.init()
        with pytest.raises(RxdmError) as info:
            translator.map(7)
        assert info.value.code == StatusCode.INTERNAL
        helper.fail.clear()
        assert translator.map(7) == 0
    assert helper.maps[-1][5] == 0


def test_get_iovecs_coalesces(device, fake):
    with FasTrakAddrTranslator(NIC_PCI, device) as translator:
        assert translator.init()
        allocation = translator.map(3)
        assert translator.get_iovecs(allocation) == coalesce_iovecs(SEGMENTS)


def test_get_iovecs_without_coalescing(device, fake):
    with FasTrakAddrTranslator(NIC_PCI, device, coalesce=False) as translator:
        assert translator.init()
        allocation = translator.map(3)
        assert translator.get_iovecs(allocation) == SEGMENTS


def test_get_iovecs_is_cached(device, fake):
    with FasTrakAddrTranslator(NIC_PCI, device) as translator:
        assert translator.init()
        allocation = translator.map(3)
        first = translator.get_iovecs(allocation)
        calls = fake.get_calls
        assert translator.get_iovecs(allocation) == first
        assert fake.get_calls == calls


def test_get_iovecs_failure_raises(device, monkeypatch):
    helper = FakeHelper(SEGMENTS, fail={IMPORT_HELPER_GET_IOVECS})
    monkeypatch.setattr(fcntl, "ioctl", helper)
    with FasTrakAddrTranslator(NIC_PCI, device) as translator:
        assert translator.init()
        allocation = translator.map(3)
        with pytest.raises(RxdmError, match="Failed to retrieve iovecs"):
            translator.get_iovecs(allocation)


def test_unknown_id_raises(device, fake):
    with FasTrakAddrTranslator(NIC_PCI, device) as translator:
        assert translator.init()
        with pytest.raises(RxdmError) as info:
            translator.get_iovecs(42)
    assert info.value.code == StatusCode.INTERNAL


def test_unmap_releases_buffer(device, fake):
    with FasTrakAddrTranslator(NIC_PCI, device) as translator:
        assert translator.init()
        allocation = translator.map(3)
        translator.unmap(allocation)
        translator.unmap(allocation)
        assert fake.unmaps == [fake.maps[0][5]]
        with pytest.raises(RxdmError):
            translator.get_iovecs(allocation)


def test_close_unmaps_everything(device, fake):
    translator = FasTrakAddrTranslator(NIC_PCI, device)
    assert translator.init()
    translator.map(3)
    translator.map(4)
    translator.close()
    assert sorted(fake.unmaps) == sorted(m[5] for m in fake.maps)