from pathlib import Path

import pytest

from rxdm.pci import H100_DEVICE_ID, NVIDIA_VENDOR_ID
from rxdm.rxq_configurator import (
    MAX_HOPS,
    A3GpuRxqConfigurator,
    GpuRxqConfiguration,
    configuration_sort_key,
)

NIC_VENDOR = "0x1ae0"
NIC_DEVICE = "0x0042"
BRIDGE = "pci0000:00/0000:00:01.0/0000:01:00.0"


def _device(root: Path, rel: str, vendor: str, device: str) -> Path:
    path = root / "devices" / rel
    path.mkdir(parents=True)
    (path / "vendor").write_text(vendor + "\n")
    (path / "device").write_text(device + "\n")
    return path


def _netdev(root: Path, ifname: str, target: Path) -> None:
    d = root / "net" / ifname
    d.mkdir(parents=True)
    (d / "device").symlink_to(target)


def _gpu(root: Path, name: str) -> Path:
    return _device(root, f"{BRIDGE}/{name}", NVIDIA_VENDOR_ID, H100_DEVICE_ID)


def _nic(root: Path, name: str) -> Path:
    return _device(root, f"{BRIDGE}/{name}", NIC_VENDOR, NIC_DEVICE)


def test_two_gpus_share_one_nic(tmp_path):
    nic = _nic(tmp_path, "0000:02:00.0")
    _gpu(tmp_path, "0000:04:00.0")
    _gpu(tmp_path, "0000:03:00.0")
    _netdev(tmp_path, "eth1", nic)
    conf = A3GpuRxqConfigurator(2, tmp_path / "net", [("eth1", "10.0.0.2")])
    assert conf.get_configurations() == [
        GpuRxqConfiguration("0000:03:00.0", "0000:02:00.0", "eth1", "10.0.0.2"),
        GpuRxqConfiguration("0000:04:00.0", "0000:02:00.0", "eth1", "10.0.0.2"),
    ]


def test_gpus_split_between_nics_in_order(tmp_path):
    nic_a = _nic(tmp_path, "0000:02:00.0")
    nic_b = _nic(tmp_path, "0000:05:00.0")
    for name in ("0000:07:00.0", "0000:03:00.0", "0000:06:00.0", "0000:04:00.0"):
        _gpu(tmp_path, name)
    _netdev(tmp_path, "eth1", nic_a)
    _netdev(tmp_path, "eth2", nic_b)
    conf = A3GpuRxqConfigurator(
        2, tmp_path / "net", [("eth2", "10.0.0.3"), ("eth1", "10.0.0.2")]
    )
    pairs = [(c.gpu_pci_addr, c.ifname) for c in conf.get_configurations()]
    assert pairs == [
        ("0000:03:00.0", "eth1"),
        ("0000:04:00.0", "eth1"),
        ("0000:06:00.0", "eth2"),
        ("0000:07:00.0", "eth2"),
    ]


def test_gpu_on_unknown_nic_is_skipped(tmp_path):
    nic = _nic(tmp_path, "0000:02:00.0")
    _nic(tmp_path, "0000:05:00.0")
    _gpu(tmp_path, "0000:03:00.0")
    _gpu(tmp_path, "0000:06:00.0")
    _netdev(tmp_path, "eth1", nic)
    conf = A3GpuRxqConfigurator(2, tmp_path / "net", [("eth1", "10.0.0.2")])
    configs = conf.get_configurations()
    assert [c.gpu_pci_addr for c in configs] == ["0000:03:00.0"]


def test_virtual_interface_is_skipped(tmp_path):
    lo = tmp_path / "devices" / "virtual" / "net" / "lo"
    lo.mkdir(parents=True)
    _netdev(tmp_path, "lo", lo)
    conf = A3GpuRxqConfigurator(2, tmp_path / "net", [("lo", "127.0.0.1")])
    assert conf.discover_nics() == {}
    assert conf.get_configurations() == []


def test_interface_without_device_is_skipped(tmp_path):
    (tmp_path / "net" / "bond0").mkdir(parents=True)
    conf = A3GpuRxqConfigurator(2, tmp_path / "net", [("bond0", "10.0.0.9")])
    assert conf.discover_nics() == {}


def test_interface_without_ip_is_skipped(tmp_path):
    nic = _nic(tmp_path, "0000:02:00.0")
    _netdev(tmp_path, "eth1", nic)
    conf = A3GpuRxqConfigurator(2, tmp_path / "net", [("eth1", "")])
    assert conf.discover_nics() == {}


def test_first_address_of_interface_wins(tmp_path):
    nic = _nic(tmp_path, "0000:02:00.0")
    _netdev(tmp_path, "eth1", nic)
    conf = A3GpuRxqConfigurator(
        2, tmp_path / "net", [("eth1", "10.0.0.2"), ("eth1", "fe80::1")]
    )
    assert conf.discover_nics() == {"0000:02:00.0": ("eth1", "10.0.0.2")}
    assert conf.nic_vendor_id == NIC_VENDOR
    assert conf.nic_device_id == NIC_DEVICE


def test_pci_addresses_are_lower_cased(tmp_path):
    nic = _nic(tmp_path, "0000:0A:00.0")
    _gpu(tmp_path, "0000:0B:00.0")
    _netdev(tmp_path, "eth1", nic)
    conf = A3GpuRxqConfigurator(2, tmp_path / "net", [("eth1", "10.0.0.2")])
    (config,) = conf.get_configurations()
    assert config.nic_pci_addr == "0000:0A:00.0".lower()
    assert config.gpu_pci_addr == "0000:0B:00.0".lower()


def test_num_hops_is_capped():
    assert A3GpuRxqConfigurator(num_hops=10, interfaces=[]).num_hops == MAX_HOPS


def test_num_hops_must_be_positive():
    with pytest.raises(ValueError):
        A3GpuRxqConfigurator(num_hops=0, interfaces=[])


def test_sort_key_orders_by_nic_then_gpu():
    a = GpuRxqConfiguration("0000:09:00.0", "0000:01:00.0", "eth1", "10.0.0.2")
    b = GpuRxqConfiguration("0000:03:00.0", "0000:02:00.0", "eth2", "10.0.0.3")
    c = GpuRxqConfiguration("0000:02:00.0", "0000:01:00.0", "eth1", "10.0.0.2")
    assert sorted([a, b, c], key=configuration_sort_key) == [c, a, b]