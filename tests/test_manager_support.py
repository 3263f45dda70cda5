import os
from types import SimpleNamespace

import pytest

from rxdm.manager_support import (
    HEALTHY_LOG_LINE,
    dxs_clients_health_check,
    get_nics_to_use,
    join_path,
    log_periodic_stats,
    write_healthy_log,
)
from rxdm.messages import RxdmError, StatusCode
from rxdm.nic_info import GpuNicInfo


def test_get_nics_to_use_deduplicates():
    nics, count = get_nics_to_use("eth1,eth2,eth1", 8)
    assert nics == {"eth1", "eth2"}
    assert count == len(nics)


def test_get_nics_to_use_empty_keeps_count():
    nics, count = get_nics_to_use("", 8)
    assert nics == set()
    assert count == 8


@pytest.mark.parametrize(
    "path1, path2, expected",
    [
        ("dir/", "/file", "dir/file"),
        ("dir", "file", "dir/file"),
        ("dir/", "file", "dir/file"),
    ],
)
def test_join_path(path1, path2, expected):
    assert join_path(path1, path2) == expected


def test_join_path_with_empty_side():
    assert join_path("", "/abs") == "/abs"
    assert join_path("dir", "") == "dir"
    assert join_path("dir", "/file") == join_path("dir/", "file")


def test_log_periodic_stats_writes_file(tmp_path):
    stats = SimpleNamespace(goodput_rx_bytes=10, goodput_tx_bytes=20)
    log_periodic_stats(str(tmp_path), "eth1", stats)
    assert os.listdir(tmp_path) == ["eth1_stats"]
    assert (tmp_path / "eth1_stats").read_text() == "10,20"


def test_log_periodic_stats_overwrites(tmp_path):
    log_periodic_stats(tmp_path, "eth1", SimpleNamespace(goodput_rx_bytes=1, goodput_tx_bytes=2))
    log_periodic_stats(tmp_path, "eth1", SimpleNamespace(goodput_rx_bytes=3, goodput_tx_bytes=4))
    assert os.listdir(tmp_path) == ["eth1_stats"]
    assert (tmp_path / "eth1_stats").read_text() == "3,4"


def test_log_periodic_stats_missing_directory(tmp_path):
    missing = tmp_path / "absent"
    log_periodic_stats(str(missing), "eth1", SimpleNamespace(goodput_rx_bytes=1, goodput_tx_bytes=2))
    assert not missing.exists()
    assert os.listdir(tmp_path) == []


class FakeDxs:
    def __init__(self, healthy):
        self.healthy = healthy
        self.calls = 0

    def health_check(self):
        self.calls += 1
        return self.healthy


def make_info(ifname, ip_addr, healthy):
    info = GpuNicInfo(
        gpu_pci_addr="0000:04:00.0",
        nic_pci_addr="0000:05:00.0",
        ifname=ifname,
        ip_addr=ip_addr,
        dxs_ip="192.0.2.100",
        dxs_port="1234",
    )
    info.dxs_client = FakeDxs(healthy)
    return info


def test_health_check_passes_when_all_healthy():
    infos = [make_info("eth1", "192.0.2.1", True), make_info("eth2", "192.0.2.2", True)]
    assert dxs_clients_health_check(infos) is None
    assert [info.dxs_client.calls for info in infos] == [1, 1]


def test_health_check_reports_unhealthy_nics():
    infos = [make_info("eth1", "192.0.2.1", True), make_info("eth2", "192.0.2.2", False)]
    with pytest.raises(RxdmError) as info:
        dxs_clients_health_check(infos)
    assert info.value.code is StatusCode.INTERNAL
    message = info.value.message
    assert message.startswith("DXS client health check failed for the following NICs: \n")
    assert "ifname: eth2;" in message
    assert "Source: 192.0.2.2;" in message
    assert "eth1" not in message


def test_write_healthy_log_to_file(tmp_path, capsys):
    target = tmp_path / "health.log"
    write_healthy_log(str(target))
    assert capsys.readouterr().out == HEALTHY_LOG_LINE + "\n"
    assert target.read_text() == HEALTHY_LOG_LINE + "\n"


def test_write_healthy_log_from_environment(tmp_path, monkeypatch, capsys):
    target = tmp_path / "env.log"
    monkeypatch.setenv("HEALTH_CHECK_LOG_FILE", str(target))
    write_healthy_log()
    assert target.read_text() == HEALTHY_LOG_LINE + "\n"
    assert capsys.readouterr().out == "Buffer manager initialization completed.\n"


def test_write_healthy_log_unwritable_target(tmp_path, capsys):
    write_healthy_log(str(tmp_path))
    assert capsys.readouterr().out == HEALTHY_LOG_LINE + "\n"
    assert os.listdir(tmp_path) == []