"""Helpers of the GPU memory manager: NIC selection, stats and health."""

from __future__ import annotations

import logging
import os
import sys
import tempfile
from typing import Any, Iterable

from rxdm.messages import RxdmError, StatusCode

log = logging.getLogger(__name__)

HEALTH_CHECK_FILE_ENV = "HEALTH_CHECK_LOG_FILE"
HEALTHY_LOG_LINE = "Buffer manager initialization completed."


def get_nics_to_use(nics_to_use: str, num_nics: int) -> tuple[set[str], int]:
    """Split a comma-separated interface list.

    Returns the set of names and the number of NICs to expect: the size of
    that set when the list is given, otherwise ``num_nics`` unchanged.
    """
    if not nics_to_use:
        return set(), num_nics
    log.info("Using NICs %s", nics_to_use)
    nics = set(nics_to_use.split(","))
    return nics, len(nics)


def join_path(path1: str, path2: str) -> str:
    """Join two path pieces with exactly one slash between them."""
    if not path1:
        return path2
    if not path2:
        return path1
    if path1.endswith("/"):
        if path2.startswith("/"):
            return path1 + path2[1:]
    elif not path2.startswith("/"):
        return f"{path1}/{path2}"
    return path1 + path2


def log_periodic_stats(
    nic_metric_directory: str | os.PathLike[str], nic_ifname: str, stats: Any
) -> None:
    """Write ``rx,tx`` goodput bytes to ``<dir>/<ifname>_stats`` atomically.

    Failures are logged, never raised.
    """
    stats_path = join_path(os.fspath(nic_metric_directory), f"{nic_ifname}_stats")
    content = f"{stats.goodput_rx_bytes},{stats.goodput_tx_bytes}"
    directory, name = os.path.split(stats_path)
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=f"{name}.", dir=directory or None)
    except OSError as exc:
        log.error("Error creating temporary file for %s: %s", stats_path, exc)
        return
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
    except OSError as exc:
        log.error("Error writing file %s: %s", tmp_path, exc)
        _unlink_quietly(tmp_path)
        return
    try:
        os.replace(tmp_path, stats_path)
    except OSError as exc:
        log.error("Failed to rename temp file %s to %s: %s", tmp_path, stats_path, exc)
        _unlink_quietly(tmp_path)


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass


def dxs_clients_health_check(nic_infos: Iterable[Any]) -> None:
    """Raise RxdmError listing every NIC whose DXS client is unhealthy."""
    failures = [
        "\t\tDXS: Destination: {}; Source: {}; GPU PCI addr: {}; NIC PCI addr: "
        "{}; ifname: {}; \n".format(
            info.dxs_ip,
            info.ip_addr,
            info.gpu_pci_addr,
            info.nic_pci_addr,
            info.ifname,
        )
        for info in nic_infos
        if not info.dxs_client.health_check()
    ]
    if failures:
        raise RxdmError(
            StatusCode.INTERNAL,
            "DXS client health check failed for the following NICs: \n"
            + "".join(failures),
        )


def write_healthy_log(log_filename: str | os.PathLike[str] | None = None) -> None:
    """Announce completed initialisation on stdout, the log and a file.

    The file is ``log_filename`` or, when omitted, the path named by the
    HEALTH_CHECK_LOG_FILE environment variable; without either none is written.
    """
    print(HEALTHY_LOG_LINE, flush=True)
    sys.stdout.flush()
    log.info("%s", HEALTHY_LOG_LINE)
    target = log_filename if log_filename is not None else os.environ.get(
        HEALTH_CHECK_FILE_ENV
    )
    if not target:
        return
    try:
        with open(target, "w", encoding="utf-8") as fh:
            fh.write(HEALTHY_LOG_LINE + "\n")
    except OSError:
        log.error("Error: Unable to open file %s", target)
        return
    log.info("Log written successfully to %s", target)