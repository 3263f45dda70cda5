"""Unix domain socket addresses used by the daemon and its clients."""

from __future__ import annotations

import logging
import os

log = logging.getLogger(__name__)

FILE_BASED_UDS_PATH_PREFIX_ENV = "FILE_BASED_UDS_PATH_PREFIX"
_SUN_PATH_LEN = 108


def _prefix_from_env() -> str:
    return os.environ.get(FILE_BASED_UDS_PATH_PREFIX_ENV, "")


def uds_address(path: str, prefix: str | None = None) -> str:
    """Return the socket address for ``path``.

    With a prefix (given, or taken from the FILE_BASED_UDS_PATH_PREFIX
    environment variable) the address is a file path under that prefix;
    otherwise it is an abstract-namespace address. Raises ValueError for an
    empty or overlong path.
    """
    if not path:
        raise ValueError("Missing file path to domain socket.")
    prefix = prefix or _prefix_from_env()
    if prefix:
        full = f"{prefix}/{path}"
        log.info("Using file-based UDS address specified by user: %s", full)
        if len(os.fsencode(full)) >= _SUN_PATH_LEN - 1:
            raise ValueError("File path for domain socket is too long.")
        return full
    log.info("Using abstract UDS address: %s", path)
    if len(os.fsencode(path)) >= _SUN_PATH_LEN - 2:
        raise ValueError("File path for abstract domain socket is too long.")
    return "\0" + path


def buf_op_uds_path(server_ip_addr: str) -> str:
    return f"rxdm_uds_buf_op:{server_ip_addr}"


def nic_ip_uds_path(gpu_pci: str) -> str:
    return f"rxdm_uds_nic_ip:{gpu_pci}"


def nic_mapping_uds_path() -> str:
    return "rxdm_uds_nic_mapping"