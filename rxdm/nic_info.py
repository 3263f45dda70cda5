"""Description of one GPU's NIC together with its DXS endpoint."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from rxdm.rxq_configurator import GpuRxqConfiguration


@dataclass
class GpuNicInfo:
    """A GPU/NIC pairing, the DXS endpoint to use, and its client once made."""

    gpu_pci_addr: str
    nic_pci_addr: str
    ifname: str
    ip_addr: str
    dxs_ip: str
    dxs_port: str
    dxs_client: Any = field(default=None, compare=False)

    @classmethod
    def from_configuration(
        cls, config: GpuRxqConfiguration, dxs_ip: str, dxs_port: str
    ) -> "GpuNicInfo":
        """Build the info of a receive-queue configuration and DXS endpoint."""
        return cls(
            gpu_pci_addr=config.gpu_pci_addr,
            nic_pci_addr=config.nic_pci_addr,
            ifname=config.ifname,
            ip_addr=config.ip_addr,
            dxs_ip=dxs_ip,
            dxs_port=str(dxs_port),
        )