# rxdm

`rxdm` is a library of building blocks for a receive data-path buffer
manager on Linux hosts that pair GPUs with network interfaces. It can:

* walk the PCI tree under `/sys` to find which GPUs and NICs share a PCIe
  switch, and pair them in ascending PCI address order;
* map DMA-BUFs for a NIC through the DMA-BUF import helper device and
  report their address ranges;
* serve buffer registration and deregistration requests from local
  workloads over Unix domain sockets, handing each buffer's address ranges
  to a buffer manager you supply;
* talk to such a server as a client.

## Installation

```
pip install .
```

For running the test suite:

```
pip install ".[test]"
pytest
```

## Modules

### `rxdm.pci`

```python
from rxdm.pci import parse_pci_addr, read_pci_id, list_vendor_devices

addr = parse_pci_addr("0000:04:00.0")   # PciAddress(domain=0, bus=4, device=0, function=0)
str(addr)                               # "0000:04:00.0"
```

`parse_pci_addr` raises `ValueError` for text that is not a PCI address.
`read_pci_id(path)` reads up to six characters of a sysfs id file and
returns an empty string when it cannot be read.
`list_vendor_devices(parent_dir, vendor_id, device_id=None)` walks the tree
below `parent_dir` and returns the PCI address names of devices with the
given vendor id (and device id, when given); it raises `OSError` when
`parent_dir` cannot be read.

### `rxdm.rxq_configurator`

`A3GpuRxqConfigurator(num_hops=2, sysfs_net_root="/sys/class/net",
interfaces=None)` discovers NICs backed by PCI devices and pairs them with
the H100 GPUs under the same switch. `interfaces` is an iterable of
`(name, ip_address)` pairs; when omitted, the system's IPv4 and IPv6
addresses are read with `psutil`. `get_configurations()` returns a list of
`GpuRxqConfiguration` sorted by NIC PCI address, then GPU PCI address.

### `rxdm.iovecs`

`Iovec(base, length)` is one address range. `coalesce_iovecs(iovecs)` merges
neighbours that are contiguous, without reordering, and never grows a
range's length past 32 bits.

### `rxdm.dmabuf` and `rxdm.addr_translator`

`DmabufImporter(path=None)` opens the import helper device
(`/dev/dmabuf_import_helper` by default) and offers `map`, `unmap`,
`get_iovecs` and `close`; device failures raise `OSError`.

`FasTrakAddrTranslator(nic_pci_addr, dmabuf_import_path=None,
coalesce=True)` builds on it: `init()` returns `False` on failure, `map(fd)`
returns an allocation id, `get_iovecs(id)` returns the (optionally
coalesced) ranges, `unmap(id)` releases one buffer and `close()` releases
them all.

### `rxdm.uds`

Socket names shared between servers and clients:

```python
from rxdm.uds import buf_op_uds_path, nic_ip_uds_path, nic_mapping_uds_path, uds_address

buf_op_uds_path("10.0.0.1")     # "rxdm_uds_buf_op:10.0.0.1"
nic_ip_uds_path("0000:04:00.0") # "rxdm_uds_nic_ip:0000:04:00.0"
nic_mapping_uds_path()          # "rxdm_uds_nic_mapping"
uds_address("name")             # "\0name" (abstract namespace)
uds_address("name", "/tmp")     # "/tmp/name"
```

Without an explicit prefix, `uds_address` uses the directory named by the
`FILE_BASED_UDS_PATH_PREFIX` environment variable, if set, to make
file-based sockets.

### `rxdm.messages`

Requests and responses (`BufferOpReq`, `BufferOpResp`, `GetNicIpReq`,
`GetNicIpResp`, `GetNicMappingReq`, `GetNicMappingResp`) are dataclasses
serialised with `encode_message` and parsed with
`decode_message(message_type, data)`, which raises `ValueError` for
malformed data. Errors are raised as `RxdmError`, which carries a
`StatusCode`; `status_to_rpc` and `error_from_rpc` convert between errors
and the `RpcStatus` carried in responses.

### `rxdm.connection`, `rxdm.server` and `rxdm.socket_client`

`UnixSocketConnection` frames `UnixSocketMessage`s (optional text, optional
file descriptor) as a two-byte big-endian length followed by the text, with
descriptors passed as `SCM_RIGHTS`.

`UnixSocketServer(path, service_handler, cleanup_handler=None)` serves on a
background thread after `start()`. `service_handler(client, request)`
returns `(response, close_connection)`; `cleanup_handler(client)` runs when
a connection ends. `stop()` closes everything.

```python
from rxdm.connection import UnixSocketMessage
from rxdm.server import UnixSocketServer
from rxdm.socket_client import UnixSocketClient

def echo(client, request):
    return UnixSocketMessage(text=request.text), False

with UnixSocketServer("example_echo", echo) as server:
    server.start()
    with UnixSocketClient("example_echo", connect_timeout=5) as client:
        client.connect()
        reply = client.make_request(UnixSocketMessage(text=b"hello"))
```

### `rxdm.resource_tracker`

```python
from rxdm.resource_tracker import BufferResourceTracker

tracker = BufferResourceTracker()
tracker.register_client(7)
tracker.track_buffer(7, dmabuf_fd, dmabuf_id=0, reg_handle=42)
tracker.get_reg_handles(7)      # [42]
tracker.untrack_buffer(7, 42)   # closes the DMA-BUF descriptor
```

### `rxdm.mem_importer`

`GpuMemImporter(bindings, all_clients_exited_callback=None)` runs one buffer
operation server per `NicBinding`, at `buf_op_uds_path(ip_addr)`. Each
binding holds an `AddrTranslator`, a `DxsBufferManager` and a
`BufferResourceTracker`. `GpuMemImporter.from_nic_infos(...)` builds the
bindings from `rxdm.nic_info.GpuNicInfo` objects, each with its
`dxs_client` already set. Call `initialize()`, then `start()`, and
`close()` when done; closing deregisters every client's buffers.

`DxsBufferManager` is an abstract class with `reg_buffer(iovecs)`,
`dereg_buffer(reg_handle)` and `health_check()`; supply your own
implementation.

### `rxdm.manager_support`

* `get_nics_to_use(nics_to_use, num_nics)` splits a comma-separated
  interface list and returns the set and the number of NICs to expect.
* `join_path(path1, path2)` joins with exactly one slash.
* `log_periodic_stats(directory, ifname, stats)` atomically writes
  `rx,tx` goodput bytes to `<directory>/<ifname>_stats`.
* `dxs_clients_health_check(nic_infos)` raises `RxdmError` listing every
  NIC whose DXS client reports unhealthy.
* `write_healthy_log(log_filename=None)` prints
  `Buffer manager initialization completed.` and writes it to the given
  file or to the one named by `HEALTH_CHECK_LOG_FILE`.

## What this package does not do

* It installs no command and has no daemon entry point; it is a library.
* It has no HTTP health endpoint and no health-state host object.
* It has no server answering GPU-to-NIC IP or NIC mapping lookups; only
  the message types for them are defined.
* It contains no DXS buffer manager client and does not query GPUs
  through CUDA; buffer registration needs a `DxsBufferManager` you provide.