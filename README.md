# lvmcsi

Storage provisioning logic for LVM-backed volumes. It holds the controller
and node halves of a CSI-style driver. It also holds reconcilers that keep
logical volume records, cluster nodes and volume claims in step with what
exists on disk.

## Installation

```
pip install lvmcsi
```

Nothing outside the standard library is needed at run time. To run the tests:

```
pip install "lvmcsi[test]"
pytest
```

## Modules

- `lvmcsi.driver_controller` provides `ControllerServer`. It creates volumes,
  including clones from a snapshot or another volume. It also deletes
  volumes, validates volume capabilities, creates and deletes snapshots,
  expands volumes and reports capacity. Calls on the same name or volume ID
  are serialised. `convert_request_capacity(request_bytes, limit_bytes)`
  turns a byte request and limit into whole GiB, and raises `ValueError` for
  negative or inconsistent values.
- `lvmcsi.driver_node` provides `NodeServer`. It publishes and unpublishes
  volumes as block devices or mounted filesystems, reports usage and grows
  filesystems. `Mounter` formats, mounts, unmounts and resizes with the
  system tools: `mkfs.*`, `mount`, `umount`, `findmnt`, `resize2fs` and
  `xfs_growfs`. `make_mount_options` builds the mount option list.
- `lvmcsi.identity` provides `IdentityServer`, which answers plugin info,
  capability and readiness probe calls.
- `lvmcsi.logicalvolume_service` provides `LogicalVolumeService` and
  `VolumeGetter`. They create, delete, snapshot and expand `LogicalVolume`
  records and wait for the node to act on them. They also find a record by
  volume ID.
- `lvmcsi.node_service` provides `NodeService`, which reads per-node free
  capacity from node annotations.
- `lvmcsi.logicalvolume_controller` provides `LogicalVolumeReconciler` and
  `LogicalVolumeFilter`.
- `lvmcsi.node_controller` provides `NodeReconciler`, which cleans up claims
  and logical volumes of deleted nodes.
- `lvmcsi.pvc_controller` provides `PersistentVolumeClaimReconciler`, which
  deletes the pods using a claim that is being finalized.
- `lvmcsi.getter` defines the `Reader` protocol and `RetryMissingGetter`.
  The getter reads a cache first and falls back to a direct reader when the
  object is missing there.
- `lvmcsi.model` holds the API object dataclasses (`LogicalVolume`, `Node`,
  `PersistentVolumeClaim`, `Pod`, `StorageClass`, and others) and the
  annotation, label and finalizer names.
- `lvmcsi.lock` provides `LockByID`, a lock that serialises work per
  identifier.
- `lvmcsi.filesystem` provides `detect_filesystem` (through `blkid`),
  `is_mounted` (through the mount table) and `is_same_device`.
- `lvmcsi.errors` provides `StatusError` with its `Code` values, and the
  lookup errors the services raise.

## Example

```python
from lvmcsi.driver_controller import convert_request_capacity
from lvmcsi.lock import LockByID
from lvmcsi.model import Node, ObjectMeta
from lvmcsi.node_service import NodeService

assert convert_request_capacity(0, 10) == 1
assert convert_request_capacity((1 << 30) + 1, 0) == 2

locks = LockByID()
with locks.hold("volume-a"):
    ...  # only one caller at a time works on "volume-a"


class StaticNodes:
    def __init__(self, nodes):
        self.nodes = nodes

    def get(self, kind, key):
        return next(n for n in self.nodes if n.metadata.name == key.name)

    def list(self, kind, *, namespace=None, fields=None):
        return list(self.nodes)


node = Node(ObjectMeta(name="node1", annotations={"capacity.topolvm.io/00default": str(10 << 30)}))
assert NodeService(StaticNodes([node])).max_capacity("") == ("node1", 10 << 30)
```

Failures are raised as `lvmcsi.errors.StatusError`. Its `code` attribute
holds the `Code` the caller should report.

## What it does not do

The package has no network server, no cluster API client, no LVM daemon
client and no command-line entry point. The caller supplies the objects
these classes work with:

- readers with `get(kind, key)` and `list(kind, namespace=..., fields=...)`;
- writers with `create`, `update`, `delete`, `patch(obj, original)` and
  `update_status`;
- a volume group client with `get_lv_list(device_class)`;
- a logical volume client with `create_lv`, `create_lv_snapshot`,
  `remove_lv` and `resize_lv`.

The caller also drives the reconcilers by calling `reconcile(key)`.