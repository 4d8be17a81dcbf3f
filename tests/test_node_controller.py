import copy
from datetime import datetime, timezone

from lvmcsi.errors import NotFoundError
from lvmcsi.logicalvolume_controller import LOGICAL_VOLUME_FINALIZER
from lvmcsi.model import (
    PLUGIN_NAME,
    LogicalVolume,
    LogicalVolumeSpec,
    Node,
    ObjectKey,
    ObjectMeta,
    PersistentVolumeClaim,
    StorageClass,
)
from lvmcsi.node_controller import (
    ANN_SELECTED_NODE,
    KEY_LOGICAL_VOLUME_NODE,
    KEY_SELECTED_NODE,
    NODE_FINALIZER,
    NodeReconciler,
)

INDEXES = {
    KEY_SELECTED_NODE: lambda o: o.metadata.annotations.get(ANN_SELECTED_NODE, ""),
    KEY_LOGICAL_VOLUME_NODE: lambda o: o.spec.node_name,
}


class FakeClient:
    def __init__(self):
        self.objects = {}
        self.patched = []

    @staticmethod
    def _key(obj):
        return (type(obj), obj.metadata.namespace, obj.metadata.name)

    def add(self, obj):
        self.objects[self._key(obj)] = copy.deepcopy(obj)

    def find(self, kind, name, namespace=""):
        return self.objects.get((kind, namespace, name))

    def get(self, kind, key):
        try:
            return copy.deepcopy(self.objects[(kind, key.namespace, key.name)])
        except KeyError:
            raise NotFoundError(key.name) from None

    def list(self, kind, *, namespace=None, fields=None):
        result = []
        for (k, ns, _), obj in self.objects.items():
            if k is not kind or (namespace is not None and ns != namespace):
                continue
            if fields and not all(INDEXES[f](obj) == v for f, v in fields.items()):
                continue
            result.append(copy.deepcopy(obj))
        return result

    def patch(self, obj, original):
        key = self._key(obj)
        if key not in self.objects:
            raise NotFoundError(obj.metadata.name)
        self.patched.append(copy.deepcopy(obj))
        new = copy.deepcopy(obj)
        if new.metadata.deletion_timestamp is not None and not new.metadata.finalizers:
            del self.objects[key]
            return
        self.objects[key] = new

    def delete(self, obj):
        key = self._key(obj)
        if key not in self.objects:
            raise NotFoundError(obj.metadata.name)
        stored = self.objects[key]
        if stored.metadata.finalizers:
            stored.metadata.deletion_timestamp = datetime.now(timezone.utc)
        else:
            del self.objects[key]


def setup_resources(suffix, lv_finalizer=False):
    client = FakeClient()
    node = Node(metadata=ObjectMeta(name="node" + suffix))
    node.metadata.add_finalizer(NODE_FINALIZER)
    client.add(node)

    client.add(StorageClass(metadata=ObjectMeta(name="sc" + suffix), provisioner=PLUGIN_NAME))
    client.add(StorageClass(metadata=ObjectMeta(name="foreign"), provisioner="example.com/other"))

    def claim(name, sc, node_name):
        meta = ObjectMeta(name=name, namespace="ns1")
        meta.annotations[ANN_SELECTED_NODE] = node_name
        return PersistentVolumeClaim(metadata=meta, storage_class_name=sc)

    client.add(claim("pvc" + suffix, "sc" + suffix, node.metadata.name))
    client.add(claim("pvc-foreign", "foreign", node.metadata.name))
    client.add(claim("pvc-other-node", "sc" + suffix, "elsewhere"))

    lv = LogicalVolume(
        metadata=ObjectMeta(name="lv" + suffix, uid="uid" + suffix),
        spec=LogicalVolumeSpec(
            name="lv" + suffix, node_name=node.metadata.name, device_class="", size=1 << 30
        ),
    )
    if lv_finalizer:
        lv.metadata.add_finalizer(LOGICAL_VOLUME_FINALIZER)
    client.add(lv)
    return client, node


def test_deletes_pvc_and_logical_volume_when_not_skipped():
    client, node = setup_resources("-do-finalizer")
    client.delete(node)

    result = NodeReconciler(client, False).reconcile(ObjectKey(name="node-do-finalizer"))

    assert result.requeue is False
    assert client.find(Node, "node-do-finalizer") is None
    assert client.find(PersistentVolumeClaim, "pvc-do-finalizer", "ns1") is None
    assert client.find(LogicalVolume, "lv-do-finalizer") is None


def test_leaves_foreign_claims_alone():
    client, node = setup_resources("-foreign")
    client.delete(node)
    NodeReconciler(client).reconcile(ObjectKey(name="node-foreign"))
    assert client.find(PersistentVolumeClaim, "pvc-foreign", "ns1") is not None
    assert client.find(PersistentVolumeClaim, "pvc-other-node", "ns1") is not None
    assert client.find(PersistentVolumeClaim, "pvc-foreign-x", "ns1") is None


def test_marks_logical_volume_pending_deletion_before_deleting():
    client, node = setup_resources("-pending", lv_finalizer=True)
    client.delete(node)
    NodeReconciler(client).reconcile(ObjectKey(name="node-pending"))

    lv_patches = [p for p in client.patched if isinstance(p, LogicalVolume)]
    assert len(lv_patches) == 1
    assert lv_patches[0].metadata.annotations["topolvm.io/pendingDeletion"] == "true"
    assert not lv_patches[0].metadata.has_finalizer(LOGICAL_VOLUME_FINALIZER)
    assert client.find(LogicalVolume, "lv-pending") is None


def test_skips_finalize_when_requested():
    client, node = setup_resources("-skip-finalizer")
    client.delete(node)

    NodeReconciler(client, True).reconcile(ObjectKey(name="node-skip-finalizer"))

    assert client.find(Node, "node-skip-finalizer") is None
    pvc = client.find(PersistentVolumeClaim, "pvc-skip-finalizer", "ns1")
    assert pvc.metadata.deletion_timestamp is None
    lv = client.find(LogicalVolume, "lv-skip-finalizer")
    assert lv.metadata.deletion_timestamp is None


def test_live_node_is_untouched():
    client, _ = setup_resources("-live")
    NodeReconciler(client).reconcile(ObjectKey(name="node-live"))
    assert client.find(Node, "node-live").metadata.has_finalizer(NODE_FINALIZER)
    assert client.find(LogicalVolume, "lv-live") is not None


def test_missing_node_is_not_an_error():
    client, _ = setup_resources("-missing")
    assert NodeReconciler(client).reconcile(ObjectKey(name="absent")).requeue is False
    assert client.patched == []