import copy

import pytest

from lvmcsi.errors import Code, ConflictError, NotFoundError, StatusError, VolumeNotFoundError
from lvmcsi.logicalvolume_service import LogicalVolumeService, VolumeGetter
from lvmcsi.model import (
    KEY_VOLUME_ID,
    RESIZE_REQUESTED_AT_KEY,
    LogicalVolume,
    LogicalVolumeSpec,
    LogicalVolumeStatus,
    ObjectKey,
    ObjectMeta,
)


class FakeClient:
    def __init__(self, on_create=None, on_update=None):
        self.objects = {}
        self.on_create = on_create
        self.on_update = on_update
        self.conflicts = 0
        self.update_calls = 0
        self.created = []
        self.deleted = []

    def add(self, lv):
        self.objects[lv.metadata.name] = copy.deepcopy(lv)

    def get(self, kind, key):
        if key.name not in self.objects:
            raise NotFoundError(key.name)
        return copy.deepcopy(self.objects[key.name])

    def list(self, kind, *, namespace=None, fields=None):
        items = list(self.objects.values())
        if fields and KEY_VOLUME_ID in fields:
            items = [lv for lv in items if lv.status.volume_id == fields[KEY_VOLUME_ID]]
        return [copy.deepcopy(lv) for lv in items]

    def create(self, obj):
        stored = copy.deepcopy(obj)
        self.objects[obj.metadata.name] = stored
        self.created.append(obj.metadata.name)
        if self.on_create:
            self.on_create(stored)

    def update(self, obj):
        self.update_calls += 1
        if self.conflicts:
            self.conflicts -= 1
            raise ConflictError()
        stored = copy.deepcopy(obj)
        self.objects[obj.metadata.name] = stored
        if self.on_update:
            self.on_update(stored)

    def delete(self, obj):
        if obj.metadata.name not in self.objects:
            raise NotFoundError(obj.metadata.name)
        del self.objects[obj.metadata.name]
        self.deleted.append(obj.metadata.name)


def _ready(lv):
    lv.status.volume_id = lv.metadata.name


def _service(client, api=None, timeout=None):
    return LogicalVolumeService(
        client,
        api if api is not None else client,
        poll_interval=0.001,
        resize_interval=0.001,
        timeout=timeout,
    )


def _stored_volume(name, volume_id, size=1 << 30):
    return LogicalVolume(
        metadata=ObjectMeta(name=name),
        spec=LogicalVolumeSpec(name=name, node_name="node1", size=size),
        status=LogicalVolumeStatus(volume_id=volume_id, current_size=size),
    )


def test_create_volume_returns_volume_id():
    client = FakeClient(on_create=_ready)
    service = _service(client)
    volume_id = service.create_volume("node1", "ssd", "", "pvc-a", "", 3)
    assert volume_id == "pvc-a"
    stored = client.objects["pvc-a"]
    assert stored.spec.size == 3 << 30
    assert stored.spec.node_name == "node1"
    assert stored.spec.device_class == "ssd"
    assert stored.spec.source == ""


def test_create_volume_from_source_is_read_write_snapshot():
    client = FakeClient(on_create=_ready)
    service = _service(client)
    service.create_volume("node1", "ssd", "", "pvc-b", "src", 1)
    stored = client.objects["pvc-b"]
    assert stored.spec.source == "src"
    assert stored.spec.access_type == "rw"


def test_create_volume_with_compatible_existing_does_not_create():
    client = FakeClient()
    spec = LogicalVolumeSpec(name="pvc-c", node_name="node1", device_class="ssd", size=1 << 30)
    client.add(
        LogicalVolume(
            metadata=ObjectMeta(name="pvc-c"),
            spec=spec,
            status=LogicalVolumeStatus(volume_id="vol-c"),
        )
    )
    service = _service(client)
    assert service.create_volume("node1", "ssd", "", "pvc-c", "", 1) == "vol-c"
    assert client.created == []


def test_create_volume_with_incompatible_existing_fails():
    client = FakeClient()
    client.add(_stored_volume("pvc-d", "vol-d", size=5 << 30))
    service = _service(client)
    with pytest.raises(StatusError) as info:
        service.create_volume("node1", "", "", "pvc-d", "", 1)
    assert info.value.code == Code.ALREADY_EXISTS


def test_create_volume_failure_deletes_object():
    def fail(lv):
        lv.status.code = Code.RESOURCE_EXHAUSTED
        lv.status.message = "no space"

    client = FakeClient(on_create=fail)
    service = _service(client)
    with pytest.raises(StatusError) as info:
        service.create_volume("node1", "", "", "pvc-e", "", 1)
    assert info.value.code == Code.RESOURCE_EXHAUSTED
    assert info.value.message == "no space"
    assert "pvc-e" not in client.objects


def test_create_volume_times_out():
    client = FakeClient()
    service = LogicalVolumeService(client, client, poll_interval=0.01, timeout=0.05)
    with pytest.raises(TimeoutError):
        service.create_volume("node1", "", "", "pvc-f", "", 1)


def test_create_snapshot_records_source_and_access():
    client = FakeClient(on_create=_ready)
    service = _service(client)
    snapshot_id = service.create_snapshot("node1", "ssd", "src-vol", "snap-a", "ro", 2 << 30)
    assert snapshot_id == "snap-a"
    stored = client.objects["snap-a"]
    assert stored.spec.source == "src-vol"
    assert stored.spec.access_type == "ro"
    assert stored.spec.size == 2 << 30


def test_delete_volume_removes_object():
    client = FakeClient()
    client.add(_stored_volume("pvc-g", "vol-g"))
    service = _service(client)
    service.delete_volume("vol-g")
    assert "pvc-g" not in client.objects
    assert client.deleted == ["pvc-g"]


def test_delete_missing_volume_is_silent():
    client = FakeClient()
    service = _service(client)
    service.delete_volume("vol-missing")
    assert client.deleted == []


def test_expand_volume_updates_size():
    def resized(lv):
        lv.status.current_size = lv.spec.size

    client = FakeClient(on_update=resized)
    client.add(_stored_volume("pvc-h", "vol-h"))
    service = _service(client)
    service.expand_volume("vol-h", 2)
    stored = client.objects["pvc-h"]
    assert stored.spec.size == 2 << 30
    assert stored.status.current_size == 2 << 30
    assert RESIZE_REQUESTED_AT_KEY in stored.metadata.annotations


def test_expand_volume_retries_on_conflict():
    def resized(lv):
        lv.status.current_size = lv.spec.size

    client = FakeClient(on_update=resized)
    client.conflicts = 2
    client.add(_stored_volume("pvc-i", "vol-i"))
    service = _service(client)
    service.expand_volume("vol-i", 2)
    assert client.update_calls == 3


def test_expand_volume_reports_node_failure():
    def fail(lv):
        lv.status.code = Code.INTERNAL
        lv.status.message = "resize failed"

    client = FakeClient(on_update=fail)
    client.add(_stored_volume("pvc-j", "vol-j"))
    service = _service(client)
    with pytest.raises(StatusError) as info:
        service.expand_volume("vol-j", 2)
    assert info.value.code == Code.INTERNAL
    assert info.value.message == "resize failed"


def test_expand_missing_volume_raises():
    service = _service(FakeClient())
    with pytest.raises(VolumeNotFoundError):
        service.expand_volume("vol-none", 2)


def test_volume_getter_falls_back_to_api_reader():
    cache = FakeClient()
    api = FakeClient()
    api.add(_stored_volume("pvc-k", "vol-k"))
    lv = VolumeGetter(cache, api).get("vol-k")
    assert lv.metadata.name == "pvc-k"


def test_volume_getter_rejects_duplicates():
    cache = FakeClient()
    cache.add(_stored_volume("pvc-l1", "vol-l"))
    cache.add(_stored_volume("pvc-l2", "vol-l"))
    with pytest.raises(RuntimeError):
        VolumeGetter(cache, cache).get("vol-l")


def test_volume_getter_rejects_duplicates_on_api():
    api = FakeClient()
    api.add(_stored_volume("pvc-m1", "vol-m"))
    api.add(_stored_volume("pvc-m2", "vol-m"))
    with pytest.raises(RuntimeError):
        VolumeGetter(FakeClient(), api).get("vol-m")


def test_get_volume_not_found():
    service = _service(FakeClient())
    with pytest.raises(VolumeNotFoundError):
        service.get_volume("vol-none")


def test_getter_finds_volume_created_only_on_api():
    cache = FakeClient()
    api = FakeClient()

    def create_on_api(lv):
        ready = copy.deepcopy(lv)
        _ready(ready)
        api.add(ready)
        del cache.objects[lv.metadata.name]

    cache.on_create = create_on_api
    service = _service(cache, api)
    assert service.create_volume("node1", "", "", "pvc-n", "", 1) == "pvc-n"
    assert api.get(LogicalVolume, ObjectKey("pvc-n")).status.volume_id == "pvc-n"