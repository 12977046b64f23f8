import unittest
from btmesh_operator.core.errors import RegistryWriteConflict
from btmesh_operator.core.types import BtMeshStatus, ObservedState, RegistryDevice
from btmesh_operator.reconciler.status_writer import StatusUpdate, StatusWriter, apply_update
from tests.fakes import UUID, FakeRegistry, mesh_device

class TestApplyUpdate(unittest.TestCase):
    def test_alias_finalizer_and_status(self):
        device = RegistryDevice.model_validate(mesh_device("d1"))
        update = StatusUpdate("d1", BtMeshStatus(state=ObservedState.PROVISIONED, address=5), uuid=UUID.lower())

        self.assertTrue(apply_update(device, update))
        self.assertEqual(device.aliases(), [UUID.lower(), "0005"])
        self.assertEqual(device.metadata.finalizers, ["btmesh-operator"])
        self.assertEqual(device.status["btmesh"]["state"], "provisioned")

        # Idempotent
        self.assertFalse(apply_update(device, update))

    def test_release_finalizer_after_unprovision(self):
        device = RegistryDevice.model_validate(mesh_device("d1", deleting=True, finalizers=["btmesh-operator"]))
        pending = StatusUpdate("d1", BtMeshStatus(state=ObservedState.UNPROVISIONING), deleting=True)
        apply_update(device, pending)
        self.assertEqual(device.metadata.finalizers, ["btmesh-operator"])

        done = StatusUpdate("d1", BtMeshStatus(state=ObservedState.UNPROVISIONED), deleting=True)
        self.assertTrue(apply_update(device, done))
        self.assertEqual(device.metadata.finalizers, [])

class TestStatusWriter(unittest.IsolatedAsyncioTestCase):
    async def test_conflict_retried_with_fresh_read(self):
        registry = FakeRegistry(mesh_device("d1"))
        stale = await registry.get_device("d1")
        registry.annotate("d1", "note", "changed")  # bumps resourceVersion

        writer = StatusWriter(registry)
        update = StatusUpdate("d1", BtMeshStatus(state=ObservedState.PROVISIONING), version=1)
        self.assertTrue(await writer.write(update, stale))
        self.assertEqual(registry.status("d1")["state"], "provisioning")
        self.assertEqual(registry.documents["d1"]["metadata"]["annotations"]["note"], "changed")

    async def test_conflict_gives_up(self):
        registry = FakeRegistry(mesh_device("d1"))
        registry.conflicts = 10
        writer = StatusWriter(registry, attempts=2)
        with self.assertRaises(RegistryWriteConflict):
            await writer.write(StatusUpdate("d1", BtMeshStatus(state=ObservedState.PENDING)))

    async def test_older_capture_never_overwrites_newer(self):
        registry = FakeRegistry(mesh_device("d1"))
        writer = StatusWriter(registry)
        await writer.write(StatusUpdate("d1", BtMeshStatus(state=ObservedState.PROVISIONED), version=5))
        written = await writer.write(StatusUpdate("d1", BtMeshStatus(state=ObservedState.PROVISIONING), version=4))
        self.assertFalse(written)
        self.assertEqual(registry.status("d1")["state"], "provisioned")

    async def test_device_gone(self):
        writer = StatusWriter(FakeRegistry())
        self.assertFalse(await writer.write(StatusUpdate("d1", BtMeshStatus())))

if __name__ == '__main__':
    unittest.main()
