import unittest
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase
from btmesh_operator.adapters.registry import DrogueRegistryClient
from btmesh_operator.core.errors import AuthenticationError, RegistryWriteConflict, TransportUnavailable
from btmesh_operator.core.types import RegistryDevice
from tests.fakes import mesh_device

BASE = "/api/registry/v1alpha1/apps/app/devices"

class TestDrogueRegistryClient(AioHTTPTestCase):
    async def get_application(self):
        self.requests = []
        self.devices = {"d1": mesh_device("d1")}
        self.devices["d1"]["metadata"]["resourceVersion"] = "1"
        self.fail_with = None

        async def guard(request):
            self.requests.append((request.method, request.path, request.headers.get("Authorization")))
            if self.fail_with:
                raise self.fail_with()

        async def list_devices(request):
            await guard(request)
            return web.json_response(list(self.devices.values()))

        async def get_device(request):
            await guard(request)
            device = self.devices.get(request.match_info["name"])
            if device is None:
                raise web.HTTPNotFound()
            return web.json_response(device)

        async def put_device(request):
            await guard(request)
            body = await request.json()
            current = self.devices[request.match_info["name"]]
            if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
                raise web.HTTPConflict()
            body["metadata"]["resourceVersion"] = "2"
            self.devices[request.match_info["name"]] = body
            return web.Response(status=204)

        app = web.Application()
        app.router.add_get(BASE, list_devices)
        app.router.add_get(BASE + "/{name}", get_device)
        app.router.add_put(BASE + "/{name}", put_device)
        return app

    def make_client(self, user=None) -> DrogueRegistryClient:
        return DrogueRegistryClient(str(self.server.make_url("")), "app", "secret", user=user, timeout=5)

    async def test_list_and_get(self):
        client = self.make_client()
        try:
            devices = await client.list_devices()
            self.assertEqual([d.name for d in devices], ["d1"])
            self.assertEqual(self.requests[0][2], "Bearer secret")

            self.assertEqual((await client.get_device("d1")).name, "d1")
            self.assertIsNone(await client.get_device("missing"))
        finally:
            await client.close()

    async def test_basic_auth_with_user(self):
        client = self.make_client(user="alice")
        try:
            await client.list_devices()
            self.assertTrue(self.requests[0][2].startswith("Basic "))
        finally:
            await client.close()

    async def test_update_and_conflict(self):
        client = self.make_client()
        try:
            device = await client.get_device("d1")
            device.status["btmesh"] = {"state": "provisioning"}
            await client.update_device(device)
            self.assertEqual(self.devices["d1"]["status"]["btmesh"]["state"], "provisioning")

            # Same (now stale) resourceVersion again
            with self.assertRaises(RegistryWriteConflict):
                await client.update_device(device)
        finally:
            await client.close()

    async def test_error_mapping(self):
        client = self.make_client()
        try:
            self.fail_with = web.HTTPUnauthorized
            with self.assertRaises(AuthenticationError):
                await client.list_devices()

            self.fail_with = web.HTTPServiceUnavailable
            with self.assertRaises(TransportUnavailable):
                await client.list_devices()
        finally:
            await client.close()

    async def test_unreachable(self):
        client = DrogueRegistryClient("http://127.0.0.1:1", "app", "secret", timeout=2)
        try:
            with self.assertRaises(TransportUnavailable):
                await client.list_devices()
        finally:
            await client.close()

    async def test_wire_document_preserves_unknown_fields(self):
        raw = mesh_device("d1")
        raw["metadata"]["generation"] = 3
        raw["extra"] = {"keep": True}
        wire = RegistryDevice.model_validate(raw).to_wire()
        self.assertEqual(wire["metadata"]["generation"], 3)
        self.assertEqual(wire["extra"], {"keep": True})

if __name__ == '__main__':
    unittest.main()
