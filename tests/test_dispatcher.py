import asyncio
import unittest
from btmesh_operator.core.errors import TransportUnavailable
from btmesh_operator.core.types import Command, CommandKind, DesiredState
from btmesh_operator.reconciler.device_table import DeviceState, DeviceTable
from btmesh_operator.reconciler.dispatcher import CommandDispatcher
from tests.fakes import UUID, FakeChannel, FakeClock

class TestDispatcher(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.channel = FakeChannel()
        self.table = DeviceTable()
        self.clock = FakeClock()
        tokens = iter(["t1", "t2", "t3"])
        self.dispatcher = CommandDispatcher(
            self.channel, self.table, application="app", command_timeout=40.0,
            clock=self.clock, token_factory=lambda: next(tokens),
        )
        self.device = DeviceState("d1", DesiredState.PROVISIONED, uuid=UUID.lower())
        self.table.put(self.device)

    async def test_provision_published_to_every_gateway(self):
        self.dispatcher.set_gateways(["gw1", "gw2"])
        command = await self.dispatcher.dispatch(self.device, CommandKind.PROVISION)

        self.assertEqual(command.token, "t1")
        self.assertEqual(command.deadline, self.clock.now + 40.0)
        self.assertEqual([t for t, _ in self.channel.published],
                         ["command/app/gw1/btmesh", "command/app/gw2/btmesh"])
        self.assertEqual(self.channel.published[0][1],
                         {"command": {"provision": {"device": UUID.lower()}}, "correlationId": "t1"})
        self.assertIs(self.table.in_flight_for("d1"), command)
        self.assertIs(self.table.lookup("t1"), command)

    async def test_reset_carries_address(self):
        self.dispatcher.set_gateways(["gw1"])
        self.device.address = 5
        await self.dispatcher.dispatch(self.device, CommandKind.UNPROVISION)
        self.assertEqual(self.channel.commands()[0],
                         {"command": {"reset": {"device": "d1", "address": 5}}, "correlationId": "t1"})

    async def test_no_gateways(self):
        with self.assertRaises(TransportUnavailable):
            await self.dispatcher.dispatch(self.device, CommandKind.PROVISION)
        self.assertEqual(self.table.in_flight_count, 0)

    async def test_channel_down(self):
        self.dispatcher.set_gateways(["gw1"])
        self.channel.fail = True
        with self.assertRaises(TransportUnavailable):
            await self.dispatcher.dispatch(self.device, CommandKind.PROVISION)
        self.assertIsNone(self.table.in_flight_for("d1"))

    async def test_one_gateway_accepting_is_enough(self):
        self.dispatcher.set_gateways(["gw1", "gw2"])
        self.channel.failing_topics.add("command/app/gw1/btmesh")
        await self.dispatcher.dispatch(self.device, CommandKind.PROVISION)
        self.assertEqual(len(self.channel.published), 1)
        self.assertEqual(self.table.in_flight_count, 1)

    async def test_hanging_channel_bounded_by_one_deadline(self):
        self.dispatcher.set_gateways(["gw1", "gw2", "gw3", "gw4"])
        self.dispatcher.publish_timeout = 0.1
        self.channel.hang = True
        loop = asyncio.get_running_loop()
        started = loop.time()
        with self.assertRaises(TransportUnavailable):
            await self.dispatcher.dispatch(self.device, CommandKind.PROVISION)
        # Four gateways at 0.1s each would take 0.4s
        self.assertLess(loop.time() - started, 0.3)
        self.assertIsNone(self.table.in_flight_for("d1"))

    async def test_single_command_in_flight(self):
        self.dispatcher.set_gateways(["gw1"])
        await self.dispatcher.dispatch(self.device, CommandKind.PROVISION)
        with self.assertRaises(RuntimeError):
            await self.dispatcher.dispatch(self.device, CommandKind.PROVISION)
        self.assertEqual(len(self.channel.published), 1)

class TestDeviceTable(unittest.TestCase):
    def test_remove_drops_in_flight(self):
        table = DeviceTable()
        table.put(DeviceState("d1", DesiredState.PROVISIONED))
        command = Command(token="t", device_id="d1", kind=CommandKind.PROVISION, issued_at=0, deadline=10)
        self.assertTrue(table.register(command))
        self.assertFalse(table.register(command.model_copy(update={"token": "t2"})))

        self.assertEqual(table.expired(9), [])
        self.assertEqual(table.expired(10), [command])

        table.remove("d1")
        self.assertIsNone(table.lookup("t"))
        self.assertNotIn("d1", table)

if __name__ == '__main__':
    unittest.main()
