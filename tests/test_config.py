import unittest
from btmesh_operator.core.config import MqttEndpoint, OperatorConfig, parse_duration
from btmesh_operator.core.errors import ConfigError

ENV = {
    "DROGUE_APPLICATION": "app",
    "DROGUE_DEVICE_REGISTRY": "https://api.example.com/",
    "DROGUE_TOKEN": "secret",
    "DROGUE_MQTT_INTEGRATION": "mqtts://mqtt.example.com:443",
}

class TestDuration(unittest.TestCase):
    def test_units(self):
        self.assertEqual(parse_duration("20s"), 20.0)
        self.assertEqual(parse_duration("5m"), 300.0)
        self.assertEqual(parse_duration("1m30s"), 90.0)
        self.assertEqual(parse_duration("500ms"), 0.5)
        self.assertEqual(parse_duration("1h"), 3600.0)
        self.assertEqual(parse_duration("15"), 15.0)

    def test_invalid(self):
        for value in ("", "abc", "20x", "s20"):
            with self.assertRaises(ConfigError, msg=value):
                parse_duration(value)

class TestMqttEndpoint(unittest.TestCase):
    def test_schemes(self):
        self.assertEqual(MqttEndpoint.parse("mqtts://host:443"), MqttEndpoint("host", 443, True))
        self.assertEqual(MqttEndpoint.parse("mqtt://host"), MqttEndpoint("host", 1883, False))
        self.assertEqual(MqttEndpoint.parse("host:8883"), MqttEndpoint("host", 8883, True))

class TestOperatorConfig(unittest.TestCase):
    def test_defaults(self):
        config = OperatorConfig.from_env(ENV)
        self.assertEqual(config.registry_url, "https://api.example.com")
        self.assertEqual(config.reconcile_interval, 20.0)
        self.assertEqual(config.max_retries, 5)
        self.assertEqual(config.backoff_max, 300.0)
        self.assertEqual(config.effective_command_timeout, 40.0)
        self.assertEqual(config.effective_backoff_base, 20.0)
        self.assertIsNone(config.group_id)
        self.assertEqual(config.health_port, 8080)

    def test_overrides(self):
        env = dict(ENV, RECONCILE_INTERVAL="10s", MAX_RETRIES="3", BACKOFF_FACTOR="3",
                   BACKOFF_MAX="2m", MQTT_GROUP_ID="btmesh-operator", DROGUE_USER="alice",
                   COMMAND_TIMEOUT="1m", MQTT_INSECURE="true")
        config = OperatorConfig.from_env(env)
        self.assertEqual(config.reconcile_interval, 10.0)
        self.assertEqual(config.max_retries, 3)
        self.assertEqual(config.backoff_max, 120.0)
        self.assertEqual(config.effective_command_timeout, 60.0)
        self.assertEqual(config.group_id, "btmesh-operator")
        self.assertEqual(config.user, "alice")
        self.assertTrue(config.mqtt_insecure)

    def test_missing_required(self):
        env = dict(ENV)
        del env["DROGUE_TOKEN"]
        with self.assertRaises(ConfigError):
            OperatorConfig.from_env(env)

    def test_invalid_values(self):
        with self.assertRaises(ConfigError):
            OperatorConfig.from_env(dict(ENV, MAX_RETRIES="many"))
        with self.assertRaises(ConfigError):
            OperatorConfig.from_env(dict(ENV, MAX_RETRIES="0"))
        with self.assertRaises(ConfigError):
            OperatorConfig.from_env(dict(ENV, RECONCILE_INTERVAL="soon"))

if __name__ == '__main__':
    unittest.main()
