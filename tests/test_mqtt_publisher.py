# pylint: disable=missing-module-docstring,missing-function-docstring,missing-class-docstring,protected-access
# pylint: disable=unused-argument,too-few-public-methods,no-member,use-implicit-booleaness-not-comparison,line-too-long
# pylint: disable=invalid-name,too-many-statements,too-many-instance-attributes,wrong-import-position,wrong-import-order
# pylint: disable=deprecated-module,too-many-locals,too-many-lines,attribute-defined-outside-init,unexpected-keyword-arg
# pylint: disable=duplicate-code
import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

import mqtt_publisher
from helpers import make_gateway
from models import HVACMode


class DummyClient:
    def __init__(self):
        self.published = []
        self.subscribed = []
        self.rc = 0

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))
        return SimpleNamespace(rc=self.rc, mid=len(self.published))

    def subscribe(self, topic, qos=0):
        self.subscribed.append((topic, qos))
        return (0, 1)


def _ready_publisher():
    pub = mqtt_publisher.MQTTPublisher(namespace="wmp")
    pub.client = DummyClient()
    pub.connected = True
    return pub


def _topics(pub):
    return [p[0] for p in pub.client.published]


def test_topic_matches():
    match = mqtt_publisher.MQTTPublisher._topic_matches
    assert match("wmp/+/+/set/+", "wmp/gw1/1/set/mode")
    assert not match("wmp/+/+/set/+", "wmp/gw1/set/mode")
    assert match("wmp/+/set/+", "wmp/gw1/set/refresh")
    assert match("wmp/#", "wmp/gw1/1/state")
    assert not match("wmp/gw2/#", "wmp/gw1/1/state")


def test_topics():
    pub = mqtt_publisher.MQTTPublisher(namespace="wmp")
    assert pub.bridge_availability_topic == "wmp/bridge/availability"
    assert pub.availability_topic("gw1") == "wmp/gw1/availability"
    assert pub.unit_state_topic("gw1", 2) == "wmp/gw1/2/state"
    assert pub.command_topic("gw1", 2, "mode") == "wmp/gw1/2/set/mode"
    assert pub.command_topic("gw1", None, "refresh") == "wmp/gw1/set/refresh"


def test_add_message_handler_subscribes_and_routes():
    pub = _ready_publisher()
    got = []
    pub.add_message_handler(topic="wmp/+/+/set/+", handler=lambda *a: got.append(a), qos=1)
    assert pub.client.subscribed == [("wmp/+/+/set/+", 1)]

    msg = SimpleNamespace(topic="wmp/gw1/1/set/mode", payload=b"cool", qos=1, retain=False)
    pub._on_message(None, None, msg)
    pub._on_message(None, None, SimpleNamespace(topic="other/x", payload=b"", qos=0, retain=False))
    assert got == [("wmp/gw1/1/set/mode", b"cool", 1, False)]


def test_handler_added_before_connect_subscribes_on_connect():
    pub = mqtt_publisher.MQTTPublisher(namespace="wmp")
    pub.add_message_handler(topic="wmp/+/set/+", handler=lambda *a: None, qos=1)
    pub.client = DummyClient()
    pub._on_connect(pub.client, None, {}, 0)
    assert pub.connected
    assert ("wmp/+/set/+", 1) in pub.client.subscribed
    assert ("wmp/bridge/availability", "online", 1, True) in pub.client.published


def test_on_connect_refused_and_disconnect():
    pub = mqtt_publisher.MQTTPublisher(namespace="wmp")
    pub.client = DummyClient()
    pub._on_connect(pub.client, None, {}, 5)
    assert not pub.connected
    assert pub.last_error_msg == "Not authorized"

    pub.connected = True
    pub._on_disconnect(pub.client, None, 7)
    assert not pub.connected
    assert "rc=7" in pub.last_error_msg


def test_publish_json_dedupes_and_requires_connection():
    pub = _ready_publisher()
    assert pub.publish_json("wmp/x", {"a": 1})
    assert pub.publish_json("wmp/x", {"a": 1})
    assert len(pub.client.published) == 1
    assert pub.publish_json("wmp/x", {"a": 2})
    assert len(pub.client.published) == 2

    pub.client.rc = 4
    assert pub.publish_json("wmp/y", {"a": 1}) is False
    assert pub.publish_failed == 1

    pub.connected = False
    assert pub.publish_json("wmp/z", "x") is False


def test_publish_unit_state_and_discovery():
    gateway, _timer, _clock = make_gateway()
    unit = gateway.units.get(1)
    gateway.dispatcher.dispatch_line("LIMITS:MODE,[AUTO,HEAT,COOL,FAN]")
    gateway.dispatcher.dispatch_line("LIMITS:SETPTEMP,[180,300]")
    gateway.dispatcher.dispatch_line("LIMITS:FANSP,[AUTO,1,2,3]")
    gateway.dispatcher.dispatch_line("CHN,1:ONOFF,ON")
    gateway.dispatcher.dispatch_line("CHN,1:MODE,FAN")

    pub = _ready_publisher()
    pub.publish_unit(gateway, unit)

    topics = _topics(pub)
    assert "homeassistant/climate/wmp_gw1_1/config" in topics
    assert "wmp/gw1/1/state" in topics

    config = json.loads(next(p[1] for p in pub.client.published if p[0].endswith("/config")))
    assert config["modes"] == ["off", "auto", "heat", "cool", "fan_only"]
    assert config["min_temp"] == 18.0
    assert config["max_temp"] == 30.0
    assert config["fan_modes"] == ["auto", "1", "2", "3"]
    assert config["mode_command_topic"] == "wmp/gw1/1/set/mode"

    state = json.loads(next(p[1] for p in pub.client.published if p[0] == "wmp/gw1/1/state"))
    assert state["ha_mode"] == "fan_only"
    assert state["mode"] == HVACMode.FAN.value

    # Discovery is not resent for an unchanged config
    pub.publish_unit(gateway, unit)
    assert _topics(pub).count("homeassistant/climate/wmp_gw1_1/config") == 1


def test_publish_gateway_availability():
    gateway, _timer, _clock = make_gateway()
    pub = _ready_publisher()
    pub.publish_gateway(gateway)
    published = {p[0]: p[1] for p in pub.client.published}
    assert published["wmp/gw1/availability"] == "offline"
    status = json.loads(published["wmp/gw1/status"])
    assert status["id"] == "gw1"
    assert "units" not in status
    assert "wmp/gw1/1/state" in published


def test_publish_skipped_when_not_ready():
    gateway, _timer, _clock = make_gateway()
    pub = mqtt_publisher.MQTTPublisher(namespace="wmp")
    pub.publish_gateway(gateway)
    pub.publish_unit(gateway, gateway.units.get(1))
    assert pub.client is None


@pytest.mark.asyncio
async def test_health_check_reconnects_when_disconnected():
    pub = mqtt_publisher.MQTTPublisher(namespace="wmp")
    pub.connect = MagicMock(return_value=True)
    calls = {"count": 0}

    async def fake_sleep(_interval):
        calls["count"] += 1
        if calls["count"] > 1:
            raise RuntimeError("stop")

    with patch("mqtt_publisher.asyncio.sleep", fake_sleep):
        with patch("mqtt_publisher.logger") as mock_logger:
            with pytest.raises(RuntimeError):
                await pub.health_check_loop()
            assert any("reconnected" in call.args[0] for call in mock_logger.info.call_args_list)
    assert pub.reconnect_attempts == 1
    pub.connect.assert_called_once()


@pytest.mark.asyncio
async def test_health_check_idle_while_connected():
    pub = _ready_publisher()
    pub.connect = MagicMock(return_value=True)
    calls = {"count": 0}

    async def fake_sleep(_interval):
        calls["count"] += 1
        if calls["count"] > 2:
            raise RuntimeError("stop")

    with patch("mqtt_publisher.asyncio.sleep", fake_sleep):
        with pytest.raises(RuntimeError):
            await pub.health_check_loop()
    pub.connect.assert_not_called()
