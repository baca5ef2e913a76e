import asyncio
import json
from dataclasses import replace

import pytest

from rfxcom_mqtt.errors import ConnectError, TlsError
from rfxcom_mqtt.mqtt_client import BrokerMessage, MqttClient, topic_matches


class RecordingListener:
    def __init__(self, *patterns, fail=False):
        self.patterns = list(patterns)
        self.messages = []
        self.fail = fail

    def subscribe_topics(self):
        return self.patterns

    def on_message(self, message):
        self.messages.append(message)
        if self.fail:
            raise RuntimeError("listener blew up")


class StubMessage:
    def __init__(self, topic, payload):
        self.topic = topic
        self.payload = payload


def _connect(mqtt, paho):
    asyncio.run(mqtt.connect())
    mqtt._on_connect(paho, None, {}, 0)


@pytest.mark.parametrize(
    "pattern,topic,expected",
    [
        ("a/+/c", "a/b/c", True),
        ("a/+/c", "a/b/c/d", False),
        ("a/+/c", "a/b/x/c", False),
        ("a/#", "a/b", True),
        ("a/#", "a/b/c", True),
        ("a/#", "a", True),
        ("a/#", "b/a", False),
        ("+/b", "a/b", True),
        ("a/b", "a/b", True),
        ("a/b", "a/b/c", False),
        ("#", "anything/at/all", True),
        ("a/#/c", "a/b/c", False),
    ],
)
def test_topic_matches(pattern, topic, expected):
    assert topic_matches(pattern, topic) is expected


def test_single_level_wildcard_never_spans_segments():
    assert not topic_matches("rfxcom2mqtt/+", "rfxcom2mqtt/command/lighting2")


def test_publish_while_disconnected_is_silent(mqtt, paho):
    mqtt.publish("devices/0x011B/1", {"command": "On"})
    mqtt.publish("bridge/state", "online", retain=True)
    assert paho.published == []


def test_connect_registers_last_will_and_credentials(settings, paho):
    cfg = replace(settings.mqtt, username="user", password="secret")
    mqtt = MqttClient(cfg, client_factory=lambda c: paho)
    asyncio.run(mqtt.connect())
    assert paho.will == ("rfxcom2mqtt/bridge/state", "offline", 1, True)
    assert paho.credentials == ("user", "secret")
    assert paho.connected_to == ("broker.local", 1883, 60)
    assert paho.loop_running


def test_on_connect_publishes_online_and_resubscribes(mqtt, paho):
    listener = RecordingListener("rfxcom2mqtt/command/#")
    mqtt.add_listener(listener)
    assert paho.subscribed == []

    _connect(mqtt, paho)

    assert ("rfxcom2mqtt/bridge/state", "online", 1, True) in paho.published
    assert paho.subscribed == [("rfxcom2mqtt/command/#", 0)]
    assert mqtt.status().connected

    # broker bounce
    mqtt._on_disconnect(paho, None, None, 7)
    assert not mqtt.is_connected()
    mqtt._on_connect(paho, None, {}, 0)
    assert paho.subscribed.count(("rfxcom2mqtt/command/#", 0)) == 2


def test_add_listener_while_connected_subscribes_immediately(mqtt, paho):
    _connect(mqtt, paho)
    mqtt.add_listener(RecordingListener("rfxcom2mqtt/command/#", "rfxcom2mqtt/bridge/request/+"))
    assert ("rfxcom2mqtt/bridge/request/+", 0) in paho.subscribed


def test_remove_listener_unsubscribes_unused_patterns(mqtt, paho):
    _connect(mqtt, paho)
    a = RecordingListener("x/#", "shared/#")
    b = RecordingListener("shared/#")
    mqtt.add_listener(a)
    mqtt.add_listener(b)
    mqtt.remove_listener(a)
    assert paho.unsubscribed == ["x/#"]


def test_dispatch_fans_out_to_every_matching_listener(mqtt, paho):
    first = RecordingListener("rfxcom2mqtt/command/#")
    second = RecordingListener("rfxcom2mqtt/+/lighting2/#")
    other = RecordingListener("elsewhere/#")
    for listener in (first, second, other):
        mqtt.add_listener(listener)

    mqtt._on_message(paho, None, StubMessage("rfxcom2mqtt/command/lighting2/0x011B/1", b"On"))

    assert first.messages == [BrokerMessage("rfxcom2mqtt/command/lighting2/0x011B/1", "On")]
    assert second.messages == first.messages
    assert other.messages == []


def test_failing_listener_does_not_stop_fan_out(mqtt, caplog):
    broken = RecordingListener("a/#", fail=True)
    ok = RecordingListener("a/#")
    mqtt.add_listener(broken)
    mqtt.add_listener(ok)
    mqtt.dispatch(BrokerMessage("a/b", "x"))
    assert len(ok.messages) == 1
    assert "MQTT listener failed" in caplog.text


def test_publish_prefixes_base_topic_and_encodes_json(mqtt, paho):
    _connect(mqtt, paho)
    mqtt.publish("devices/0x011B/2", {"id": "0x011B", "command": "On"})
    mqtt.publish("homeassistant/switch/x/config", "", qos=1, retain=True, use_prefix=False)

    topic, payload, qos, retain = paho.published[-2]
    assert topic == "rfxcom2mqtt/devices/0x011B/2"
    assert json.loads(payload) == {"id": "0x011B", "command": "On"}
    # defaults from configuration
    assert (qos, retain) == (0, True)
    assert paho.published[-1] == ("homeassistant/switch/x/config", "", 1, True)


def test_disconnect_publishes_offline_before_closing(mqtt, paho):
    _connect(mqtt, paho)
    asyncio.run(mqtt.disconnect())
    assert paho.published[-1] == ("rfxcom2mqtt/bridge/state", "offline", 1, True)
    assert paho.disconnected
    assert not paho.loop_running
    assert not mqtt.is_connected()


def test_disconnect_when_never_connected_is_noop(mqtt, paho):
    asyncio.run(mqtt.disconnect())
    assert paho.published == []


def test_connect_failure_raises_connect_error(mqtt, paho):
    paho.fail_connect = ConnectionRefusedError("refused")
    with pytest.raises(ConnectError):
        asyncio.run(mqtt.connect())
    assert "refused" in mqtt.status().last_error


def test_start_falls_back_to_background_retry(settings, paho):
    paho.fail_connect = OSError("unreachable")
    mqtt = MqttClient(settings.mqtt, client_factory=lambda c: paho, retry_delay_s=0.01)

    async def scenario():
        await mqtt.start()
        assert paho.connected_to is None
        paho.fail_connect = None
        await asyncio.sleep(0.1)
        connected_to = paho.connected_to
        await mqtt.disconnect()
        return connected_to

    assert asyncio.run(scenario()) == ("broker.local", 1883, 60)


def test_unreadable_tls_material_is_a_typed_error(settings, paho, tmp_path):
    cfg = replace(settings.mqtt, tls=True, ca=str(tmp_path / "missing-ca.pem"))
    mqtt = MqttClient(cfg, client_factory=lambda c: paho)
    with pytest.raises(TlsError):
        asyncio.run(mqtt.connect())
    assert paho.connected_to is None


def test_tls_material_is_passed_to_paho(settings, paho, tmp_path):
    ca = tmp_path / "ca.pem"
    ca.write_text("-----BEGIN CERTIFICATE-----\n", encoding="utf-8")
    cfg = replace(settings.mqtt, tls=True, ca=str(ca), reject_unauthorized=False)
    mqtt = MqttClient(cfg, client_factory=lambda c: paho)
    asyncio.run(mqtt.connect())
    assert paho.tls == {"ca_certs": str(ca), "certfile": None, "keyfile": None}
    assert paho.insecure is True


def test_restart_uses_new_configuration(mqtt, paho, settings):
    _connect(mqtt, paho)
    new_cfg = replace(settings.mqtt, server="mqtt://other", base_topic="rfx2")
    asyncio.run(mqtt.restart(new_cfg))
    assert paho.connected_to == ("other", 1883, 60)
    assert paho.will == ("rfx2/bridge/state", "offline", 1, True)
