from types import SimpleNamespace

import pytest

from rfxcom_mqtt.bridge import Bridge
from rfxcom_mqtt.discovery import HomeAssistantDiscovery
from rfxcom_mqtt.mqtt_client import MqttClient
from rfxcom_mqtt.rfxcom_gateway import RfxcomGateway
from rfxcom_mqtt.settings import load_settings
from rfxcom_mqtt.store import DeviceStore, StateStore
from rfxcom_mqtt.transceiver import MockTransceiver


class StubInfo:
    rc = 0

    def wait_for_publish(self, timeout=None):
        return True


class StubPahoClient:
    """Records what the bridge asks paho to do."""

    def __init__(self):
        self.published = []
        self.subscribed = []
        self.unsubscribed = []
        self.will = None
        self.credentials = None
        self.tls = None
        self.insecure = False
        self.connected_to = None
        self.loop_running = False
        self.disconnected = False
        self.fail_connect = None

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def will_set(self, topic, payload=None, qos=0, retain=False):
        self.will = (topic, payload, qos, retain)

    def tls_set(self, **kwargs):
        self.tls = kwargs

    def tls_insecure_set(self, value):
        self.insecure = value

    def connect(self, host, port, keepalive):
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connected_to = (host, port, keepalive)

    def reconnect_delay_set(self, min_delay=1, max_delay=120):
        pass

    def loop_start(self):
        self.loop_running = True

    def loop_stop(self):
        self.loop_running = False

    def disconnect(self):
        self.disconnected = True

    def publish(self, topic, payload=None, qos=0, retain=False):
        self.published.append((topic, payload, qos, retain))
        return StubInfo()

    def subscribe(self, topic, qos=0):
        self.subscribed.append((topic, qos))

    def unsubscribe(self, topic):
        self.unsubscribed.append(topic)

    def topics(self):
        return [p[0] for p in self.published]


@pytest.fixture
def options(tmp_path):
    return {
        "loglevel": "debug",
        "mqtt": {"server": "mqtt://broker.local", "base_topic": "rfxcom2mqtt"},
        "rfxcom": {"usbport": "mock", "receive": ["lighting1", "lighting2", "lighting5", "blinds1", "security1",
                                                  "temperature1", "rfy", "lighting4"]},
        "homeassistant": {"discovery": True, "discovery_topic": "homeassistant"},
        "healthcheck": {"enabled": False},
        "cacheState": {"enable": True, "data_path": str(tmp_path)},
        "devices": [
            {"id": "0x011B/1", "name": "0x011B/1", "subtype": "AC"},
            {"id": "0x0A0B0C", "name": "Kitchen blind", "blindsMode": "US"},
        ],
    }


@pytest.fixture
def settings(options):
    return load_settings(options)


@pytest.fixture
def paho():
    return StubPahoClient()


@pytest.fixture
def mqtt(settings, paho):
    return MqttClient(settings.mqtt, client_factory=lambda cfg: paho)


@pytest.fixture
def transceiver():
    return MockTransceiver(events=())


@pytest.fixture
def gateway(settings, transceiver):
    return RfxcomGateway(settings.radio, transceiver=transceiver)


@pytest.fixture
def make_bridge(settings, mqtt, paho, gateway, transceiver, tmp_path):
    def _make(current_settings=None, **kwargs):
        s = current_settings or settings
        devices = DeviceStore(str(tmp_path), save_interval_s=60)
        states = StateStore(str(tmp_path), save_interval_s=60)
        discovery = HomeAssistantDiscovery(mqtt, devices, s, version="test")
        bridge = Bridge(
            s,
            mqtt=mqtt,
            gateway=gateway,
            devices=devices,
            states=states,
            discovery=discovery,
            version="test",
            **kwargs,
        )
        return SimpleNamespace(
            bridge=bridge,
            mqtt=mqtt,
            paho=paho,
            gateway=gateway,
            transceiver=transceiver,
            devices=devices,
            states=states,
            discovery=discovery,
        )

    return _make
