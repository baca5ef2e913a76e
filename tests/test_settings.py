import json

from rfxcom_mqtt.settings import SettingsFile, load_settings, read_options


def test_defaults_from_empty_options():
    settings = load_settings({})
    assert settings.mqtt.host == "localhost"
    assert settings.mqtt.port == 1883
    assert settings.mqtt.base_topic == "rfxcom2mqtt"
    assert settings.mqtt.retain is True
    assert settings.mqtt.tls is False
    assert settings.radio.port == "/dev/ttyUSB0"
    assert settings.radio.transmit_repeat == 1
    assert settings.homeassistant.discovery is True
    assert settings.homeassistant.discovery_topic == "homeassistant"
    assert settings.healthcheck.interval_s == 300.0
    assert settings.cache.save_interval_s == 60.0
    assert settings.log_level == "info"
    assert settings.devices == ()


def test_mqtts_server_enables_tls_and_secure_port():
    settings = load_settings({"mqtt": {"server": "mqtts://broker:8883/", "qos": 7, "version": 9}})
    assert settings.mqtt.tls is True
    assert settings.mqtt.port == 8883
    assert settings.mqtt.host == "broker:8883"
    assert settings.mqtt.qos == 0
    assert settings.mqtt.version == 4


def test_radio_options(options):
    options["rfxcom"] = {"port": "192.168.1.5:10001", "receive": "lighting2, Lighting5", "transmit": {"repeat": "4"}}
    settings = load_settings(options)
    assert settings.radio.port == "192.168.1.5:10001"
    assert settings.radio.receive == ("lighting2", "lighting5")
    assert settings.radio.transmit_repeat == 4
    assert not settings.radio.is_mock


def test_cache_save_interval_in_minutes(options):
    options["cacheState"] = {"enable": False, "saveInterval": 2}
    settings = load_settings(options)
    assert settings.cache.enabled is False
    assert settings.cache.save_interval_s == 120.0


def test_device_overrides(options):
    options["devices"] = [
        {"id": "0x0A0B0C", "name": "Kitchen blind", "type": "RFY", "subtype": "ASA", "blindsMode": "US",
         "repetitions": "2", "units": [{"unitCode": 1, "name": "left"}, {"name": "no code"}]},
        {"name": "no id"},
        "garbage",
    ]
    settings = load_settings(options)
    assert len(settings.devices) == 1
    dev = settings.find_device("Kitchen blind")
    assert dev is settings.find_device_by_id("0x0A0B0C")
    assert (dev.type, dev.subtype, dev.blinds_mode, dev.repetitions) == ("rfy", "ASA", "US", 2)
    assert dev.unit_name("1") == "left"
    assert dev.unit_name(2) is None
    assert settings.find_device("unknown") is None


def test_read_options_missing_file(tmp_path):
    assert read_options(str(tmp_path / "options.json")) == {}


def test_settings_file_update_merges_and_persists(tmp_path, options):
    path = tmp_path / "options.json"
    path.write_text(json.dumps(options), encoding="utf-8")
    settings_file = SettingsFile(str(path))

    updated = settings_file.update({"mqtt": {"base_topic": "rfx2"}, "loglevel": "warning"})

    assert updated.mqtt.base_topic == "rfx2"
    assert updated.mqtt.host == "broker.local"
    assert updated.log_level == "warning"
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["mqtt"] == {"server": "mqtt://broker.local", "base_topic": "rfx2"}
    assert settings_file.load() == updated
