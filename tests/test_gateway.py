import asyncio
from dataclasses import replace

import pytest

from rfxcom_mqtt.errors import ConnectError, MissingSubtype, UnknownDeviceType
from rfxcom_mqtt.protocols import DEFAULT_RECEIVE
from rfxcom_mqtt.rfxcom_gateway import RfxcomGateway
from rfxcom_mqtt.settings import DeviceOverride
from rfxcom_mqtt.transceiver import MockTransceiver


def _run_initialized(gateway, scenario):
    async def runner():
        await gateway.initialize()
        await asyncio.sleep(0)
        result = await scenario()
        await gateway.stop()
        return result

    return asyncio.run(runner())


def test_mock_initialize_opens_and_enables_receive(gateway, transceiver):
    async def scenario():
        return gateway.connected

    assert _run_initialized(gateway, scenario) is True
    assert transceiver.protocols == gateway.receive
    assert "lighting2" in gateway.receive
    assert not transceiver.is_open


def test_unknown_protocol_is_warned_and_dropped(settings, transceiver, caplog):
    radio = replace(settings.radio, receive=("lighting2", "warpdrive"))
    gateway = RfxcomGateway(radio, transceiver=transceiver)

    async def scenario():
        return gateway.receive

    assert _run_initialized(gateway, scenario) == ("lighting2",)
    assert "Protocol warpdrive is not supported, ignored" in caplog.text


def test_empty_receive_list_uses_defaults(settings, transceiver):
    gateway = RfxcomGateway(replace(settings.radio, receive=()), transceiver=transceiver)

    async def scenario():
        return gateway.receive

    assert _run_initialized(gateway, scenario) == DEFAULT_RECEIVE


def test_events_reach_handlers_in_registration_order(gateway, transceiver):
    seen = []
    gateway.subscribe_events(lambda protocol, event: seen.append(("first", protocol, event["id"])))
    gateway.subscribe_events(lambda protocol, event: seen.append(("second", protocol, event["id"])))

    async def scenario():
        transceiver.emit("lighting2", {"id": "0x011B", "unitCode": "2", "commandNumber": 1, "subtype": 0})
        await asyncio.sleep(0)

    _run_initialized(gateway, scenario)
    assert seen == [("first", "lighting2", "0x011B"), ("second", "lighting2", "0x011B")]


def test_events_are_tagged_with_group_and_subtype_label(gateway, transceiver):
    seen = []
    gateway.subscribe_events(lambda protocol, event: seen.append(event))

    async def scenario():
        transceiver.emit("lighting2", {"id": "0x011B", "unitCode": "1", "commandNumber": 3, "subtype": 0})
        transceiver.emit("lighting2", {"id": "0x011B", "unitCode": "1", "commandNumber": 1, "subtype": 1})
        await asyncio.sleep(0)

    _run_initialized(gateway, scenario)
    assert seen[0]["group"] is True
    assert seen[0]["subTypeValue"] == "AC"
    assert seen[1]["group"] is False
    assert seen[1]["subTypeValue"] == "HOMEEASY_EU"


def test_events_outside_receive_filter_are_dropped(gateway, transceiver):
    seen = []
    gateway.subscribe_events(lambda protocol, event: seen.append(protocol))

    async def scenario():
        transceiver.emit("fan", {"id": "0x01", "command": "Hi"})
        await asyncio.sleep(0)

    _run_initialized(gateway, scenario)
    assert seen == []


def test_failing_handler_does_not_stop_fan_out(gateway, transceiver, caplog):
    seen = []

    def broken(protocol, event):
        raise RuntimeError("boom")

    gateway.subscribe_events(broken)
    gateway.subscribe_events(lambda protocol, event: seen.append(event["id"]))

    async def scenario():
        transceiver.emit("lighting2", {"id": "0x011B", "unitCode": "1", "subtype": 0})
        await asyncio.sleep(0)

    _run_initialized(gateway, scenario)
    assert seen == ["0x011B"]
    assert "RFXCOM event handler failed" in caplog.text


def test_removed_handlers_are_not_called(gateway, transceiver):
    seen = []

    def handler(protocol, event):
        seen.append(protocol)

    gateway.subscribe_events(handler)
    gateway.remove_handlers([handler])

    async def scenario():
        transceiver.emit("lighting2", {"id": "0x011B", "unitCode": "1", "subtype": 0})
        await asyncio.sleep(0)

    _run_initialized(gateway, scenario)
    assert seen == []


def test_mock_start_emits_status_then_events(settings):
    transceiver = MockTransceiver()
    gateway = RfxcomGateway(settings.radio, transceiver=transceiver)
    statuses, events = [], []
    gateway.on_status(statuses.append)
    gateway.subscribe_events(lambda protocol, event: events.append((protocol, event["id"])))

    async def scenario():
        await gateway.start()
        await asyncio.sleep(0)
        await gateway.stop()

    asyncio.run(scenario())
    assert statuses[0]["receiverType"] == "Mock"
    assert ("lighting2", "0x011B") in events
    # not in the receive list
    assert all(protocol != "uv1" for protocol, _ in events)


def test_send_command_transmits_once(gateway, transceiver):
    async def scenario():
        return await gateway.send_command(
            "lighting2", "0x011B/1", "On", DeviceOverride(id="0x011B/1", name="0x011B/1", subtype="AC")
        )

    assert _run_initialized(gateway, scenario) == 1
    assert len(transceiver.sent) == 1
    assert transceiver.sent[0].function == "switchOn"


def test_send_command_repeats_from_configuration(settings, transceiver):
    gateway = RfxcomGateway(replace(settings.radio, transmit_repeat=3), transceiver=transceiver)

    async def scenario():
        return await gateway.send_command("lighting2", "0x011B/1", {"command": "Off", "subtype": 0})

    assert _run_initialized(gateway, scenario) == 3
    assert [tx.function for tx in transceiver.sent] == ["switchOff"] * 3


def test_send_command_uses_specialised_strategy(gateway, transceiver):
    async def scenario():
        return await gateway.send_command("rfy", "0x0A0B0C,0x0A0B0D", "Up")

    assert _run_initialized(gateway, scenario) == 2
    assert [tx.address for tx in transceiver.sent] == ["0x0A0B0C/1", "0x0A0B0D/1"]


def test_invalid_command_never_reaches_hardware(gateway, transceiver):
    async def scenario():
        with pytest.raises(UnknownDeviceType):
            await gateway.send_command("teleporter1", "0x01", "On")
        with pytest.raises(MissingSubtype):
            await gateway.send_command("lighting2", "0x011B/1", "On")

    _run_initialized(gateway, scenario)
    assert transceiver.sent == []


def test_send_command_when_not_connected(gateway, transceiver):
    async def scenario():
        with pytest.raises(ConnectError):
            await gateway.send_command("lighting2", "0x011B/1", {"command": "On", "subtype": 0})

    asyncio.run(scenario())
    assert transceiver.sent == []


def test_get_status(gateway):
    assert asyncio.run(gateway.get_status()) == "offline"

    async def scenario():
        return await gateway.get_status()

    assert _run_initialized(gateway, scenario) == "online"


def test_disconnect_notifies_and_retries(settings, transceiver):
    gateway = RfxcomGateway(settings.radio, transceiver=transceiver, retry_delay_s=0.01)
    dropped = []
    gateway.on_disconnect(dropped.append)

    async def scenario():
        await gateway.start()
        transceiver.drop()
        await asyncio.sleep(0)
        offline = not gateway.connected
        await asyncio.sleep(0.1)
        online = gateway.connected
        await gateway.stop()
        return offline, online

    assert asyncio.run(scenario()) == (True, True)
    assert dropped == [{"reason": "mock connection dropped"}]


def test_is_group_on_gateway(gateway):
    assert gateway.is_group({"type": "lighting6", "commandNumber": 3})
    assert not gateway.is_group({"type": "lighting6", "commandNumber": 1})
