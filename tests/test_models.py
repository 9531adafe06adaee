import pytest

from wled_lan_bridge.models import (
    DeviceInfo,
    DeviceState,
    DiscoveredDevice,
    DiscoveryMethod,
    PresetRegistry,
    is_local_hostname,
    normalize_device_id,
    parse_segments,
)


def test_state_from_payload_reads_first_segment() -> None:
    state = DeviceState.from_payload(
        {
            "on": True,
            "bri": 255,
            "ps": 3,
            "seg": [{"col": [[255, 0, 0], [0, 0, 0]], "fx": 9}, {"col": [[0, 0, 255]]}],
        }
    )
    assert state.on is True
    assert state.brightness == 100
    assert state.color == (255, 0, 0)
    assert (state.hue, state.saturation) == (0, 100)
    assert state.effect == 9
    assert state.preset_id == 3


def test_state_from_payload_defaults() -> None:
    state = DeviceState.from_payload({"ps": 0})
    assert state.on is False
    assert state.brightness == 0
    assert state.color == (0, 0, 0)
    assert state.preset_id == -1


def test_state_copy_is_independent() -> None:
    state = DeviceState(segment_state=[DeviceState(on=True)])
    clone = state.copy()
    clone.segment_state[0].on = False
    assert state.segment_state[0].on is True


def test_info_defaults() -> None:
    info = DeviceInfo.from_payload({})
    assert info.name == "WLED"
    assert info.version == "Unknown"
    assert info.mac == "Unknown"
    assert info.segment_count == 1
    assert info.led_count == 0


def test_parse_segments() -> None:
    segments = parse_segments(
        [
            {"start": 0, "stop": 30, "bri": 128, "on": True, "sel": True, "col": [[1, 2, 3]]},
            {"start": 30, "stop": 60, "n": "Shelf"},
        ]
    )
    assert [segment.id for segment in segments] == [0, 1]
    assert segments[0].length == 30
    assert segments[0].brightness == 50
    assert segments[0].selected is True
    assert segments[0].name == "Segment 0"
    assert segments[1].name == "Shelf"
    assert segments[0].to_state().color == (1, 2, 3)


@pytest.mark.parametrize("payload", [{"start": 0}, [1, 2], "seg"])
def test_parse_segments_rejects_malformed(payload) -> None:
    with pytest.raises(ValueError):
        parse_segments(payload)


def test_preset_registry_filters_reserved_and_blank_entries() -> None:
    registry = PresetRegistry()
    assert registry.loaded is False
    presets = registry.populate(
        {
            "0": {},
            "1": {"n": "Evening", "on": True},
            "2": {"bri": 10},
            "_name": "ignored",
            "_type": "ignored",
            "x": {"n": "not numeric"},
        }
    )
    assert registry.loaded is True
    assert set(presets) == {"0", "1", "2"}
    assert presets["1"].name == "Evening"
    assert presets["2"].name == "Preset 2"

    registry.invalidate()
    assert registry.loaded is False
    assert len(registry) == 0


def test_empty_preset_map_counts_as_loaded() -> None:
    registry = PresetRegistry()
    assert registry.populate({}) == {}
    assert registry.loaded is True


def test_normalize_device_id() -> None:
    assert normalize_device_id("aa:bb:cc:dd:ee:ff", "10.0.0.2") == "AABBCCDDEEFF"
    assert normalize_device_id("AA-BB-CC-DD-EE-FF", "10.0.0.2") == "AABBCCDDEEFF"
    assert normalize_device_id(None, "10.0.0.2") == "wled-10.0.0.2"


def test_is_local_hostname() -> None:
    assert is_local_hostname("wled-kitchen.local")
    assert is_local_hostname("WLED-Kitchen.LOCAL.")
    assert not is_local_hostname("192.168.1.50")
    assert not is_local_hostname("wled.lan")


def test_discovered_device_from_info_payload() -> None:
    device = DiscoveredDevice.from_info_payload(
        "192.168.1.50",
        80,
        DiscoveryMethod.BROADCAST,
        {"ver": "0.14.0", "mac": "aabbccddeeff", "leds": {"count": 60}},
    )
    assert device.id == "AABBCCDDEEFF"
    assert device.name == "WLED 192.168.1.50"
    assert device.info is not None
    assert device.info.led_count == 60
    assert device.info.version == "0.14.0"


@pytest.mark.parametrize("leds", [[60], "60", 60, None])
def test_identity_tolerates_non_object_leds(leds) -> None:
    device = DiscoveredDevice.from_info_payload(
        "192.168.1.50", 80, DiscoveryMethod.DIRECT, {"ver": "0.14.0", "name": "Strip", "leds": leds}
    )
    assert device.info is not None
    assert device.info.led_count == 0
    info = DeviceInfo.from_payload({"leds": leds})
    assert (info.segment_count, info.led_count) == (1, 0)
