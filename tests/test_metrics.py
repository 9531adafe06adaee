from wled_lan_bridge.metrics import (
    metrics_payload,
    record_listener_error,
    record_merge,
    set_discovered_devices,
)


def test_metrics_payload_renders_recorded_values() -> None:
    record_merge("added")
    record_listener_error("state")
    set_discovered_devices(3)
    payload = metrics_payload().decode("utf-8")
    assert 'wled_discovery_merges_total{outcome="added"}' in payload
    assert 'wled_listener_errors_total{kind="state"}' in payload
    assert "wled_discovered_devices 3.0" in payload
