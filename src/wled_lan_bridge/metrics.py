"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
    start_http_server,
)

_REGISTRY = CollectorRegistry()

DISCOVERY_CANDIDATES = Counter(
    "wled_discovery_candidates_total",
    "Candidate addresses reported by discovery scanners",
    ["method"],
    registry=_REGISTRY,
)
DISCOVERY_PROBES = Counter(
    "wled_discovery_probes_total",
    "Identity probe outcomes",
    ["method", "result"],
    registry=_REGISTRY,
)
DISCOVERY_MERGES = Counter(
    "wled_discovery_merges_total",
    "Outcome of merging a confirmed device into the discovered set",
    ["outcome"],
    registry=_REGISTRY,
)
DISCOVERED_DEVICES = Gauge(
    "wled_discovered_devices",
    "Devices currently in the discovered set",
    registry=_REGISTRY,
)
VERIFICATION_QUEUE_DEPTH = Gauge(
    "wled_verification_queue_depth",
    "Candidates waiting for an identity probe",
    registry=_REGISTRY,
)
CHANNEL_TRANSITIONS = Counter(
    "wled_session_channel_transitions_total",
    "Push channel state transitions",
    ["state"],
    registry=_REGISTRY,
)
RECONNECT_ATTEMPTS = Counter(
    "wled_session_reconnect_attempts_total",
    "Scheduled push channel reconnect attempts",
    registry=_REGISTRY,
)
POLLING_FALLBACKS = Counter(
    "wled_session_polling_fallbacks_total",
    "Sessions that abandoned the push channel for polling",
    registry=_REGISTRY,
)
STATE_UPDATES = Counter(
    "wled_session_state_updates_total",
    "Device state payloads applied to the local mirror",
    ["source", "result"],
    registry=_REGISTRY,
)
COMMANDS = Counter(
    "wled_session_commands_total",
    "State mutations sent to devices",
    ["transport", "result"],
    registry=_REGISTRY,
)
LISTENER_ERRORS = Counter(
    "wled_listener_errors_total",
    "Exceptions raised by registered listeners",
    ["kind"],
    registry=_REGISTRY,
)


def record_discovery_candidate(method: str) -> None:
    DISCOVERY_CANDIDATES.labels(method=method).inc()


def record_probe(method: str, result: str) -> None:
    DISCOVERY_PROBES.labels(method=method, result=result).inc()


def record_merge(outcome: str) -> None:
    DISCOVERY_MERGES.labels(outcome=outcome).inc()


def set_discovered_devices(count: int) -> None:
    DISCOVERED_DEVICES.set(count)


def set_verification_queue_depth(depth: int) -> None:
    VERIFICATION_QUEUE_DEPTH.set(depth)


def record_channel_transition(state: str) -> None:
    CHANNEL_TRANSITIONS.labels(state=state).inc()


def record_reconnect_attempt() -> None:
    RECONNECT_ATTEMPTS.inc()


def record_polling_fallback() -> None:
    POLLING_FALLBACKS.inc()


def record_state_update(source: str, result: str) -> None:
    STATE_UPDATES.labels(source=source, result=result).inc()


def record_command(transport: str, result: str) -> None:
    COMMANDS.labels(transport=transport, result=result).inc()


def record_listener_error(kind: str) -> None:
    LISTENER_ERRORS.labels(kind=kind).inc()


def start_metrics_server(port: int) -> None:
    """Expose the bridge registry over HTTP on ``port``."""

    start_http_server(port, registry=_REGISTRY)


def metrics_payload() -> bytes:
    """Return the current registry rendered in the Prometheus text format."""

    return generate_latest(_REGISTRY)
