"""Entrypoint for the WLED LAN bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from typing import Dict, Iterable, List, Optional, Set

from .config import Config, ManualDevice, load_config
from .discovery import DiscoveryEngine
from .logging import configure_logging, get_logger
from .metrics import start_metrics_server
from .models import DeviceState, DiscoveredDevice
from .session import DeviceSession


class _SessionPool:
    """Sessions opened by the bridge.

    Discovered devices are keyed by device id so a device that moves from a
    ``.local`` name to its address keeps one session. Manual devices are keyed
    by ``host:port``.
    """

    def __init__(self, config: Config) -> None:
        self.config = config
        self.logger = get_logger("wled")
        self._sessions: Dict[str, DeviceSession] = {}
        self._addresses: Set[str] = set()
        self._pending: Set[asyncio.Task[None]] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def _register(
        self,
        key: str,
        host: str,
        port: int,
        *,
        label: Optional[str] = None,
        poll_interval: Optional[float] = None,
        use_websockets: Optional[bool] = None,
    ) -> Optional[DeviceSession]:
        address = f"{host}:{port}"
        if key in self._sessions or address in self._addresses:
            return None
        session = DeviceSession(
            self.config,
            host,
            port,
            poll_interval=poll_interval,
            use_websockets=use_websockets,
        )
        self._sessions[key] = session
        self._addresses.add(address)
        session.add_state_listener(_state_logger(self.logger, label or host, address))
        self.logger.info("Session opened", extra={"device": label or host, "address": address})
        return session

    async def open_manual(self, device: ManualDevice) -> None:
        session = self._register(
            f"{device.host}:{device.port}",
            device.host,
            device.port,
            label=device.name,
            poll_interval=device.poll_interval,
            use_websockets=device.use_websockets,
        )
        if session is not None:
            await session.start()

    def open_discovered(self, devices: List[DiscoveredDevice]) -> None:
        for device in devices:
            session = self._register(device.id, device.host, device.port, label=device.name)
            if session is None:
                continue
            task = asyncio.create_task(session.start())
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def close(self) -> None:
        for task in list(self._pending):
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await asyncio.gather(*self._pending)
        sessions, self._sessions = list(self._sessions.values()), {}
        self._addresses.clear()
        for session in sessions:
            await session.cleanup()


def _state_logger(logger: logging.Logger, label: str, address: str):
    def _log(state: DeviceState) -> None:
        logger.info(
            "Device state changed",
            extra={
                "device": label,
                "address": address,
                "on": state.on,
                "brightness": state.brightness,
                "color": list(state.color),
                "effect": state.effect,
                "preset": state.preset_id,
            },
        )

    return _log


async def _run_async(config: Config) -> None:
    logger = get_logger("wled")
    stop_event = asyncio.Event()

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    pool = _SessionPool(config)
    engine: Optional[DiscoveryEngine] = None
    try:
        for device in config.manual_devices:
            if device.enabled:
                await pool.open_manual(device)

        if config.discovery_enabled:
            engine = DiscoveryEngine(config)

            def _on_devices(devices: List[DiscoveredDevice]) -> None:
                logger.info("Discovered device set changed", extra={"count": len(devices)})
                if config.connect_discovered:
                    pool.open_discovered(devices)

            engine.add_listener(_on_devices)
            await engine.start_discovery()

        logger.info(
            "Bridge started",
            extra={
                "sessions": len(pool),
                "discovery": config.discovery_enabled,
                "connect_discovered": config.connect_discovered,
            },
        )
        await stop_event.wait()
    finally:
        if engine is not None:
            await engine.stop_discovery()
        await pool.close()
        logger.info("Bridge shutdown complete")


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint used by setuptools."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("wled")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})

    if config.metrics_port is not None:
        start_metrics_server(config.metrics_port)
        logger.info("Metrics endpoint listening", extra={"port": config.metrics_port})
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
