"""Network discovery: mDNS and UDP broadcast scanners feeding the verification queue."""

from __future__ import annotations

import asyncio
import contextlib
import ipaddress
import socket
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import httpx
from zeroconf import ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .config import Config
from .logging import get_logger
from .metrics import record_discovery_candidate, record_merge, set_discovered_devices
from .models import DiscoveredDevice, DiscoveryMethod, is_local_hostname
from .observers import DiscoveryObserver, ObserverRegistry
from .timers import Timer
from .verification import DeviceProber, VerificationQueue

CandidateSink = Callable[[str, int, DiscoveryMethod], None]

BROADCAST_PAYLOAD = b"\x01"
MDNS_RESOLVE_TIMEOUT_MS = 3000


def _is_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


def _create_broadcast_socket(port: int) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    with contextlib.suppress(AttributeError):
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
    sock.bind(("", port))
    sock.setblocking(False)
    return sock


class MdnsScanner:
    """Browse for the device service type and report resolved hosts."""

    def __init__(
        self,
        service_type: str,
        on_candidate: CandidateSink,
        *,
        default_port: int = 80,
    ) -> None:
        self.service_type = service_type
        self.default_port = default_port
        self._on_candidate = on_candidate
        self._zeroconf: Optional[AsyncZeroconf] = None
        self._browser: Optional[AsyncServiceBrowser] = None
        self._tasks: Set[asyncio.Task[None]] = set()
        self.logger = get_logger("wled.discovery.mdns")

    @property
    def running(self) -> bool:
        return self._browser is not None

    async def start(self) -> None:
        if self.running:
            return
        self._zeroconf = AsyncZeroconf()
        self._browser = AsyncServiceBrowser(
            self._zeroconf.zeroconf,
            [self.service_type],
            handlers=[self._on_service_state_change],
        )
        self.logger.info("mDNS browser started", extra={"service_type": self.service_type})

    async def close(self) -> None:
        browser, self._browser = self._browser, None
        zc, self._zeroconf = self._zeroconf, None
        for task in list(self._tasks):
            task.cancel()
        if browser is not None:
            await browser.async_cancel()
        if zc is not None:
            await zc.async_close()
            self.logger.info("mDNS browser stopped", extra={"service_type": self.service_type})

    def service_found(self, server: Optional[str], port: Optional[int]) -> None:
        """Report an advertised hostname as a candidate."""

        host = (server or "").rstrip(".")
        if not host:
            self.logger.debug("Ignoring advertisement without a hostname")
            return
        self._on_candidate(host, port or self.default_port, DiscoveryMethod.ADVERTISEMENT)

    def _on_service_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        if state_change is ServiceStateChange.Added:
            task = asyncio.ensure_future(self._resolve(zeroconf, service_type, name))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif state_change is ServiceStateChange.Removed:
            # Confirmed devices stay; a silent advertiser may still be reachable.
            self.logger.info("Service went away", extra={"service": name})

    async def _resolve(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zeroconf, MDNS_RESOLVE_TIMEOUT_MS):
            self.logger.debug("Could not resolve service", extra={"service": name})
            return
        server = info.server
        if not server:
            addresses = info.parsed_addresses()
            server = addresses[0] if addresses else None
        self.logger.debug(
            "Service resolved",
            extra={"service": name, "server": server, "port": info.port},
        )
        self.service_found(server, info.port)


class BroadcastProtocol(asyncio.DatagramProtocol):
    """Treat any datagram on the sync port as evidence of a device at its source."""

    def __init__(self, http_port: int, on_candidate: CandidateSink) -> None:
        self.http_port = http_port
        self._on_candidate = on_candidate
        self.transport: Optional[asyncio.DatagramTransport] = None
        self.logger = get_logger("wled.discovery.broadcast")
        self._seen: Set[str] = set()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport  # type: ignore[assignment]
        self.logger.debug(
            "Broadcast transport ready",
            extra={"local": transport.get_extra_info("sockname")},
        )

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc:
            self.logger.error(
                "Broadcast transport error",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
        self.transport = None

    def error_received(self, exc: Exception) -> None:
        self.logger.warning("Broadcast socket error", extra={"error": str(exc)})

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        host = addr[0]
        if host in self._seen:
            return
        self._seen.add(host)
        self.logger.debug("Broadcast response", extra={"host": host, "bytes": len(data)})
        self._on_candidate(host, self.http_port, DiscoveryMethod.BROADCAST)


class BroadcastScanner:
    """Notify common broadcast addresses on the sync port and collect responders."""

    def __init__(
        self,
        addresses: Sequence[str],
        sync_port: int,
        http_port: int,
        on_candidate: CandidateSink,
    ) -> None:
        self.addresses = list(addresses)
        self.sync_port = sync_port
        self.http_port = http_port
        self._on_candidate = on_candidate
        self._transport: Optional[asyncio.DatagramTransport] = None
        self.logger = get_logger("wled.discovery.broadcast")

    @property
    def running(self) -> bool:
        return self._transport is not None

    async def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        sock = _create_broadcast_socket(self.sync_port)
        transport, _ = await loop.create_datagram_endpoint(
            lambda: BroadcastProtocol(self.http_port, self._on_candidate),
            sock=sock,
        )
        self._transport = transport
        for address in self.addresses:
            try:
                transport.sendto(BROADCAST_PAYLOAD, (address, self.sync_port))
            except OSError as exc:
                self.logger.warning(
                    "Broadcast send failed",
                    extra={"address": address, "error": str(exc)},
                )
        self.logger.info(
            "Broadcast scan sent",
            extra={"addresses": self.addresses, "port": self.sync_port},
        )

    async def close(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            transport.close()
            self.logger.info("Broadcast scanner closed", extra={"port": self.sync_port})


ScannerFactory = Callable[[CandidateSink], "MdnsScanner | BroadcastScanner"]


class DiscoveryEngine:
    """Run both scanners periodically and keep the set of confirmed devices.

    Candidates from either scanner go through one serial verification queue.
    Confirmed devices are keyed by id; collisions follow the merge rules in
    ``_merge``. Listeners receive the full device list after every change.
    """

    def __init__(
        self,
        config: Config,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        prober: Optional[DeviceProber] = None,
        scanner_factories: Optional[Sequence[ScannerFactory]] = None,
    ) -> None:
        self.config = config
        self.logger = get_logger("wled.discovery")
        self._devices: Dict[str, DiscoveredDevice] = {}
        self._listeners: ObserverRegistry[List[DiscoveredDevice]] = ObserverRegistry(
            "discovery", self.logger
        )
        self._prober = prober or DeviceProber(config.discovery_probe_timeout, transport=transport)
        self._manual_prober = DeviceProber(config.manual_probe_timeout, transport=transport)
        self._queue = VerificationQueue(
            self._prober.probe, self._merge, delay=config.discovery_probe_delay
        )
        if scanner_factories is None:
            scanner_factories = (self._mdns_scanner, self._broadcast_scanner)
        self._scanner_factories = list(scanner_factories)
        self._scanners: List["MdnsScanner | BroadcastScanner"] = []
        self._rediscovery: Optional[Timer] = None
        self._window: Optional[Timer] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def queue(self) -> VerificationQueue:
        return self._queue

    async def start_discovery(self) -> None:
        """Scan now and every ``discovery_interval`` seconds until stopped."""

        if self._running:
            return
        self._running = True
        self.logger.info(
            "Starting discovery",
            extra={
                "interval": self.config.discovery_interval,
                "window": self.config.discovery_window,
            },
        )
        await self._run_cycle()
        self._rediscovery = Timer(
            self.config.discovery_interval,
            self._run_cycle,
            repeat=True,
            name="wled-rediscovery",
        ).start()

    async def stop_discovery(self) -> None:
        if self._rediscovery is not None:
            await self._rediscovery.stop()
            self._rediscovery = None
        await self._close_scanners()
        await self._queue.close()
        if self._running:
            self._running = False
            self.logger.info("Discovery stopped")

    def get_discovered_devices(self) -> List[DiscoveredDevice]:
        return list(self._devices.values())

    def clear_discovered_devices(self) -> None:
        self._devices.clear()
        set_discovered_devices(0)
        self.logger.info("Cleared discovered devices")
        self._publish()

    def add_listener(self, listener: DiscoveryObserver) -> Callable[[], None]:
        """Register ``listener``; it is called at once if devices are already known."""

        remove = self._listeners.add(listener)
        if self._devices:
            self._listeners.call(listener, self.get_discovered_devices())
        return remove

    def remove_listener(self, listener: DiscoveryObserver) -> bool:
        return self._listeners.remove(listener)

    async def add_device_by_host(self, host: str, port: int = 80) -> Optional[DiscoveredDevice]:
        """Probe ``host`` directly and merge it on success."""

        for device in self._devices.values():
            if device.host == host and device.port == port:
                self.logger.debug(
                    "Device already known",
                    extra={"host": host, "port": port, "device_id": device.id},
                )
                return device

        record_discovery_candidate(DiscoveryMethod.DIRECT.value)
        device = await self._manual_prober.probe(host, port, DiscoveryMethod.DIRECT)
        if device is None:
            self.logger.warning("No device answered at host", extra={"host": host, "port": port})
            return None
        self._merge(device)
        return device

    def _on_candidate(self, host: str, port: int, method: DiscoveryMethod) -> None:
        record_discovery_candidate(method.value)
        self._queue.enqueue(host, port, method)

    def _mdns_scanner(self, sink: CandidateSink) -> MdnsScanner:
        return MdnsScanner(self.config.mdns_service_type, sink, default_port=self.config.http_port)

    def _broadcast_scanner(self, sink: CandidateSink) -> BroadcastScanner:
        return BroadcastScanner(
            self.config.broadcast_addresses,
            self.config.sync_port,
            self.config.http_port,
            sink,
        )

    async def _run_cycle(self) -> None:
        await self._close_scanners()
        self.logger.debug("Discovery cycle starting")
        for factory in self._scanner_factories:
            scanner = factory(self._on_candidate)
            try:
                await scanner.start()
            except OSError as exc:
                self.logger.error(
                    "Scanner failed to start",
                    extra={"scanner": type(scanner).__name__, "error": str(exc)},
                )
                continue
            self._scanners.append(scanner)
        self._window = Timer(
            self.config.discovery_window,
            self._close_scanners,
            name="wled-discovery-window",
        ).start()

    async def _close_scanners(self) -> None:
        if self._window is not None:
            self._window.cancel()
            self._window = None
        scanners, self._scanners = self._scanners, []
        for scanner in scanners:
            await scanner.close()
        if scanners:
            self.logger.debug("Discovery window closed")

    def _merge(self, device: DiscoveredDevice) -> bool:
        """Fold a confirmed device into the set; return whether anything changed.

        - unknown id: insert
        - same host: backfill missing info only
        - known ``.local`` host, new literal address: replace with the address
        - known address, new ``.local`` host: keep the address
        - any other host mismatch: keep the first entry and log the conflict
        """

        existing = self._devices.get(device.id)
        extra = {"device_id": device.id, "host": device.host, "method": device.method.value}
        if existing is None:
            self._devices[device.id] = device
            outcome = "added"
            self.logger.info("Discovered device", extra={**extra, "device_name": device.name})
        elif existing.host == device.host:
            if existing.info is not None or device.info is None:
                record_merge("unchanged")
                return False
            self._devices[device.id] = replace(existing, info=device.info)
            outcome = "backfilled"
        elif is_local_hostname(existing.host) and _is_address(device.host):
            self._devices[device.id] = device
            outcome = "replaced"
            self.logger.info(
                "Preferring address over hostname",
                extra={**extra, "previous_host": existing.host},
            )
        elif _is_address(existing.host) and is_local_hostname(device.host):
            record_merge("ignored")
            self.logger.debug("Keeping address over hostname", extra={**extra, "kept_host": existing.host})
            return False
        else:
            record_merge("conflict")
            self.logger.warning(
                "Device id seen at a different host; keeping first entry",
                extra={**extra, "kept_host": existing.host},
            )
            return False

        record_merge(outcome)
        set_discovered_devices(len(self._devices))
        self._publish()
        return True

    def _publish(self) -> None:
        self._listeners.notify(self.get_discovered_devices())
