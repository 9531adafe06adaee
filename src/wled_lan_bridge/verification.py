"""Serialised verification of discovery candidates."""

from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Mapping, Optional

import httpx

from .logging import get_logger
from .metrics import record_probe, set_verification_queue_depth
from .models import CheckQueueItem, DiscoveredDevice, DiscoveryMethod

ProbeFn = Callable[[str, int, DiscoveryMethod], Awaitable[Optional[DiscoveredDevice]]]


def is_device_identity(data: Any) -> bool:
    """Return whether an ``/json/info`` body identifies a controllable device."""

    if not isinstance(data, Mapping) or not data.get("ver"):
        return False
    return bool(data.get("name")) or data.get("brand") == "WLED"


class DeviceProber:
    """Confirm that a host answers the identity endpoint of the control API.

    Every probe opens a fresh connection and asks the device to close it
    afterwards.
    """

    def __init__(
        self,
        timeout: float,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport
        self.logger = get_logger("wled.discovery.queue")

    async def probe(
        self, host: str, port: int, method: DiscoveryMethod
    ) -> Optional[DiscoveredDevice]:
        url = f"http://{host}:{port}/json/info"
        extra = {"host": host, "port": port, "method": method.value}
        self.logger.debug("Probing candidate", extra=extra)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                limits=httpx.Limits(max_keepalive_connections=0),
                headers={"Connection": "close"},
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
                data = response.json()
        except httpx.ConnectError as exc:
            record_probe(method.value, "unreachable")
            self.logger.debug("Candidate refused connection", extra={**extra, "error": str(exc)})
            return None
        except httpx.TimeoutException:
            record_probe(method.value, "timeout")
            self.logger.warning(
                "Timed out probing candidate; device may be offline or unreachable", extra=extra
            )
            return None
        except httpx.HTTPError as exc:
            record_probe(method.value, "error")
            self.logger.debug("Candidate probe failed", extra={**extra, "error": str(exc)})
            return None
        except ValueError:
            record_probe(method.value, "invalid")
            self.logger.debug("Candidate returned a non-JSON identity body", extra=extra)
            return None

        if not is_device_identity(data):
            record_probe(method.value, "rejected")
            self.logger.debug("Candidate is not a controllable device", extra=extra)
            return None

        try:
            device = DiscoveredDevice.from_info_payload(host, port, method, data)
        except (TypeError, ValueError) as exc:
            record_probe(method.value, "invalid")
            self.logger.debug(
                "Candidate returned a malformed identity body", extra={**extra, "error": str(exc)}
            )
            return None
        record_probe(method.value, "confirmed")
        return device


class VerificationQueue:
    """Probe queued candidates one at a time with a fixed pause between them.

    A ``(host, port)`` pair is queued at most once while it is waiting. The
    drain task exits when the queue empties and is restarted by the next
    ``enqueue``.
    """

    def __init__(
        self,
        probe: ProbeFn,
        on_confirmed: Callable[[DiscoveredDevice], None],
        *,
        delay: float = 2.0,
    ) -> None:
        self._probe = probe
        self._on_confirmed = on_confirmed
        self.delay = delay
        self._items: Deque[CheckQueueItem] = deque()
        self._task: Optional[asyncio.Task[None]] = None
        self.logger = get_logger("wled.discovery.queue")

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def pending(self) -> list[CheckQueueItem]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, host: str, port: int, method: DiscoveryMethod) -> bool:
        """Queue a candidate; return ``False`` if the pair is already waiting."""

        item = CheckQueueItem(host=host, port=port, method=method)
        if any(queued.key == item.key for queued in self._items):
            self.logger.debug(
                "Candidate already queued",
                extra={"host": host, "port": port, "method": method.value},
            )
            return False

        self._items.append(item)
        set_verification_queue_depth(len(self._items))
        self.logger.debug(
            "Candidate queued",
            extra={"host": host, "port": port, "method": method.value, "depth": len(self._items)},
        )
        if not self.active:
            self._task = asyncio.create_task(self._drain(), name="wled-verification")
        return True

    async def join(self) -> None:
        """Wait until the current drain run has finished."""

        while self.active:
            assert self._task is not None
            await asyncio.shield(self._task)

    async def close(self) -> None:
        self._items.clear()
        set_verification_queue_depth(0)
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _drain(self) -> None:
        self.logger.debug("Processing verification queue", extra={"depth": len(self._items)})
        while self._items:
            item = self._items.popleft()
            set_verification_queue_depth(len(self._items))
            try:
                device = await self._probe(item.host, item.port, item.method)
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover
                self.logger.exception(
                    "Verification probe raised",
                    extra={"host": item.host, "port": item.port},
                )
                device = None

            if device is not None:
                self.logger.info(
                    "Confirmed device",
                    extra={
                        "host": item.host,
                        "port": item.port,
                        "method": item.method.value,
                        "device_id": device.id,
                    },
                )
                self._on_confirmed(device)
            else:
                self.logger.debug(
                    "Discarded candidate",
                    extra={"host": item.host, "port": item.port, "method": item.method.value},
                )
            await asyncio.sleep(self.delay)
        self.logger.debug("Verification queue drained")
