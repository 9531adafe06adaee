"""HTTP/JSON client for the device control API."""

from __future__ import annotations

from typing import Any, Mapping, Optional

import httpx


class DeviceRequestError(RuntimeError):
    """Raised when a device HTTP request fails or returns an unusable body."""


class DeviceCommandError(DeviceRequestError):
    """Raised when a state mutation could not be delivered over any transport."""


class DeviceClient:
    """Asynchronous client for one device's ``/json`` endpoints."""

    def __init__(
        self,
        host: str,
        port: int = 80,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}/json"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def get_state(self) -> Mapping[str, Any]:
        return self._expect_mapping(await self._get("/state"), "state")

    async def get_info(self) -> Mapping[str, Any]:
        return self._expect_mapping(await self._get("/info"), "info")

    async def get_presets(self) -> Mapping[str, Any]:
        data = await self._get("/presets")
        return self._expect_mapping(data or {}, "presets")

    async def get_effects(self) -> list[str]:
        data = await self._get("/effects")
        return [str(name) for name in data] if isinstance(data, list) else []

    async def post_state(self, payload: Mapping[str, Any]) -> None:
        try:
            response = await self._client.post("/state", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DeviceRequestError(
                f"POST {self.base_url}/state failed: {exc}"
            ) from exc

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str) -> Any:
        try:
            response = await self._client.get(path)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DeviceRequestError(f"GET {self.base_url}{path} failed: {exc}") from exc
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise DeviceRequestError(
                f"GET {self.base_url}{path} returned invalid JSON"
            ) from exc

    def _expect_mapping(self, data: Any, what: str) -> Mapping[str, Any]:
        if not isinstance(data, Mapping):
            raise DeviceRequestError(f"Device {what} response is not a JSON object")
        return data
