"""REST client for the device registry and realtime history API."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

import aiohttp

from ..core import DeviceIdentity, RegistryError, SendResult
from ..tasks import DEFAULT_STEP_TIMEOUT, TaskStep, parse_steps

LOGGER = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 1000


def identity_from_payload(payload: Mapping[str, Any]) -> DeviceIdentity:
    try:
        device_id = int(payload["id"])
        uuid = str(payload["uuid"])
    except (KeyError, TypeError, ValueError) as exc:
        raise RegistryError(f"Device record missing expected field: {exc}") from exc

    port = payload.get("websocket_port")
    return DeviceIdentity(
        device_id=device_id,
        uuid=uuid,
        name=payload.get("name"),
        command_port=int(port) if port else None,
    )


class RegistryClient:
    """Thin aiohttp wrapper around the backend's ``/api`` routes.

    Every call raises :class:`RegistryError` on transport failures and on
    non-2xx responses, so callers only have one error type to handle.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
        default_step_timeout: float = DEFAULT_STEP_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.default_step_timeout = default_step_timeout
        self._api_token = api_token
        self._timeout = timeout
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def list_devices(self) -> List[DeviceIdentity]:
        payload = await self._request("GET", "/api/devices")
        if not isinstance(payload, list):
            raise RegistryError("Device list response is not a list")
        return [identity_from_payload(item) for item in payload]

    async def get_device(self, device_ref: int | str) -> DeviceIdentity:
        payload = await self._request("GET", f"/api/devices/{device_ref}")
        if not isinstance(payload, Mapping):
            raise RegistryError(f"Unexpected device response for {device_ref}")
        return identity_from_payload(payload)

    async def get_device_history(
        self, device_uuid: str, limit: int = 100, offset: int = 0
    ) -> List[Dict[str, Any]]:
        params = {
            "limit": str(max(1, min(limit, MAX_HISTORY_LIMIT))),
            "offset": str(max(0, offset)),
        }
        payload = await self._request(
            "GET", f"/api/realtime/devices/{device_uuid}/history", params=params
        )
        if isinstance(payload, Mapping):
            records = payload.get("data", [])
        else:
            records = payload
        if not isinstance(records, list):
            raise RegistryError("History response has no data list")
        return records

    async def get_task_steps(self, task_uuid: str) -> List[TaskStep]:
        payload = await self._request("GET", f"/api/tasks/{task_uuid}")
        if not isinstance(payload, Mapping):
            raise RegistryError(f"Unexpected task response for {task_uuid}")

        parameters = payload.get("parameters") or {}
        records = parameters.get("steps") if isinstance(parameters, Mapping) else None
        if not isinstance(records, list):
            raise RegistryError(f"Task {task_uuid} defines no steps")
        return parse_steps(records, default_timeout=self.default_step_timeout)

    async def send_device_command(self, device_ref: int | str, command: str) -> SendResult:
        """Relay a command through the backend instead of a direct channel.

        The body is the bare JSON string; the backend answers with
        ``{"command_sent": bool}``.
        """

        try:
            payload = await self._request(
                "POST",
                f"/api/realtime/devices/{device_ref}/command",
                json=command,
            )
        except RegistryError as exc:
            LOGGER.warning("Command relay for device %s failed: %s", device_ref, exc)
            return SendResult.SEND_FAILED

        if isinstance(payload, Mapping) and payload.get("command_sent") is True:
            return SendResult.SENT
        LOGGER.warning("Command relay for device %s returned %r", device_ref, payload)
        return SendResult.NOT_READY

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
            self._owns_session = True
        return self._session

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        session = await self._ensure_session()
        url = self.base_url + path
        try:
            async with session.request(
                method, url, headers=self._headers(), **kwargs
            ) as response:
                if response.status >= 400:
                    detail = (await response.text()).strip()
                    raise RegistryError(
                        f"Unexpected response {response.status} from {path}: {detail}"
                    )
                if response.content_type != "application/json":
                    return await response.text()
                return await response.json()
        except aiohttp.ClientError as exc:
            raise RegistryError(f"Request to {path} failed: {exc}") from exc
