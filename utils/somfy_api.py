"""
udi-Tahoma-pg3 NodeServer/Plugin for EISY/Polisy

(C) 2025 Stephen Jenkins

Minimal client for the TaHoma local API (developer mode).

Only what the shutter nodes need: issue a command, ask whether an execution
is still pending, and a blocking reachability check for start-up.  The bearer
token is generated outside the plugin and supplied in the configuration.
"""

# std libraries
import asyncio
from typing import Any, Dict, Optional

# external libraries
from udi_interface import LOGGER
import aiohttp
import requests

# local imports
from utils.instructions import CommandDescriptor

PORT = 8443
URL_BASE = "https://{g}:{p}/enduser-mobile-web/1/enduserAPI"
API_VERSION = "/apiVersion"
EXEC_APPLY = "/exec/apply"
EXEC_CURRENT = "/exec/current/{id}"

DEFAULT_TIMEOUT = 10.0
EXEC_LABEL = "udi-Tahoma-pg3"


class SomfyApiError(Exception):
    """Raised on any gateway transport or HTTP error."""


class SomfyApi:
    """Shared handle on one TaHoma gateway; every call is independent."""

    def __init__(
        self,
        gateway: str,
        token: str,
        *,
        port: int = PORT,
        verify_ssl: bool = False,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.gateway = gateway.strip().rstrip("/")
        self.token = token
        self.port = port
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._session = session

    @property
    def base_url(self) -> str:
        return URL_BASE.format(g=self.gateway, p=self.port)

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

    def _get_session(self) -> aiohttp.ClientSession:
        # created lazily so it binds to the loop running the calls
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def _request(
        self, method: str, path: str, body: Optional[Dict[str, Any]] = None
    ) -> Any:
        url = f"{self.base_url}{path}"
        session = self._get_session()
        ssl = None if self.verify_ssl else False
        try:
            async with session.request(
                method, url, json=body, headers=self.headers, ssl=ssl
            ) as resp:
                if resp.status == 404 and method == "GET":
                    return None
                if resp.status != 200:
                    text = await resp.text()
                    raise SomfyApiError(f"{method} {path} failed: HTTP {resp.status} {text}")
                # empty body decodes to None
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as ex:
            raise SomfyApiError(f"{method} {path} failed: {ex}") from ex

    async def execute(self, device_url: str, command: CommandDescriptor) -> Dict[str, Any]:
        """Apply one command to one device, returns the gateway reply holding 'execId'."""
        body = {
            "label": EXEC_LABEL,
            "actions": [
                {"deviceURL": device_url, "commands": [command.as_dict()]},
            ],
        }
        LOGGER.info(f"execute {device_url}: {body['actions'][0]['commands']}")
        data = await self._request("POST", EXEC_APPLY, body)
        if not isinstance(data, dict) or "execId" not in data:
            raise SomfyApiError(f"POST {EXEC_APPLY} returned no execId: {data}")
        LOGGER.debug(f"execId = {data['execId']}")
        return data

    async def get_status_for_execution_id(self, exec_id: str) -> Optional[Dict[str, Any]]:
        """
        Current state of an execution, None once the gateway no longer lists it
        (finished or failed upstream).
        """
        data = await self._request("GET", EXEC_CURRENT.format(id=exec_id))
        if not data:
            return None
        return data

    def check_gateway(self) -> bool:
        """Blocking reachability and token check, used from the controller thread."""
        url = f"{self.base_url}{API_VERSION}"
        try:
            LOGGER.debug(f"get {url}")
            res = requests.get(
                url, headers=self.headers, verify=self.verify_ssl, timeout=self.timeout
            )
            if not res.ok:
                LOGGER.error(f"TaHoma communications error code: {res.status_code}")
                return False
            LOGGER.info(f"TaHoma communications good! {res.json()}")
            return True
        except (requests.exceptions.RequestException, ValueError) as ex:
            LOGGER.error(f"TaHoma check error: {ex}")
            return False

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
