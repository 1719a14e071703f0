"""
Async client for the access-control vendor's cloud API (Hik-Partner style OpenAPI).

Every call opens a short-lived httpx.AsyncClient with a bounded timeout; the
vendor endpoint is untrusted network-wise, so a timeout is reported exactly like
any other transport failure (DeviceApiError without a status code).

Responses come in two shapes and both are accepted:
  {"accessToken": ...}                         # flat
  {"code": "0", "msg": "ok", "data": {...}}    # vendor envelope
"""

from typing import Any, Optional
import httpx
from app.config import settings
from app.exceptions import DeviceApiError, TokenRejectedError
from app.utils.logger import get_logger

logger = get_logger(__name__)

SUCCESS_CODES = {"0", "200", "success"}
TOKEN_ERROR_CODES = {"TOKEN_EXPIRED", "TOKEN_INVALID", "OPEN000007"}


def _unwrap(body: Any) -> dict:
    """Return the payload of a vendor envelope, raising on a non-success code."""
    if not isinstance(body, dict):
        raise DeviceApiError("Vendor returned a non-object JSON body")

    code = body.get("code", body.get("errorCode"))
    if code is not None and str(code) not in SUCCESS_CODES:
        message = body.get("msg") or body.get("message") or "Vendor API error"
        if str(code) in TOKEN_ERROR_CODES:
            raise TokenRejectedError(message, code=str(code))
        raise DeviceApiError(message, code=str(code))
    if body.get("success") is False:
        raise DeviceApiError(body.get("message") or "Vendor API error", code=str(code) if code else None)

    data = body.get("data")
    return data if isinstance(data, dict) else body


class HikCloudClient:
    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout or settings.VENDOR_TIMEOUT_SECONDS
        self.transport = transport    # tests inject httpx.MockTransport

    async def _post(self, base_url: str, path: str, payload: dict[str, Any],
                    token: Optional[str] = None) -> dict[str, Any]:
        url = base_url.rstrip("/") + "/" + path.lstrip("/")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise DeviceApiError(f"Timed out calling {path}") from e
        except httpx.HTTPError as e:
            raise DeviceApiError(f"Network error calling {path}: {e.__class__.__name__}") from e

        if response.status_code == 401:
            raise TokenRejectedError("Token rejected by vendor", status_code=401, code="401")
        if response.status_code >= 400:
            raise DeviceApiError(f"{path} returned HTTP {response.status_code}",
                                 status_code=response.status_code, code=str(response.status_code))

        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            # Misconfigured base URLs typically answer with an HTML login page
            raise DeviceApiError(f"{path} returned a non-JSON body", status_code=response.status_code) from e
        return _unwrap(body)

    async def exchange_token(self, base_url: str, app_key: str, app_secret: str) -> dict[str, Any]:
        return await self._post(base_url, settings.TOKEN_PATH, {"appKey": app_key, "secretKey": app_secret})

    async def add_person(self, base_url: str, token: str, person: dict[str, Any]) -> dict[str, Any]:
        return await self._post(base_url, settings.PERSON_ADD_PATH, person, token=token)

    async def update_person(self, base_url: str, token: str, person: dict[str, Any]) -> dict[str, Any]:
        return await self._post(base_url, settings.PERSON_UPDATE_PATH, person, token=token)

    async def configure_privileges(self, base_url: str, token: str, person_id: str,
                                   door_codes: list[str], start_time: Optional[str] = None,
                                   end_time: Optional[str] = None) -> dict[str, Any]:
        """Replace the person's door privileges with exactly `door_codes` (empty list = revoke all)."""
        payload = {
            "personId": person_id,
            "doorIndexCodes": list(door_codes),
            "startTime": start_time,
            "endTime": end_time,
        }
        logger.debug(f"Pushing {len(door_codes)} door privileges for person {person_id}")
        return await self._post(base_url, settings.PRIVILEGE_CONFIG_PATH, payload, token=token)

    async def fetch_events(self, base_url: str, token: str, start_time: str, end_time: str,
                           page_no: int = 1, page_size: Optional[int] = None) -> dict[str, Any]:
        """One page of access events recorded between start_time and end_time (ISO 8601)."""
        payload = {
            "startTime": start_time,
            "endTime": end_time,
            "pageNo": page_no,
            "pageSize": page_size or settings.EVENT_POLL_PAGE_SIZE,
        }
        return await self._post(base_url, settings.EVENT_QUERY_PATH, payload, token=token)
