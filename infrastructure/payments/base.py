"""Shared HTTP plumbing for the payment provider REST APIs"""
import logging
from typing import Any, Dict, Optional

import httpx

from domain.exceptions import PaymentProviderError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0


class HttpGateway:
    provider_name = "provider"

    def __init__(self, api_base: str, timeout: float = DEFAULT_TIMEOUT, client: Optional[httpx.AsyncClient] = None):
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send one request; transport failures become PaymentProviderError"""
        url = f"{self.api_base}{path}"
        try:
            if self._client is not None:
                return await self._client.request(method, url, timeout=self.timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.error("%s timed out: %s %s", self.provider_name, method, path)
            raise PaymentProviderError(self.provider_name, f"Timeout calling {path}") from e
        except httpx.HTTPError as e:
            logger.error("%s request failed: %s %s: %s", self.provider_name, method, path, e)
            raise PaymentProviderError(self.provider_name, f"Cannot reach {path}") from e

    def _json(self, resp: httpx.Response) -> Dict[str, Any]:
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as e:
            raise PaymentProviderError(
                self.provider_name, f"Unreadable response ({resp.status_code})", resp.status_code
            ) from e
        return body if isinstance(body, dict) else {}

    def _raise_for_status(self, resp: httpx.Response, message: str) -> None:
        if resp.is_success:
            return
        detail = (resp.text or "")[:500]
        logger.error("%s %s: HTTP %s %s", self.provider_name, message, resp.status_code, detail)
        raise PaymentProviderError(self.provider_name, f"{message} (HTTP {resp.status_code})", resp.status_code)
