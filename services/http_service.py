"""
Shared HTTP plumbing for external API clients
Pooled httpx.AsyncClient per service class and request retry with exponential backoff
"""

import asyncio
import logging
from typing import Dict, Optional, Any

import httpx

from domain_models import ExternalServiceError

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class HttpApiService:
    """Base class for API clients; subclasses set service_name, base_url and headers"""

    service_name = 'external'
    max_retries = 3
    base_delay = 2.0
    _client: Optional[httpx.AsyncClient] = None

    def __init__(self):
        self.base_url = ''
        self.headers: Dict[str, str] = {'Accept': 'application/json'}

    @classmethod
    async def get_client(cls) -> httpx.AsyncClient:
        """Get or create persistent HTTP client with connection pooling"""
        if cls._client is None or cls._client.is_closed:
            limits = httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
                keepalive_expiry=30
            )
            timeout = httpx.Timeout(connect=5.0, read=30.0, write=10.0, pool=5.0)
            cls._client = httpx.AsyncClient(limits=limits, timeout=timeout)
        return cls._client

    @classmethod
    async def close_client(cls):
        """Close HTTP client for clean shutdown"""
        if cls._client and not cls._client.is_closed:
            await cls._client.aclose()
            cls._client = None

    @property
    def is_configured(self) -> bool:
        return True

    def _require_configuration(self):
        if not self.is_configured:
            raise ExternalServiceError(self.service_name, "credentials not configured", retryable=False)

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send a request, retrying timeouts, connection failures and 429/5xx responses

        Returns the final response for any status the caller should interpret (2xx and 4xx).

        Raises:
            ExternalServiceError: retry budget exhausted
        """
        url = path if path.startswith('http') else f"{self.base_url}{path}"
        headers = {**self.headers, **kwargs.pop('headers', {})}
        last_error = ''
        last_status: Optional[int] = None

        for attempt in range(self.max_retries):
            try:
                client = await self.get_client()
                response = await client.request(method, url, headers=headers, **kwargs)
                if response.status_code not in RETRYABLE_STATUS_CODES:
                    return response
                last_status = response.status_code
                last_error = f"HTTP {response.status_code}"
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = f"{type(e).__name__}: {e}"

            attempt_num = attempt + 1
            if attempt_num >= self.max_retries:
                break
            delay = self.base_delay * (2 ** attempt)
            logger.warning(f"⚠️ {self.service_name} {method} {path} failed ({last_error}) "
                           f"attempt {attempt_num}/{self.max_retries}, retrying in {delay}s...")
            await asyncio.sleep(delay)

        logger.error(f"❌ {self.service_name} {method} {path} failed after {self.max_retries} attempts: {last_error}")
        raise ExternalServiceError(self.service_name, f"request failed: {last_error}", retryable=True,
                                   status_code=last_status)

    @staticmethod
    def json_or_empty(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {'result': data}
