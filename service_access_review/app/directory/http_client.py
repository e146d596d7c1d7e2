"""
HTTP client for an external identity service.
"""

from typing import Any, Dict, Optional

import httpx

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError
from shared.errors import DependencyError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_on_exception
from .identity import IdentityDirectory
from .models import Application, Identity


class HttpIdentityDirectory(IdentityDirectory):
    """
    Identity directory served over HTTP.

    ``404`` means unknown and maps to ``None``. Transport failures and
    5xx responses are retried, counted by a circuit breaker, and finally
    surfaced as ``DependencyError`` so callers can degrade.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = get_logger("access_review.directory.http")
        self._client = client
        self._owns_client = client is None
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=3,
            recovery_timeout=30.0,
            name="identity_directory",
        )

    async def start(self):
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)

    async def stop(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def get_identity(self, user_id: str) -> Optional[Identity]:
        data = await self._fetch(f"/identities/{user_id}")
        return Identity.model_validate(data) if data else None

    async def find_identity_by_email(self, email: str) -> Optional[Identity]:
        data = await self._fetch("/identities", {"email": email.strip().lower()})
        data = _first(data)
        return Identity.model_validate(data) if data else None

    async def find_identity_by_name(self, name: str) -> Optional[Identity]:
        data = _first(await self._fetch("/identities", {"name": name.strip()}))
        return Identity.model_validate(data) if data else None

    async def get_application(self, app_id: str) -> Optional[Application]:
        data = await self._fetch(f"/applications/{app_id}")
        return Application.model_validate(data) if data else None

    async def health_check(self) -> bool:
        return not self.circuit_breaker.is_open()

    async def _fetch(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        try:
            return await self.circuit_breaker.call(self._get_json, path, params)
        except CircuitBreakerOpenError:
            raise
        except (RetryError, httpx.HTTPError) as e:
            cause = e.last_exception if isinstance(e, RetryError) else e
            self.logger.error("Identity service request failed", path=path, error=str(cause))
            raise DependencyError("identity_directory", str(cause), {"path": path})

    @retry_on_exception((httpx.TransportError, httpx.HTTPStatusError), config=RetryConfig(max_attempts=3, base_delay=0.5))
    async def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if self._client is None:
            await self.start()
        response = await self._client.get(path, params=params)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()


def _first(data: Any) -> Optional[Dict[str, Any]]:
    """Search endpoints answer with a list or an ``{"items": [...]}`` envelope."""
    if isinstance(data, dict):
        data = data.get("items", [])
    if isinstance(data, list) and data:
        return data[0]
    return None
