"""Client for the candidate availability source (Core API).

Fetches the pool of counterparties currently available for an instant call.
Requests carry the ``X-Internal-API-Key`` header when an internal key is
configured.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from call_signaling.config import Settings, get_settings
from call_signaling.models.candidate import Candidate
from call_signaling.utils.errors import ExternalServiceError
from call_signaling.utils.logging import get_logger

logger = get_logger("availability_client")


class AvailabilitySource(ABC):
    """Read-only source of currently available candidates."""

    @abstractmethod
    async def list_available(self, preference: Optional[str] = None) -> List[Candidate]:
        """Return candidates that can be rung right now."""


class AvailabilityClient(AvailabilitySource):
    """
    HTTP client for the Core API instant-call availability endpoint.

    Example:
        ```python
        client = AvailabilityClient(base_url="http://api-core:8000", api_key="key")
        candidates = await client.list_available(preference="en")
        ```
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        path: Optional[str] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the availability client.

        Args:
            base_url: Core API base URL (defaults to CORE_API_URL)
            api_key: Internal API key (defaults to CORE_API_API_KEY)
            timeout: Request timeout in seconds (defaults to CORE_API_TIMEOUT)
            path: Availability endpoint path (defaults to AVAILABILITY_PATH)
            settings: Optional settings override
            transport: Optional httpx transport, e.g. ``httpx.MockTransport`` in tests
        """
        settings = settings or get_settings()
        availability = settings.availability

        self.base_url = (base_url or availability.core_api_url).rstrip("/")
        self.timeout = timeout if timeout is not None else availability.core_api_timeout
        self.path = path or availability.available_path
        self._transport = transport
        self._headers: Dict[str, str] = {"Accept": "application/json"}

        api_key = api_key or availability.core_api_api_key
        if api_key:
            self._headers["X-Internal-API-Key"] = api_key
            logger.debug("Internal API key configured for availability requests")

    def _build_url(self) -> str:
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"{self.base_url}{path}"

    @staticmethod
    def _extract_items(payload: Any) -> List[Dict[str, Any]]:
        # Accept a bare list or the usual {"data"/"items"/"therapists": [...]} envelope
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            for key in ("data", "items", "therapists", "candidates"):
                value = payload.get(key)
                if isinstance(value, list):
                    return value
        raise ValueError("Unexpected availability response shape")

    async def list_available(self, preference: Optional[str] = None) -> List[Candidate]:
        """
        Fetch available candidates.

        Args:
            preference: Optional language preference, passed as ``language``

        Returns:
            Candidates in the order the source returned them

        Raises:
            ExternalServiceError: If the request fails or the response is malformed
        """
        url = self._build_url()
        params = {"language": preference} if preference else None

        logger.debug(f"GET {url}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=params, headers=self._headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Availability source returned {e.response.status_code}",
                extra={"url": url, "status_code": e.response.status_code},
            )
            raise ExternalServiceError(
                service="core-api",
                message=f"Availability request failed with status {e.response.status_code}",
                details={"url": url, "status_code": e.response.status_code},
            ) from e
        except (httpx.RequestError, ValueError) as e:
            logger.error(
                f"Availability request failed: {e}",
                extra={"url": url, "error": str(e)},
            )
            raise ExternalServiceError(
                service="core-api",
                message=f"Availability request failed: {str(e)}",
                details={"url": url},
            ) from e

        try:
            candidates = [Candidate.model_validate(item) for item in self._extract_items(payload)]
        except (ValueError, PydanticValidationError) as e:
            raise ExternalServiceError(
                service="core-api",
                message=f"Malformed availability response: {str(e)}",
                details={"url": url},
            ) from e

        logger.info(
            f"Fetched {len(candidates)} available candidates",
            extra={"count": len(candidates), "preference": preference},
        )
        return candidates
