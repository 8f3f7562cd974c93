"""
Base generation provider protocol.

Defines the three-call contract (submit / status / result) that every
asynchronous generation service must implement, so the poll loop and the
stage sequencer are written once against this interface.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from swapflow.models.schemas import ProviderStatus, SubmitResponse
from swapflow.services.failures import NetworkError, from_http_status

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """
    Configuration for provider client instances.

    Attributes:
        base_url: API endpoint URL
        api_key: API key for the service
        timeout: Per-request timeout in seconds
    """

    base_url: str
    api_key: str = ""
    timeout: float = 60.0


@runtime_checkable
class GenerationProvider(Protocol):
    """
    Protocol for external asynchronous generation services.

    Example:
        async def run(provider: GenerationProvider) -> dict:
            handle = await provider.submit("upscale", {"image_url": url})
            status = await provider.status(handle.external_job_id, "upscale")
            if status.status == ExternalStatus.COMPLETED:
                return await provider.result(handle.external_job_id, "upscale")
    """

    name: str

    async def submit(self, kind: str, payload: dict[str, Any]) -> SubmitResponse:
        """
        Submit work and return the opaque provider job handle.

        Raises:
            ProviderRejected: Synchronous validation/auth/payload error
            NetworkError: Transient transport failure
        """
        ...

    async def status(self, external_job_id: str, kind: str) -> ProviderStatus:
        """Get normalized status of a submitted job."""
        ...

    async def result(self, external_job_id: str, kind: str) -> dict[str, Any]:
        """
        Fetch the result of a completed job.

        Raises:
            SafetyBlocked: Output withheld by the provider's safety filter
        """
        ...

    async def close(self) -> None:
        """Close the client and release resources."""
        ...


class BaseProviderImpl(ABC):
    """
    Abstract base class for httpx-backed provider clients.

    Owns the HTTP client and translates transport and HTTP errors into
    the failure taxonomy right here at the boundary.

    Subclasses must implement:
        - submit()
        - status()
        - result()
        - _auth_headers()
    """

    name: str = "base"

    def __init__(self, config: ProviderConfig, http_client: httpx.AsyncClient | None = None):
        """
        Initialize provider client.

        Args:
            config: Provider configuration
            http_client: Optional pre-built client (tests inject MockTransport)
        """
        self.config = config
        self.http_client = http_client or httpx.AsyncClient(
            base_url=config.base_url,
            timeout=config.timeout,
        )

    @abstractmethod
    def _auth_headers(self) -> dict[str, str]:
        """Headers carrying the provider credentials."""

    @abstractmethod
    async def submit(self, kind: str, payload: dict[str, Any]) -> SubmitResponse:
        """Submit work to the provider."""

    @abstractmethod
    async def status(self, external_job_id: str, kind: str) -> ProviderStatus:
        """Get normalized job status."""

    @abstractmethod
    async def result(self, external_job_id: str, kind: str) -> dict[str, Any]:
        """Fetch job result."""

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Perform a JSON request and translate failures.

        Args:
            method: HTTP method
            path: Path relative to base_url (or absolute URL)
            json: Optional JSON body
            params: Optional query parameters

        Returns:
            Decoded JSON body

        Raises:
            NetworkError: Transport failure, timeout, 429 or 5xx
            ProviderRejected: Any other non-2xx response
        """
        try:
            response = await self.http_client.request(
                method,
                path,
                json=json,
                params=params,
                headers=self._auth_headers(),
            )
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Request timeout: {method} {path}",
                provider=self.name,
                original_error=e,
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(
                f"Transport error: {type(e).__name__}: {e}",
                provider=self.name,
                original_error=e,
            ) from e

        if response.is_error:
            logger.debug(
                f"{self.name} {method} {path} -> {response.status_code}: {response.text[:200]}"
            )
            raise from_http_status(response.status_code, response.text, self.name)

        return response.json()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.http_client.aclose()

    async def __aenter__(self) -> "BaseProviderImpl":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
