"""
fal.ai queue API client.

Submits work to https://queue.fal.run/{model}, polls
{model}/requests/{id}/status and fetches {model}/requests/{id}.
"""

import logging
from typing import Any

import httpx

from swapflow.config import Settings
from swapflow.models.schemas import ExternalStatus, ProviderStatus, SubmitResponse
from swapflow.services.failures import (
    ProviderJobFailed,
    ProviderRejected,
    SafetyBlocked,
)
from swapflow.services.providers.base import BaseProviderImpl, ProviderConfig

logger = logging.getLogger(__name__)

# Map operation kinds to fal.ai model endpoints
MODEL_ENDPOINTS = {
    "lora_training": "fal-ai/flux-lora-fast-training",
    "wan_training": "fal-ai/wan-22-image-trainer",
    "image_generation": "fal-ai/flux-lora",
    "identity_regenerate": "fal-ai/flux-pulid",
    "kontext_edit": "fal-ai/flux-pro/kontext",
    "face_swap_image": "fal-ai/face-swap",
    "frame_extract": "fal-ai/ffmpeg-api/extract-frame",
    "pose_detection": "fal-ai/dwpose",
    "video_generation": "fal-ai/wan/v2.1/image-to-video",
    "wan_replace": "fal-ai/wan/v2.2-14b/animate/replace",
    "kling_motion": "fal-ai/kling-video/v2.6/pro/motion-control",
    "upscale_esrgan": "fal-ai/real-esrgan",
    "upscale_clarity": "fal-ai/clarity-upscaler",
    "upscale_creative": "fal-ai/creative-upscaler",
    "upscale_video": "fal-ai/video-upscaler",
}

# error_type values fal.ai uses for content-safety rejections
SAFETY_ERROR_TYPES = frozenset({"content_policy_violation", "image_safety", "nsfw_content"})

STATUS_MAP = {
    "IN_QUEUE": ExternalStatus.IN_QUEUE,
    "IN_PROGRESS": ExternalStatus.IN_PROGRESS,
    "COMPLETED": ExternalStatus.COMPLETED,
    "FAILED": ExternalStatus.FAILED,
    "ERROR": ExternalStatus.FAILED,
}


class FalClient(BaseProviderImpl):
    """
    Async client for the fal.ai queue API.

    Example:
        async with FalClient.from_settings(settings) as fal:
            handle = await fal.submit("upscale_clarity", {"image_url": url})
            status = await fal.status(handle.external_job_id, "upscale_clarity")
    """

    name = "fal"

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> "FalClient":
        """
        Create FalClient from application settings.

        Args:
            settings: Application settings
            http_client: Optional pre-built HTTP client

        Returns:
            Configured FalClient instance
        """
        if not settings.fal_api_key:
            logger.warning("FAL_API_KEY not configured, fal.ai requests will be rejected")

        config = ProviderConfig(
            base_url=settings.fal_queue_url,
            api_key=settings.fal_api_key,
            timeout=settings.request_timeout,
        )
        return cls(config, http_client=http_client)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Key {self.config.api_key}"}

    def _endpoint(self, kind: str) -> str:
        endpoint = MODEL_ENDPOINTS.get(kind)
        if endpoint is None:
            raise ProviderRejected(
                f"Unsupported operation kind: {kind}",
                provider=self.name,
            )
        return endpoint

    async def submit(self, kind: str, payload: dict[str, Any]) -> SubmitResponse:
        """
        Submit a request to the fal.ai queue.

        Args:
            kind: Operation kind (see MODEL_ENDPOINTS)
            payload: Model input

        Returns:
            SubmitResponse with fal request_id

        Raises:
            ProviderRejected: Unknown kind, 4xx, or missing request_id
            NetworkError: Transport failure or transient status
        """
        endpoint = self._endpoint(kind)
        logger.info(f"fal.ai submit: {endpoint}")

        data = await self._request("POST", endpoint, json=payload)

        request_id = data.get("request_id")
        if not request_id:
            raise ProviderRejected(
                "fal.ai did not return a request_id",
                response_body=str(data)[:500],
                provider=self.name,
            )

        logger.info(f"fal.ai accepted {kind}: request_id={request_id}")
        return SubmitResponse(external_job_id=request_id, provider=self.name)

    async def status(self, external_job_id: str, kind: str) -> ProviderStatus:
        """
        Get normalized status of a queued request (with logs).

        Args:
            external_job_id: fal request_id
            kind: Operation kind used at submission

        Returns:
            ProviderStatus
        """
        endpoint = self._endpoint(kind)
        data = await self._request(
            "GET",
            f"{endpoint}/requests/{external_job_id}/status",
            params={"logs": 1},
        )
        return self._parse_status(data)

    @staticmethod
    def _parse_status(data: dict[str, Any]) -> ProviderStatus:
        """
        Normalize a fal.ai status document.

        A COMPLETED status that carries an error is treated as FAILED.
        """
        raw_status = str(data.get("status", "IN_QUEUE")).upper()
        status = STATUS_MAP.get(raw_status, ExternalStatus.IN_PROGRESS)

        error = data.get("error")
        error_type = data.get("error_type")
        if error and status == ExternalStatus.COMPLETED:
            status = ExternalStatus.FAILED

        logs = [
            entry.get("message", "") if isinstance(entry, dict) else str(entry)
            for entry in data.get("logs") or []
        ]

        return ProviderStatus(
            status=status,
            logs=logs,
            queue_position=data.get("queue_position"),
            safety_blocked=error_type in SAFETY_ERROR_TYPES,
            error=str(error) if error else None,
        )

    async def result(self, external_job_id: str, kind: str) -> dict[str, Any]:
        """
        Fetch the result of a completed request.

        Args:
            external_job_id: fal request_id
            kind: Operation kind used at submission

        Returns:
            Model output document

        Raises:
            SafetyBlocked: Output flagged by the NSFW checker
            ProviderJobFailed: Result document reports an error
        """
        endpoint = self._endpoint(kind)
        data = await self._request("GET", f"{endpoint}/requests/{external_job_id}")

        if any(data.get("has_nsfw_concepts") or []):
            raise SafetyBlocked(
                f"fal.ai {kind} output flagged by safety checker",
                reason="has_nsfw_concepts",
                provider=self.name,
            )

        detail = data.get("detail")
        if isinstance(detail, list) and detail:
            error_type = detail[0].get("type") if isinstance(detail[0], dict) else None
            if error_type in SAFETY_ERROR_TYPES:
                raise SafetyBlocked(
                    f"fal.ai {kind} rejected by content policy",
                    reason=error_type,
                    provider=self.name,
                )
            raise ProviderJobFailed(
                f"fal.ai {kind} returned an error: {str(detail)[:200]}",
                provider=self.name,
            )

        return data
