"""
Kling API client.

Kling tasks report task_status submitted | processing | succeed | failed
and an optional task_progress percentage.
"""

import logging
from typing import Any

import httpx

from swapflow.config import Settings
from swapflow.models.schemas import ExternalStatus, ProviderStatus, SubmitResponse
from swapflow.services.failures import ProviderJobFailed, ProviderRejected
from swapflow.services.providers.base import BaseProviderImpl, ProviderConfig

logger = logging.getLogger(__name__)

# Map operation kinds to (submit path, status path prefix)
TASK_ENDPOINTS = {
    "video_generation": ("/v1/videos/image2video", "/v1/videos/image2video"),
    "text_to_video": ("/v1/videos/text2video", "/v1/videos/text2video"),
    "kling_motion": ("/v1/videos/image2video", "/v1/videos/image2video"),
    "video_extend": ("/v1/videos/video2video/extend", "/v1/videos/video2video/extend"),
    "image_generation": ("/v1/images/generations", "/v1/images/generations"),
}

STATUS_MAP = {
    "submitted": ExternalStatus.IN_QUEUE,
    "processing": ExternalStatus.IN_PROGRESS,
    "succeed": ExternalStatus.COMPLETED,
    "completed": ExternalStatus.COMPLETED,
    "failed": ExternalStatus.FAILED,
}


class KlingClient(BaseProviderImpl):
    """
    Async client for the Kling task API.

    Example:
        async with KlingClient.from_settings(settings) as kling:
            handle = await kling.submit("video_generation", {"image": url, "prompt": "..."})
    """

    name = "kling"

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> "KlingClient":
        """
        Create KlingClient from application settings.

        Args:
            settings: Application settings
            http_client: Optional pre-built HTTP client

        Returns:
            Configured KlingClient instance
        """
        if not settings.kling_api_key:
            logger.warning("KLING_API_KEY not configured, Kling requests will be rejected")

        config = ProviderConfig(
            base_url=settings.kling_api_url,
            api_key=settings.kling_api_key,
            timeout=settings.request_timeout,
        )
        return cls(config, http_client=http_client)

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    def _paths(self, kind: str) -> tuple[str, str]:
        paths = TASK_ENDPOINTS.get(kind)
        if paths is None:
            raise ProviderRejected(f"Unsupported operation kind: {kind}", provider=self.name)
        return paths

    async def submit(self, kind: str, payload: dict[str, Any]) -> SubmitResponse:
        """
        Create a Kling task.

        Args:
            kind: Operation kind (see TASK_ENDPOINTS)
            payload: Task parameters

        Returns:
            SubmitResponse with Kling task_id
        """
        submit_path, _ = self._paths(kind)
        logger.info(f"Kling submit: {submit_path}")

        data = await self._request("POST", submit_path, json=payload)
        task = data.get("data") or {}
        task_id = task.get("task_id")
        if not task_id:
            raise ProviderRejected(
                f"Kling did not return a task_id (code={data.get('code')})",
                response_body=str(data)[:500],
                provider=self.name,
            )

        logger.info(f"Kling accepted {kind}: task_id={task_id}")
        return SubmitResponse(external_job_id=task_id, provider=self.name)

    async def status(self, external_job_id: str, kind: str) -> ProviderStatus:
        """Get normalized task status."""
        _, status_prefix = self._paths(kind)
        data = await self._request("GET", f"{status_prefix}/{external_job_id}")
        task = data.get("data") or {}

        raw_status = str(task.get("task_status", "submitted")).lower()
        status = STATUS_MAP.get(raw_status, ExternalStatus.IN_PROGRESS)
        message = task.get("task_status_msg")

        return ProviderStatus(
            status=status,
            logs=[f"Kling: {raw_status} {message}".strip()] if message else [f"Kling: {raw_status}"],
            progress=task.get("task_progress"),
            error=message if status == ExternalStatus.FAILED else None,
        )

    async def result(self, external_job_id: str, kind: str) -> dict[str, Any]:
        """
        Fetch the task result.

        Kling embeds results in the status document, so this re-reads it.

        Returns:
            {"videos": [...]} or {"images": [...]}
        """
        _, status_prefix = self._paths(kind)
        data = await self._request("GET", f"{status_prefix}/{external_job_id}")
        task_result = (data.get("data") or {}).get("task_result") or {}

        videos = task_result.get("videos") or []
        images = task_result.get("images") or []
        if not videos and not images:
            raise ProviderJobFailed(
                f"Kling task {external_job_id} completed without output",
                provider=self.name,
            )

        output: dict[str, Any] = {}
        if videos:
            output["videos"] = videos
            output["video"] = {"url": videos[0]["url"]}
        if images:
            output["images"] = images
        return output
