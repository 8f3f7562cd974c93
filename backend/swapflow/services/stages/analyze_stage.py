"""
Analyze stage: pose/face detection on extracted frames.

Frames are analyzed concurrently, at most batch_size at a time, and fan
back in before the stage completes.
"""

import asyncio
import logging
from typing import Any

from swapflow.services.failures import JobCancelled, OrchestrationError
from swapflow.services.orchestration.adapter import ProviderAdapter
from swapflow.services.orchestration.config_resolver import ConfigResolver
from swapflow.services.orchestration.progress import StageProgress
from swapflow.services.providers import ProviderPool
from swapflow.services.stages.base import ProviderStage, StageContext, StageError, media_url

logger = logging.getLogger(__name__)


class AnalyzeStage(ProviderStage):
    """Detect pose/face in every extracted frame.

    Input (from context):
        - extract: {"frames": [...]}

    Output:
        {"poses": [{"frame_url", "pose_url"}], "failed_frames": [...],
         "best_frame": url}
    """

    name = "analyze"
    depends_on = ["extract"]
    weight = 0.15
    provider_kind = "pose_detection"

    def __init__(
        self,
        adapter: ProviderAdapter,
        providers: ProviderPool,
        resolver: ConfigResolver,
        batch_size: int = 5,
    ):
        super().__init__(adapter, providers, resolver)
        self.batch_size = batch_size

    def build_payload(self, context: StageContext, frame_url: str = "") -> dict[str, Any]:
        return {"image_url": frame_url}

    async def execute(self, context: StageContext, progress: StageProgress) -> dict[str, Any]:
        self.validate_context(context)
        frames: list[str] = context.get_result("extract")["frames"]
        semaphore = asyncio.Semaphore(self.batch_size)
        done = 0

        async def analyze(frame_url: str) -> dict[str, Any]:
            nonlocal done
            async with semaphore:
                try:
                    attempt = await self.submit_and_wait(
                        self.provider_name,
                        self.provider_kind,
                        self.build_payload(context, frame_url),
                        context,
                        None,
                    )
                    entry = {
                        "frame_url": frame_url,
                        "pose_url": media_url(attempt.result or {}, "image", "images"),
                    }
                except JobCancelled:
                    raise
                except OrchestrationError as e:
                    logger.warning(f"Pose detection failed for {frame_url}: {e}")
                    entry = {"frame_url": frame_url, "error": e.message}

            done += 1
            await progress.update(done / len(frames) * 100)
            return entry

        await progress.log(f"Analyzing {len(frames)} frame(s), {self.batch_size} at a time")
        entries = await asyncio.gather(*(analyze(frame) for frame in frames))

        poses = [e for e in entries if "error" not in e]
        failed = [e["frame_url"] for e in entries if "error" in e]
        if not poses:
            raise StageError(self.name, f"Pose detection failed for all {len(frames)} frame(s)")
        if failed:
            await progress.log(f"Pose detection failed for {len(failed)} frame(s)")

        return {
            "poses": poses,
            "failed_frames": failed,
            "best_frame": poses[0]["frame_url"],
        }
