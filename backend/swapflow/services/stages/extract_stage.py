"""
Extract stage: pull keyframes from the source video.
"""

import logging
from typing import Any

from swapflow.services.orchestration.progress import StageProgress
from swapflow.services.stages.base import ProviderStage, StageContext, StageError, media_url

logger = logging.getLogger(__name__)

DEFAULT_FRAME_POSITIONS = ["first", "middle", "last"]


class ExtractStage(ProviderStage):
    """Extract keyframes from the source video via fal.ai ffmpeg.

    Input (job input):
        - source_video_url: Video to process
        - frame_positions: Optional list of "first" | "middle" | "last"

    Output:
        {"frames": [url, ...], "reference_frame": url}
    """

    name = "extract"
    weight = 0.10
    provider_kind = "frame_extract"

    def _positions(self, context: StageContext) -> list[str]:
        return list(context.input.get("frame_positions") or DEFAULT_FRAME_POSITIONS)

    def build_payload(self, context: StageContext, position: str = "first") -> dict[str, Any]:
        return {
            "video_url": context.require_input(self.name, "source_video_url"),
            "frame_type": position,
        }

    async def execute(self, context: StageContext, progress: StageProgress) -> dict[str, Any]:
        positions = self._positions(context)
        frames: list[str] = []

        for i, position in enumerate(positions):
            attempt = await self.submit_and_wait(
                self.provider_name,
                self.provider_kind,
                self.build_payload(context, position),
                context,
                progress,
            )
            url = media_url(attempt.result or {}, "images", "image", "frame")
            if not url:
                raise StageError(self.name, f"No frame returned for position '{position}'")
            frames.append(url)
            await progress.update((i + 1) / len(positions) * 100)

        logger.info(f"Extracted {len(frames)} frame(s)")
        return {"frames": frames, "reference_frame": frames[0]}
