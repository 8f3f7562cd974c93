"""
Synthesize stage: produce the output video from the regenerated frame.
"""

from typing import Any

from swapflow.models.schemas import SwapStrategy
from swapflow.services.stages.base import ProviderStage, StageContext, StageError, media_url


class SynthesizeStage(ProviderStage):
    """Synthesize the swapped video.

    wan_replace: fal.ai WAN animate/replace (character replacement)
    kling_motion: Kling motion control (reference image driven by video)

    Input:
        - regenerate: {"image_url": ...}
        - source_video_url: Driving video

    Output:
        {"video_url": url, "strategy": ...}
    """

    name = "synthesize"
    depends_on = ["regenerate"]
    weight = 0.45

    def _strategy(self, context: StageContext) -> SwapStrategy:
        return SwapStrategy(context.get_metadata("strategy") or SwapStrategy.WAN_REPLACE)

    def select_provider(self, context: StageContext) -> tuple[str, str]:
        if self._strategy(context) == SwapStrategy.KLING_MOTION:
            return "kling", "kling_motion"
        return "fal", "wan_replace"

    def build_payload(self, context: StageContext) -> dict[str, Any]:
        image_url = context.get_result("regenerate")["image_url"]
        video_url = context.require_input(self.name, "source_video_url")

        if self._strategy(context) == SwapStrategy.KLING_MOTION:
            return {
                "image_url": image_url,
                "video_url": video_url,
                "character_orientation": context.input.get("character_orientation", "video"),
            }
        return {
            "video_url": video_url,
            "image_url": image_url,
            "resolution": context.input.get("resolution", "720p"),
        }

    def parse_result(self, result: dict[str, Any], context: StageContext) -> dict[str, Any]:
        url = media_url(result, "video", "videos")
        if not url:
            raise StageError(self.name, "Synthesis returned no video")
        return {"video_url": url, "strategy": self._strategy(context).value}
