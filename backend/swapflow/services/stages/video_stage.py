"""
Generate-video stage: image-to-video via fal.ai WAN or Kling.
"""

from typing import Any

from swapflow.services.stages.base import ProviderStage, StageContext, StageError, media_url


class GenerateVideoStage(ProviderStage):
    """Generate a video from a still image.

    Output:
        {"video_url": url}
    """

    name = "generate_video"
    weight = 1.0
    provider_kind = "video_generation"

    def select_provider(self, context: StageContext) -> tuple[str, str]:
        return context.input.get("provider", self.provider_name), self.provider_kind

    def build_payload(self, context: StageContext) -> dict[str, Any]:
        return {
            "image_url": context.require_input(self.name, "image_url"),
            "prompt": context.input.get("prompt", ""),
            "duration": str(context.input.get("duration", 5)),
        }

    def parse_result(self, result: dict[str, Any], context: StageContext) -> dict[str, Any]:
        url = media_url(result, "video", "videos")
        if not url:
            raise StageError(self.name, "Generation returned no video")
        return {"video_url": url}
