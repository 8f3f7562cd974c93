"""
Upscale stage: optional resolution upscaling of the produced media.
"""

from typing import Any

from swapflow.models.schemas import JobKind
from swapflow.services.orchestration.adapter import ProviderAdapter
from swapflow.services.orchestration.config_resolver import ConfigResolver
from swapflow.services.providers import ProviderPool
from swapflow.services.stages.base import ProviderStage, StageContext, StageError, media_url

UPSCALE_METHODS = ("esrgan", "clarity", "creative")


class UpscaleStage(ProviderStage):
    """Upscale the synthesized video, or a standalone image.

    In composite pipelines this runs only when the input asks for it
    ("upscale": true). Standalone upscale jobs always run it.

    Output:
        {"video_url": url} or {"image_url": url, "method": ...}
    """

    name = "upscale"
    weight = 0.15

    def __init__(
        self,
        adapter: ProviderAdapter,
        providers: ProviderPool,
        resolver: ConfigResolver,
        default_method: str = "clarity",
    ):
        super().__init__(adapter, providers, resolver)
        self.default_method = default_method

    def should_skip(self, context: StageContext) -> bool:
        standalone = context.get_metadata("kind") == JobKind.UPSCALE
        return not context.input.get("upscale", standalone)

    def _video_source(self, context: StageContext) -> str | None:
        if context.has_result("synthesize"):
            return context.get_result("synthesize")["video_url"]
        return context.input.get("video_url")

    def _method(self, context: StageContext) -> str:
        method = context.input.get("method", self.default_method)
        if method not in UPSCALE_METHODS:
            raise StageError(self.name, f"Unknown upscale method '{method}'. Available: {UPSCALE_METHODS}")
        return method

    def select_provider(self, context: StageContext) -> tuple[str, str]:
        if self._video_source(context):
            return "fal", "upscale_video"
        return "fal", f"upscale_{self._method(context)}"

    def build_payload(self, context: StageContext) -> dict[str, Any]:
        scale = context.input.get("scale", 2)
        video_url = self._video_source(context)
        if video_url:
            return {"video_url": video_url, "scale": scale}
        return {"image_url": context.require_input(self.name, "image_url"), "scale": scale}

    def parse_result(self, result: dict[str, Any], context: StageContext) -> dict[str, Any]:
        if self._video_source(context):
            url = media_url(result, "video", "videos")
            if not url:
                raise StageError(self.name, "Upscale returned no video")
            return {"video_url": url}

        url = media_url(result, "image", "images")
        if not url:
            raise StageError(self.name, "Upscale returned no image")
        return {"image_url": url, "method": self._method(context)}
