"""
Regenerate stage: identity-conditioned regeneration of the reference frame.

Skippable: when the provider's safety filter rejects the regeneration,
the stage degrades to a basic face swap instead of failing the job.
"""

import logging
from typing import Any

from swapflow.services.orchestration.progress import StageProgress
from swapflow.services.stages.base import ProviderStage, StageContext, StageError, media_url

logger = logging.getLogger(__name__)


class RegenerateStage(ProviderStage):
    """Regenerate the reference frame with the target identity.

    Input:
        - extract / analyze results (reference frame)
        - identity_image_url: Target identity photo
        - prompt: Optional regeneration prompt

    Output:
        {"image_url": url, "method": "identity_regenerate" | "face_swap"}
    """

    name = "regenerate"
    depends_on = ["extract"]
    weight = 0.15
    skippable = True
    provider_kind = "identity_regenerate"
    fallback_kind = "face_swap_image"

    def reference_frame(self, context: StageContext) -> str:
        """Best analyzed frame if available, else the first extracted one."""
        if context.has_result("analyze"):
            return context.get_result("analyze")["best_frame"]
        return context.get_result("extract")["reference_frame"]

    def build_payload(self, context: StageContext) -> dict[str, Any]:
        payload = {
            "image_url": self.reference_frame(context),
            "reference_image_url": context.require_input(self.name, "identity_image_url"),
            "prompt": context.input.get("prompt", ""),
        }
        if context.input.get("lora_url"):
            payload["loras"] = [{"path": context.input["lora_url"], "scale": 1.0}]
        return payload

    def parse_result(self, result: dict[str, Any], context: StageContext) -> dict[str, Any]:
        url = media_url(result, "images", "image")
        if not url:
            raise StageError(self.name, "Regeneration returned no image")
        return {"image_url": url, "method": "identity_regenerate"}

    async def fallback(
        self,
        context: StageContext,
        progress: StageProgress,
        error: Exception,
    ) -> dict[str, Any]:
        """Basic face swap on the reference frame."""
        await progress.log("Falling back to basic face swap")
        attempt = await self.submit_and_wait(
            self.provider_name,
            self.fallback_kind,
            {
                "base_image_url": self.reference_frame(context),
                "swap_image_url": context.require_input(self.name, "identity_image_url"),
            },
            context,
            progress,
        )
        url = media_url(attempt.result or {}, "image", "images")
        if not url:
            raise StageError(self.name, "Face swap fallback returned no image")
        return {"image_url": url, "method": "face_swap"}
