"""
Generate-image stage: text-to-image, optionally with a trained LoRA.
"""

from typing import Any

from swapflow.services.stages.base import ProviderStage, StageContext, StageError


class GenerateImageStage(ProviderStage):
    """Generate images via fal.ai (default) or Kling.

    Output:
        {"images": [url, ...]}
    """

    name = "generate_image"
    weight = 1.0
    provider_kind = "image_generation"

    def select_provider(self, context: StageContext) -> tuple[str, str]:
        return context.input.get("provider", self.provider_name), self.provider_kind

    def build_payload(self, context: StageContext) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": context.require_input(self.name, "prompt"),
            "num_images": int(context.input.get("num_images", 1)),
        }
        if context.input.get("image_size"):
            payload["image_size"] = context.input["image_size"]
        if context.input.get("lora_url"):
            payload["loras"] = [{
                "path": context.input["lora_url"],
                "scale": float(context.input.get("lora_scale", 1.0)),
            }]
        return payload

    def parse_result(self, result: dict[str, Any], context: StageContext) -> dict[str, Any]:
        images = [
            image["url"] if isinstance(image, dict) else image
            for image in result.get("images", [])
        ]
        if not images:
            raise StageError(self.name, "Generation returned no images")
        return {"images": images}
