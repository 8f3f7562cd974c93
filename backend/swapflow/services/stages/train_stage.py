"""
Train stage: LoRA training on an identity dataset.

Training progress comes from "step N/M" lines in the provider's logs.
"""

from typing import Any

from swapflow.services.stages.base import ProviderStage, StageContext, StageError, media_url

TRAINERS = {
    "flux": "lora_training",
    "wan": "wan_training",
}


class TrainStage(ProviderStage):
    """Train a LoRA via fal.ai.

    Input:
        - images_data_url: Zip archive with training images
        - trigger_word: Optional trigger token
        - steps: Optional training steps (default 1000)
        - trainer: "flux" (default) or "wan"

    Output:
        {"lora_url": url, "config_url": url | None, "trigger_word": ...}
    """

    name = "train"
    weight = 1.0

    def select_provider(self, context: StageContext) -> tuple[str, str]:
        trainer = context.input.get("trainer", "flux")
        if trainer not in TRAINERS:
            raise StageError(self.name, f"Unknown trainer '{trainer}'. Available: {list(TRAINERS)}")
        return "fal", TRAINERS[trainer]

    def build_payload(self, context: StageContext) -> dict[str, Any]:
        return {
            "images_data_url": context.require_input(self.name, "images_data_url"),
            "trigger_word": context.input.get("trigger_word", "TOK"),
            "steps": int(context.input.get("steps", 1000)),
        }

    def parse_result(self, result: dict[str, Any], context: StageContext) -> dict[str, Any]:
        lora_url = media_url(result, "diffusers_lora_file", "lora_file")
        if not lora_url:
            raise StageError(self.name, "Training finished without a LoRA file")
        return {
            "lora_url": lora_url,
            "config_url": media_url(result, "config_file"),
            "trigger_word": context.input.get("trigger_word", "TOK"),
        }
