"""
Configuration resolver for stage polling.

Each stage gets an explicit PollingConfig. Defaults come from the stage's
speed class, config/polling.yaml may override them, and callers may
override per call.
"""

import logging
from dataclasses import replace
from typing import Any, Literal

from swapflow.config import Settings, load_polling_overrides
from swapflow.services.orchestration.polling import PollingConfig, log_step_progress

logger = logging.getLogger(__name__)

SpeedClass = Literal["fast", "standard", "slow", "training"]

# interval_seconds, max_attempts
SPEED_CLASS_DEFAULTS: dict[str, tuple[float, int]] = {
    "fast": (2.5, 60),        # ~2.5 min ceiling (frame extract, face swap, detection)
    "standard": (5.0, 120),   # ~10 min ceiling (image generation, upscale)
    "slow": (10.0, 360),      # ~60 min ceiling (video synthesis)
    "training": (15.0, 120),  # ~30 min ceiling (LoRA training)
}

STAGE_SPEED_CLASSES: dict[str, SpeedClass] = {
    "extract": "fast",
    "analyze": "fast",
    "regenerate": "standard",
    "synthesize": "slow",
    "upscale": "standard",
    "train": "training",
    "generate_image": "standard",
    "generate_video": "slow",
}

OVERRIDABLE_FIELDS = ("interval_seconds", "max_attempts")


class ConfigResolver:
    """
    Resolves polling configuration for pipeline stages.

    Example:
        resolver = ConfigResolver(settings)

        config = resolver.polling_for("synthesize")
        # PollingConfig(interval_seconds=10.0, max_attempts=360, ...)

        config = resolver.polling_for("upscale", {"max_attempts": 30})
    """

    def __init__(self, settings: Settings, overrides: dict[str, Any] | None = None):
        """
        Initialize config resolver.

        Args:
            settings: Application settings
            overrides: Polling overrides (default: loaded from config/polling.yaml)
        """
        self.settings = settings
        self.overrides = overrides if overrides is not None else load_polling_overrides(settings)

    def speed_class_for(self, stage: str) -> SpeedClass:
        """Get speed class of a stage (unknown stages are standard)."""
        return STAGE_SPEED_CLASSES.get(stage, "standard")

    def polling_for(
        self,
        stage: str,
        override: dict[str, Any] | None = None,
    ) -> PollingConfig:
        """
        Get polling configuration for a stage.

        Resolution order: speed class default, YAML class default,
        YAML stage entry, per-call override.

        Args:
            stage: Stage name
            override: Per-call field overrides

        Returns:
            New PollingConfig instance
        """
        speed_class = self.speed_class_for(stage)
        interval, max_attempts = SPEED_CLASS_DEFAULTS[speed_class]
        config = PollingConfig(interval_seconds=interval, max_attempts=max_attempts)

        if speed_class == "training":
            config.progress_extractor = log_step_progress

        layers = [
            self.overrides.get("defaults", {}).get(speed_class),
            self.overrides.get("stages", {}).get(stage),
            override,
        ]
        for layer in layers:
            if layer:
                config = self._apply(config, layer, stage)

        return config

    def _apply(self, config: PollingConfig, layer: dict[str, Any], stage: str) -> PollingConfig:
        changes: dict[str, Any] = {}
        for key, value in layer.items():
            if key not in OVERRIDABLE_FIELDS:
                logger.warning(f"Ignoring unknown polling option for {stage}: {key}")
                continue
            changes[key] = float(value) if key == "interval_seconds" else int(value)

        if changes:
            logger.debug(f"Polling override for {stage}: {changes}")
        return replace(config, **changes)


if __name__ == "__main__":
    """Run tests when executed directly."""
    from swapflow.config import get_settings

    print("\nRunning ConfigResolver tests...\n")

    resolver = ConfigResolver(get_settings(), overrides={})

    print("Test 1: Slow stage defaults...", end=" ")
    config = resolver.polling_for("synthesize")
    assert config.interval_seconds == 10.0
    assert config.max_attempts == 360
    print("OK")

    print("Test 2: Per-call override...", end=" ")
    config = resolver.polling_for("upscale", {"max_attempts": 30})
    assert config.max_attempts == 30
    assert config.interval_seconds == 5.0
    print("OK")

    print("Test 3: YAML stage override...", end=" ")
    resolver = ConfigResolver(
        get_settings(),
        overrides={"stages": {"extract": {"interval_seconds": 1}}},
    )
    assert resolver.polling_for("extract").interval_seconds == 1.0
    print("OK")

    print("\n" + "=" * 40)
    print("All ConfigResolver tests passed!")
