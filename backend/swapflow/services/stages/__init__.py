"""
Pipeline stages for generation jobs.

Each job kind maps to an ordered list of stage names; the composite
face-swap kind picks its list by strategy.

Usage:
    from swapflow.services.stages import create_default_stages, pipeline_for

    registry = create_default_stages(settings, adapter, providers, resolver)
    stages = registry.build_pipeline(pipeline_for(JobKind.FACE_SWAP, SwapStrategy.WAN_REPLACE))

Adding new stages:
    1. Create a new file: stages/my_stage.py
    2. Subclass ProviderStage (one provider call) or BaseStage
    3. Register it in create_default_stages() and add it to a pipeline
"""

from swapflow.config import Settings
from swapflow.models.schemas import JobKind, SwapStrategy
from swapflow.services.orchestration.adapter import ProviderAdapter
from swapflow.services.orchestration.config_resolver import ConfigResolver
from swapflow.services.providers import ProviderPool
from swapflow.services.stages.analyze_stage import AnalyzeStage
from swapflow.services.stages.base import (
    BaseStage,
    ProviderStage,
    StageContext,
    StageError,
    StageRegistry,
    media_url,
)
from swapflow.services.stages.extract_stage import ExtractStage
from swapflow.services.stages.image_stage import GenerateImageStage
from swapflow.services.stages.regenerate_stage import RegenerateStage
from swapflow.services.stages.synthesize_stage import SynthesizeStage
from swapflow.services.stages.train_stage import TrainStage
from swapflow.services.stages.upscale_stage import UpscaleStage
from swapflow.services.stages.video_stage import GenerateVideoStage

PIPELINES: dict[JobKind, list[str]] = {
    JobKind.LORA_TRAINING: ["train"],
    JobKind.IMAGE_GENERATION: ["generate_image"],
    JobKind.VIDEO_GENERATION: ["generate_video"],
    JobKind.UPSCALE: ["upscale"],
}

SWAP_PIPELINES: dict[SwapStrategy, list[str]] = {
    SwapStrategy.WAN_REPLACE: ["extract", "analyze", "regenerate", "synthesize", "upscale"],
    SwapStrategy.KLING_MOTION: ["extract", "regenerate", "synthesize", "upscale"],
}


def pipeline_for(kind: JobKind, strategy: SwapStrategy | None = None) -> list[str]:
    """
    Get stage names for a job kind.

    Args:
        kind: Job kind
        strategy: Strategy for composite face-swap jobs (default wan_replace)

    Returns:
        Ordered stage names
    """
    if kind == JobKind.FACE_SWAP:
        return list(SWAP_PIPELINES[strategy or SwapStrategy.WAN_REPLACE])
    return list(PIPELINES[kind])


def create_default_stages(
    settings: Settings,
    adapter: ProviderAdapter,
    providers: ProviderPool,
    resolver: ConfigResolver,
) -> StageRegistry:
    """
    Create a registry with all stages.

    Args:
        settings: Application settings
        adapter: Provider submission adapter
        providers: Provider clients for the job
        resolver: Per-stage polling configuration

    Returns:
        Registry with every stage registered
    """
    registry = StageRegistry()
    registry.register(ExtractStage(adapter, providers, resolver))
    registry.register(AnalyzeStage(adapter, providers, resolver, batch_size=settings.analysis_batch_size))
    registry.register(RegenerateStage(adapter, providers, resolver))
    registry.register(SynthesizeStage(adapter, providers, resolver))
    registry.register(UpscaleStage(adapter, providers, resolver, default_method=settings.upscale_method))
    registry.register(TrainStage(adapter, providers, resolver))
    registry.register(GenerateImageStage(adapter, providers, resolver))
    registry.register(GenerateVideoStage(adapter, providers, resolver))
    return registry


__all__ = [
    # Base classes
    "BaseStage",
    "ProviderStage",
    "StageContext",
    "StageError",
    "StageRegistry",
    "media_url",
    # Stage implementations
    "ExtractStage",
    "AnalyzeStage",
    "RegenerateStage",
    "SynthesizeStage",
    "UpscaleStage",
    "TrainStage",
    "GenerateImageStage",
    "GenerateVideoStage",
    # Pipelines
    "PIPELINES",
    "SWAP_PIPELINES",
    "pipeline_for",
    "create_default_stages",
]
