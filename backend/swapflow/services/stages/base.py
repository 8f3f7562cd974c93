"""
Stage abstraction for generation pipelines.

Provides base classes for defining stages that are composed into a job's
pipeline. Each stage has:
- A unique name for identification
- A weight (fraction of overall job progress it represents)
- Dependencies on earlier stages (defined in depends_on)
- A skippable flag: on SafetyBlocked the sequencer runs fallback()
  instead of failing the job
- An execute method that performs the actual work

Example:
    class PoseStage(ProviderStage):
        name = "pose"
        depends_on = ["extract"]
        weight = 0.1
        provider_kind = "pose_detection"

        def build_payload(self, context: StageContext) -> dict:
            frame = context.get_result("extract")["reference_frame"]
            return {"image_url": frame}

    registry.register(PoseStage(adapter, providers, resolver))
    stages = registry.build_pipeline(["extract", "pose"])
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from swapflow.models.schemas import StageAttempt
from swapflow.services.orchestration.adapter import ProviderAdapter
from swapflow.services.orchestration.config_resolver import ConfigResolver
from swapflow.services.orchestration.polling import PollingConfig
from swapflow.services.orchestration.progress import StageProgress
from swapflow.services.providers import ProviderPool


class StageError(Exception):
    """Error during stage execution.

    Attributes:
        stage_name: Name of the stage that failed
        message: Error description
        cause: Original exception (if any)
    """

    def __init__(
        self,
        stage_name: str,
        message: str,
        cause: Exception | None = None,
    ):
        self.stage_name = stage_name
        self.message = message
        self.cause = cause
        super().__init__(f"[{stage_name}] {message}")


@dataclass
class StageContext:
    """Context passed between pipeline stages.

    Immutable once created - stages add results by returning new context.

    Attributes:
        results: Dictionary of stage_name -> output mapping
        metadata: Job-level data (job_id, kind, strategy, input)
        cancel_event: Set when the owning job was cancelled

    Example:
        context = StageContext().with_metadata("input", {"source_video_url": url})
        context = context.with_result("extract", {"frames": [...]})

        frames = context.get_result("extract")["frames"]
    """

    results: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    cancel_event: asyncio.Event | None = None

    @property
    def input(self) -> dict[str, Any]:
        """Original job input payload."""
        return self.metadata.get("input", {})

    def get_result(self, stage_name: str) -> Any:
        """Get result from a completed stage.

        Raises:
            KeyError: If stage result not found
        """
        if stage_name not in self.results:
            raise KeyError(
                f"Stage '{stage_name}' result not found. "
                f"Available: {list(self.results.keys())}"
            )
        return self.results[stage_name]

    def has_result(self, stage_name: str) -> bool:
        return stage_name in self.results

    def with_result(self, stage_name: str, result: Any) -> "StageContext":
        """Create new context with added result."""
        new_results = {**self.results, stage_name: result}
        return StageContext(
            results=new_results,
            metadata=self.metadata,
            cancel_event=self.cancel_event,
        )

    def with_metadata(self, key: str, value: Any) -> "StageContext":
        """Create new context with added metadata."""
        new_metadata = {**self.metadata, key: value}
        return StageContext(
            results=self.results,
            metadata=new_metadata,
            cancel_event=self.cancel_event,
        )

    def get_metadata(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    def require_input(self, stage_name: str, key: str) -> Any:
        """Get a required input field.

        Raises:
            StageError: If the field is missing or empty
        """
        value = self.input.get(key)
        if not value:
            raise StageError(stage_name, f"Missing required input: {key}")
        return value


class BaseStage(ABC):
    """Abstract base class for pipeline stages.

    Subclasses must implement:
    - name: Unique stage identifier
    - execute(): Async method that performs the work

    Optional overrides:
    - weight: Share of overall progress (normalized by the sequencer)
    - depends_on: Stage names whose output this stage reads
    - skippable: Degrade via fallback() on SafetyBlocked
    - should_skip(): Conditional execution
    - fallback(): Degraded path for skippable stages
    """

    name: str
    weight: float = 1.0
    depends_on: list[str] = []
    skippable: bool = False

    @abstractmethod
    async def execute(self, context: StageContext, progress: StageProgress) -> dict[str, Any]:
        """Execute the stage.

        Args:
            context: Context with results from previous stages
            progress: Stage-scoped progress sink

        Returns:
            Stage output

        Raises:
            StageError: Invalid input
            OrchestrationError: Provider interaction failed
        """
        pass

    def should_skip(self, context: StageContext) -> bool:
        """Check if stage should be skipped based on context."""
        return False

    async def fallback(
        self,
        context: StageContext,
        progress: StageProgress,
        error: Exception,
    ) -> dict[str, Any] | None:
        """Produce a degraded output after a safety rejection.

        Only called for skippable stages. The default passes nothing on.

        Args:
            context: Context with results from previous stages
            progress: Stage-scoped progress sink
            error: The SafetyBlocked error that triggered degradation

        Returns:
            Fallback output, or None
        """
        return None

    def validate_context(self, context: StageContext) -> None:
        """Validate that all dependencies are satisfied.

        Raises:
            StageError: If dependencies are missing
        """
        missing = [dep for dep in self.depends_on if not context.has_result(dep)]
        if missing:
            raise StageError(
                self.name,
                f"Missing dependencies: {missing}",
            )


class ProviderStage(BaseStage):
    """Stage backed by one provider interaction.

    Subclasses define provider_name/provider_kind (or override
    select_provider) and build_payload; parse_result shapes the output.
    """

    provider_name: str = "fal"
    provider_kind: str

    def __init__(
        self,
        adapter: ProviderAdapter,
        providers: ProviderPool,
        resolver: ConfigResolver,
    ):
        """Initialize provider stage.

        Args:
            adapter: Submission adapter (retry + poll loop)
            providers: Provider clients
            resolver: Per-stage polling configuration
        """
        self.adapter = adapter
        self.providers = providers
        self.resolver = resolver

    def select_provider(self, context: StageContext) -> tuple[str, str]:
        """Get (provider name, operation kind) for this run."""
        return self.provider_name, self.provider_kind

    @abstractmethod
    def build_payload(self, context: StageContext) -> dict[str, Any]:
        """Build the provider-specific payload."""
        pass

    def parse_result(self, result: dict[str, Any], context: StageContext) -> dict[str, Any]:
        """Convert the provider result into the stage output."""
        return result

    def polling_for(self, context: StageContext) -> PollingConfig:
        """Resolve polling config, honoring per-job overrides in metadata."""
        overrides = context.get_metadata("polling", {}) or {}
        return self.resolver.polling_for(self.name, overrides.get(self.name))

    async def submit_and_wait(
        self,
        provider_name: str,
        kind: str,
        payload: dict[str, Any],
        context: StageContext,
        progress: StageProgress | None,
    ) -> StageAttempt:
        """Run one provider interaction to completion."""
        return await self.adapter.run(
            self.providers.get(provider_name),
            kind,
            payload,
            polling=self.polling_for(context),
            progress=progress,
            cancel_event=context.cancel_event,
        )

    async def execute(self, context: StageContext, progress: StageProgress) -> dict[str, Any]:
        self.validate_context(context)
        provider_name, kind = self.select_provider(context)
        payload = self.build_payload(context)
        attempt = await self.submit_and_wait(provider_name, kind, payload, context, progress)
        return self.parse_result(attempt.result or {}, context)


def media_url(result: dict[str, Any], *keys: str) -> str | None:
    """Find the first media URL in a provider result.

    Looks at {key: {"url": ...}}, {key: "..."} and {key: [{"url": ...}]}
    for each key in order.
    """
    for key in keys:
        value = result.get(key)
        if isinstance(value, list) and value:
            value = value[0]
        if isinstance(value, dict) and value.get("url"):
            return value["url"]
        if isinstance(value, str) and value:
            return value
    return None


class StageRegistry:
    """Central registry for pipeline stages.

    Example:
        registry = StageRegistry()
        registry.register(ExtractStage(adapter, providers, resolver))
        registry.register(RegenerateStage(adapter, providers, resolver))

        stages = registry.build_pipeline(["extract", "regenerate"])
    """

    def __init__(self) -> None:
        self._stages: dict[str, BaseStage] = {}

    def register(self, stage: BaseStage) -> None:
        """Register a stage.

        Raises:
            ValueError: If stage with same name already registered
        """
        if stage.name in self._stages:
            raise ValueError(f"Stage '{stage.name}' already registered")
        self._stages[stage.name] = stage

    def get(self, name: str) -> BaseStage:
        """Get stage by name.

        Raises:
            KeyError: If stage not found
        """
        if name not in self._stages:
            raise KeyError(
                f"Stage '{name}' not found. "
                f"Available: {list(self._stages.keys())}"
            )
        return self._stages[name]

    def build_pipeline(self, stage_names: list[str]) -> list[BaseStage]:
        """Build ordered pipeline from stage names.

        Stages run in the given order; every dependency must come earlier.

        Raises:
            KeyError: If any stage not found
            ValueError: If a stage is listed before one it depends on
        """
        pipeline = [self.get(name) for name in stage_names]

        seen: set[str] = set()
        for stage in pipeline:
            missing = [dep for dep in stage.depends_on if dep not in seen]
            if missing:
                raise ValueError(
                    f"Stage '{stage.name}' depends on {missing}, "
                    f"which must run earlier in {stage_names}"
                )
            seen.add(stage.name)

        return pipeline

    def __contains__(self, name: str) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)
