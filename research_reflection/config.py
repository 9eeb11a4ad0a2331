from __future__ import annotations

from dataclasses import dataclass

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # OpenRouter
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai/gpt-4o-mini"
    openrouter_model: str = ""
    critique_model: str = ""  # optional override for self-critique only
    refinement_model: str = ""  # optional override for refinement passes only
    llm_max_tokens: int = 4096

    # Reflection loop
    reflection_max_iterations: int = 3
    reflection_min_improvement_threshold: float = 0.05
    reflection_quality_target_threshold: float = 0.9
    reflection_timeout_per_iteration_ms: int = 30000  # declared, not enforced
    missing_info_max_sources: int = 10

    # App
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"
    log_to_file: bool = True

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()


@dataclass(slots=True)
class ReflectionConfig:
    """Bounds for one `reflect` invocation."""

    max_iterations: int = 3
    min_improvement_threshold: float = 0.05
    quality_target_threshold: float = 0.9
    # Kept for callers that wrap collaborators in their own deadline.
    timeout_per_iteration: int = 30000

    def __post_init__(self) -> None:
        if int(self.max_iterations) < 0:
            raise ValueError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if not 0.0 <= float(self.quality_target_threshold) <= 1.0:
            raise ValueError(
                f"quality_target_threshold must be within [0, 1], got {self.quality_target_threshold}"
            )
        if not -1.0 <= float(self.min_improvement_threshold) <= 1.0:
            raise ValueError(
                f"min_improvement_threshold must be within [-1, 1], got {self.min_improvement_threshold}"
            )

    @classmethod
    def from_settings(cls, source: Settings | None = None) -> "ReflectionConfig":
        active = source or settings
        return cls(
            max_iterations=max(int(active.reflection_max_iterations), 0),
            min_improvement_threshold=float(active.reflection_min_improvement_threshold),
            quality_target_threshold=float(active.reflection_quality_target_threshold),
            timeout_per_iteration=int(active.reflection_timeout_per_iteration_ms),
        )
