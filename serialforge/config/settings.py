"""
Engine and LLM provider configuration for SerialForge.

Provider keys are user supplied (BYOK); every tunable of the orchestration
engine lives in a pydantic model with explicit bounds so that a bad
environment value fails at startup instead of mid-run.
"""

import json
import os
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    GEMINI = "gemini"
    CLAUDE = "claude"
    DEEPSEEK = "deepseek"


# Models known to work for long-form prose; used for validation and defaults.
PROVIDER_MODELS: Dict[LLMProvider, List[str]] = {
    LLMProvider.OPENAI: ["gpt-4o", "gpt-4o-mini", "gpt-4.1", "gpt-4.1-mini"],
    LLMProvider.OPENROUTER: [
        "anthropic/claude-3.5-sonnet",
        "google/gemini-2.0-flash-001",
        "deepseek/deepseek-chat",
    ],
    LLMProvider.GEMINI: ["gemini-1.5-pro", "gemini-1.5-flash", "gemini-2.0-flash"],
    LLMProvider.CLAUDE: ["claude-3-5-sonnet-20241022", "claude-3-5-haiku-20241022"],
    LLMProvider.DEEPSEEK: ["deepseek-chat", "deepseek-reasoner"],
}


# ============================================================================
# Provider Configuration Models
# ============================================================================

class ProviderConfig(BaseModel):
    """Base configuration for an LLM provider."""
    provider: LLMProvider
    api_key: SecretStr
    base_url: Optional[str] = None
    default_model: str
    enabled: bool = True

    @property
    def available_models(self) -> List[str]:
        return PROVIDER_MODELS.get(self.provider, [])


class OpenAIConfig(ProviderConfig):
    provider: LLMProvider = LLMProvider.OPENAI
    base_url: str = "https://api.openai.com/v1"
    default_model: str = "gpt-4o-mini"
    organization_id: Optional[str] = None


class OpenRouterConfig(ProviderConfig):
    provider: LLMProvider = LLMProvider.OPENROUTER
    base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "anthropic/claude-3.5-sonnet"


class GeminiConfig(ProviderConfig):
    provider: LLMProvider = LLMProvider.GEMINI
    default_model: str = "gemini-2.0-flash"


class ClaudeConfig(ProviderConfig):
    provider: LLMProvider = LLMProvider.CLAUDE
    default_model: str = "claude-3-5-sonnet-20241022"


class DeepSeekConfig(ProviderConfig):
    """DeepSeek speaks the OpenAI wire protocol."""
    provider: LLMProvider = LLMProvider.DEEPSEEK
    base_url: str = "https://api.deepseek.com"
    default_model: str = "deepseek-chat"


class RoleModelConfig(BaseModel):
    """Which provider/model serves each role of the pipeline."""
    planner_provider: LLMProvider = LLMProvider.OPENAI
    planner_model: str = "gpt-4o"

    writer_provider: LLMProvider = LLMProvider.OPENAI
    writer_model: str = "gpt-4o-mini"

    summarizer_provider: LLMProvider = LLMProvider.OPENAI
    summarizer_model: str = "gpt-4o-mini"


class LLMConfiguration(BaseModel):
    """Master LLM configuration with all providers."""

    openai: Optional[OpenAIConfig] = None
    openrouter: Optional[OpenRouterConfig] = None
    gemini: Optional[GeminiConfig] = None
    claude: Optional[ClaudeConfig] = None
    deepseek: Optional[DeepSeekConfig] = None

    role_models: RoleModelConfig = Field(default_factory=RoleModelConfig)

    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout_seconds: int = Field(default=120, ge=30, le=600)

    def get_provider_config(self, provider: LLMProvider) -> Optional[ProviderConfig]:
        provider_map = {
            LLMProvider.OPENAI: self.openai,
            LLMProvider.OPENROUTER: self.openrouter,
            LLMProvider.GEMINI: self.gemini,
            LLMProvider.CLAUDE: self.claude,
            LLMProvider.DEEPSEEK: self.deepseek,
        }
        return provider_map.get(provider)

    def get_enabled_providers(self) -> List[LLMProvider]:
        enabled = []
        for provider in LLMProvider:
            provider_config = self.get_provider_config(provider)
            if provider_config and provider_config.enabled:
                enabled.append(provider)
        return enabled

    def validate_role_models(self) -> List[str]:
        """Check that every role points at a configured, enabled provider."""
        errors = []
        roles = [
            ("planner", self.role_models.planner_provider, self.role_models.planner_model),
            ("writer", self.role_models.writer_provider, self.role_models.writer_model),
            ("summarizer", self.role_models.summarizer_provider, self.role_models.summarizer_model),
        ]
        for role, provider, model in roles:
            provider_config = self.get_provider_config(provider)
            if not provider_config:
                errors.append(f"{role}: Provider {provider.value} is not configured")
            elif not provider_config.enabled:
                errors.append(f"{role}: Provider {provider.value} is disabled")
            elif model not in provider_config.available_models:
                errors.append(f"{role}: Model {model} not available for {provider.value}")
        return errors


# ============================================================================
# Engine Settings
# ============================================================================

class RetrySettings(BaseModel):
    """Backoff policy toward the generative capability."""
    max_attempts: int = Field(default=3, ge=1, le=10)
    base: float = Field(default=3.0, ge=1.0, le=10.0)
    jitter_seconds: float = Field(default=1.0, ge=0.0, le=10.0)
    max_delay_seconds: float = Field(default=60.0, ge=0.0, le=600.0)


class TwistWindow(BaseModel):
    """Relative window of an arc in which one twist is scheduled."""
    start_ratio: float = Field(ge=0.0, le=1.0)
    end_ratio: float = Field(ge=0.0, le=1.0)
    impact_level: int = Field(default=60, ge=0, le=100)
    twist_types: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_order(self) -> "TwistWindow":
        if self.end_ratio < self.start_ratio:
            raise ValueError("end_ratio must not be smaller than start_ratio")
        return self


def _default_twist_windows() -> List[TwistWindow]:
    return [
        TwistWindow(
            start_ratio=0.4,
            end_ratio=0.5,
            impact_level=60,
            twist_types=["revelation", "alliance", "power_up"],
        ),
        TwistWindow(
            start_ratio=0.8,
            end_ratio=0.9,
            impact_level=80,
            twist_types=["betrayal", "plot_reversal", "hidden_identity"],
        ),
    ]


class ArcSettings(BaseModel):
    """Macro structure: arc length, tension curve shape, twist windows."""
    arc_size: int = Field(default=20, ge=2, le=200)
    climax_ratio: float = Field(default=0.7, gt=0.0, lt=1.0)
    tension_baseline: int = Field(default=30, ge=0, le=100)
    tension_near_peak: int = Field(default=90, ge=0, le=100)
    tension_peak: int = Field(default=95, ge=0, le=100)
    tension_fall_to: int = Field(default=50, ge=0, le=100)
    default_tension: int = Field(default=50, ge=0, le=100)
    twist_windows: List[TwistWindow] = Field(default_factory=_default_twist_windows)
    foreshadow_lookahead: int = Field(default=3, ge=0, le=20)


class ContextSettings(BaseModel):
    """Budgets for the hierarchical context assembler, in estimated tokens."""
    full_budget: int = Field(default=12000, ge=200)
    medium_budget: int = Field(default=7000, ge=200)
    minimal_budget: int = Field(default=4000, ge=200)
    full_recent: int = Field(default=3, ge=0, le=10)
    medium_recent: int = Field(default=2, ge=0, le=10)
    minimal_recent: int = Field(default=1, ge=0, le=10)
    golden_installments: int = Field(default=3, ge=0)
    bible_refresh_interval: int = Field(default=50, ge=1)
    synopsis_max_words: int = Field(default=800, ge=50)
    max_prior_titles: int = Field(default=20, ge=0)
    max_prior_openings: int = Field(default=10, ge=0)
    max_prior_closings: int = Field(default=5, ge=0)


class QualitySettings(BaseModel):
    """Quality gate weights and thresholds (scores are 0-100)."""
    style_weight: float = Field(default=0.2, ge=0.0)
    consistency_weight: float = Field(default=0.35, ge=0.0)
    variety_weight: float = Field(default=0.2, ge=0.0)
    structure_weight: float = Field(default=0.25, ge=0.0)
    accept_threshold: int = Field(default=65, ge=0, le=100)
    auto_rewrite_below: int = Field(default=50, ge=0, le=100)
    dimension_floor: int = Field(default=40, ge=0, le=100)
    max_rewrite_attempts: int = Field(default=2, ge=0, le=10)
    target_words: int = Field(default=2500, ge=50)
    title_similarity_limit: float = Field(default=0.7, ge=0.0, le=1.0)


class BeatSettings(BaseModel):
    """Beat ledger tuning; overrides replace the built-in cooldown per beat type."""
    cooldown_overrides: Dict[str, int] = Field(default_factory=dict)

    @field_validator("cooldown_overrides")
    @classmethod
    def _check_cooldowns(cls, v: Dict[str, int]) -> Dict[str, int]:
        negative = [k for k, c in v.items() if c < 0]
        if negative:
            raise ValueError(f"cooldowns must not be negative: {', '.join(negative)}")
        return v


class RunnerConfig(BaseModel):
    """Runner pacing, retries and recovery."""
    delay_between_installments: float = Field(default=2.0, ge=0.0)
    delay_between_arcs: float = Field(default=5.0, ge=0.0)
    adaptive_delay: float = Field(default=0.5, ge=0.0)
    slow_installment_seconds: float = Field(default=5.0, ge=0.0)
    max_installment_retries: int = Field(default=3, ge=1, le=10)
    snapshot_interval: int = Field(default=5, ge=1)
    snapshot_enabled: bool = True
    pause_on_error: bool = False
    pause_after_arc: bool = False
    installment_max_tokens: int = Field(default=8192, ge=256)
    planning_max_tokens: int = Field(default=4096, ge=256)
    summary_max_tokens: int = Field(default=1024, ge=128)
    high_stakes_authority: int = Field(default=60, ge=0, le=100)


class EngineSettings(BaseModel):
    """Everything a Runner needs apart from collaborators."""
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    arcs: ArcSettings = Field(default_factory=ArcSettings)
    context: ContextSettings = Field(default_factory=ContextSettings)
    quality: QualitySettings = Field(default_factory=QualitySettings)
    beats: BeatSettings = Field(default_factory=BeatSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    log_level: str = "INFO"


# ============================================================================
# Helper Functions
# ============================================================================

def create_default_config_from_env() -> LLMConfiguration:
    """Create provider configuration from environment variables."""
    config = LLMConfiguration()

    if os.getenv("OPENAI_API_KEY"):
        config.openai = OpenAIConfig(
            api_key=SecretStr(os.getenv("OPENAI_API_KEY")),
            organization_id=os.getenv("OPENAI_ORG_ID"),
        )

    if os.getenv("OPENROUTER_API_KEY"):
        config.openrouter = OpenRouterConfig(
            api_key=SecretStr(os.getenv("OPENROUTER_API_KEY")),
        )

    if os.getenv("GEMINI_API_KEY"):
        config.gemini = GeminiConfig(
            api_key=SecretStr(os.getenv("GEMINI_API_KEY")),
        )

    if os.getenv("ANTHROPIC_API_KEY"):
        config.claude = ClaudeConfig(
            api_key=SecretStr(os.getenv("ANTHROPIC_API_KEY")),
        )

    if os.getenv("DEEPSEEK_API_KEY"):
        config.deepseek = DeepSeekConfig(
            api_key=SecretStr(os.getenv("DEEPSEEK_API_KEY")),
        )

    writer_provider = os.getenv("SERIALFORGE_WRITER_PROVIDER")
    if writer_provider:
        config.role_models.writer_provider = LLMProvider(writer_provider)
    writer_model = os.getenv("SERIALFORGE_WRITER_MODEL")
    if writer_model:
        config.role_models.writer_model = writer_model

    return config


def create_engine_settings_from_env() -> EngineSettings:
    """Create engine settings, overriding the common knobs from the environment."""
    settings = EngineSettings()

    if os.getenv("SERIALFORGE_ARC_SIZE"):
        settings.arcs.arc_size = int(os.getenv("SERIALFORGE_ARC_SIZE"))
    if os.getenv("SERIALFORGE_SNAPSHOT_INTERVAL"):
        settings.runner.snapshot_interval = int(os.getenv("SERIALFORGE_SNAPSHOT_INTERVAL"))
    if os.getenv("SERIALFORGE_PAUSE_ON_ERROR"):
        settings.runner.pause_on_error = os.getenv("SERIALFORGE_PAUSE_ON_ERROR").lower() in ("1", "true", "yes")
    if os.getenv("SERIALFORGE_TARGET_WORDS"):
        settings.quality.target_words = int(os.getenv("SERIALFORGE_TARGET_WORDS"))
    if os.getenv("SERIALFORGE_BEAT_COOLDOWNS"):
        # JSON object, e.g. {"betrayal": 80, "reunion": 12}
        settings.beats.cooldown_overrides = json.loads(os.getenv("SERIALFORGE_BEAT_COOLDOWNS"))
    if os.getenv("SERIALFORGE_LOG_LEVEL"):
        settings.log_level = os.getenv("SERIALFORGE_LOG_LEVEL").upper()

    # Round-trip through validation so bad env values fail here
    return EngineSettings.model_validate(settings.model_dump())
