"""
SerialForge Configuration Module
LLM provider configuration and engine settings.
"""

from .settings import (
    PROVIDER_MODELS,
    ArcSettings,
    BeatSettings,
    ClaudeConfig,
    ContextSettings,
    DeepSeekConfig,
    EngineSettings,
    GeminiConfig,
    LLMConfiguration,
    LLMProvider,
    OpenAIConfig,
    OpenRouterConfig,
    ProviderConfig,
    QualitySettings,
    RetrySettings,
    RoleModelConfig,
    RunnerConfig,
    TwistWindow,
    create_default_config_from_env,
    create_engine_settings_from_env,
)

__all__ = [
    "LLMProvider",
    "PROVIDER_MODELS",
    "ProviderConfig",
    "OpenAIConfig",
    "OpenRouterConfig",
    "GeminiConfig",
    "ClaudeConfig",
    "DeepSeekConfig",
    "RoleModelConfig",
    "LLMConfiguration",
    "RetrySettings",
    "TwistWindow",
    "ArcSettings",
    "BeatSettings",
    "ContextSettings",
    "QualitySettings",
    "RunnerConfig",
    "EngineSettings",
    "create_default_config_from_env",
    "create_engine_settings_from_env",
]
