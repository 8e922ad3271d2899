"""
Storyloom Configuration Module
LLM provider configuration and orchestration settings.
"""

from .llm_providers import (
    # Model Definitions
    CLAUDE_MODELS,
    GEMINI_MODELS,
    MISTRAL_MODELS,
    OPENAI_MODELS,
    OPENROUTER_MODELS,
    ROLE_MODEL_ALLOWLIST,
    XAI_MODELS,
    # Configuration Models
    ClaudeConfig,
    GeminiConfig,
    LensSettings,
    LLMConfiguration,
    # Enums
    LLMProvider,
    MistralConfig,
    ModelNotAllowedError,
    OpenAIConfig,
    OpenRouterConfig,
    OrchestrationSettings,
    ProviderConfig,
    RoleModelAssignments,
    RoleModelConfig,
    ServiceRole,
    XAIConfig,
    # Helper Functions
    create_default_config_from_env,
)

__all__ = [
    "LLMProvider",
    "ServiceRole",
    "OPENAI_MODELS",
    "OPENROUTER_MODELS",
    "GEMINI_MODELS",
    "CLAUDE_MODELS",
    "XAI_MODELS",
    "MISTRAL_MODELS",
    "ROLE_MODEL_ALLOWLIST",
    "ProviderConfig",
    "OpenAIConfig",
    "OpenRouterConfig",
    "GeminiConfig",
    "ClaudeConfig",
    "XAIConfig",
    "MistralConfig",
    "RoleModelConfig",
    "RoleModelAssignments",
    "OrchestrationSettings",
    "LensSettings",
    "LLMConfiguration",
    "ModelNotAllowedError",
    "create_default_config_from_env",
]
