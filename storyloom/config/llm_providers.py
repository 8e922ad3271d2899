"""
LLM Provider Configuration for Storyloom
Providers, per-role model assignments and orchestration tunables.
"""

import os
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, SecretStr


class LLMProvider(str, Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    GEMINI = "gemini"
    CLAUDE = "claude"
    XAI = "xai"
    MISTRAL = "mistral"


class ServiceRole(str, Enum):
    """Generation service roles used by the orchestration controller."""
    PRIMARY_AUTHOR = "primary_author"
    FALLBACK_AUTHOR = "fallback_author"
    SCENE_RENDERER = "scene_renderer"
    FALLBACK_RENDERER = "fallback_renderer"


class ModelNotAllowedError(ValueError):
    """Raised when a role is configured with a model outside its allowlist."""

    def __init__(self, role: ServiceRole, model: str):
        self.role = role
        self.model = model
        super().__init__(f"Model {model} is not allowed for role {role.value}")


# ============================================================================
# Model Definitions by Provider
# ============================================================================

OPENAI_MODELS: Dict[str, Dict[str, Any]] = {
    "gpt-4o": {
        "name": "GPT-4o",
        "description": "Most capable GPT-4 model, multimodal",
        "context_window": 128000,
        "max_output": 16384,
        "recommended_for": ["primary_author"],
    },
    "gpt-4o-mini": {
        "name": "GPT-4o Mini",
        "description": "Smaller, faster, cheaper GPT-4o variant",
        "context_window": 128000,
        "max_output": 16384,
        "recommended_for": ["primary_author"],
    },
    "gpt-4-turbo": {
        "name": "GPT-4 Turbo",
        "description": "GPT-4 Turbo with 128k context",
        "context_window": 128000,
        "max_output": 4096,
        "recommended_for": ["primary_author"],
    },
    "gpt-4": {
        "name": "GPT-4",
        "description": "Original GPT-4",
        "context_window": 8192,
        "max_output": 4096,
        "recommended_for": ["primary_author"],
    },
}

GEMINI_MODELS: Dict[str, Dict[str, Any]] = {
    "gemini-2.0-flash": {
        "name": "Gemini 2.0 Flash",
        "description": "Fast Gemini 2.0 model, conservative fallback author",
        "context_window": 1000000,
        "max_output": 8192,
        "recommended_for": ["fallback_author"],
    },
    "gemini-1.5-flash": {
        "name": "Gemini 1.5 Flash",
        "description": "Fast and efficient Gemini model",
        "context_window": 1000000,
        "max_output": 8192,
        "recommended_for": ["fallback_author"],
    },
}

XAI_MODELS: Dict[str, Dict[str, Any]] = {
    "grok-4-fast-reasoning": {
        "name": "Grok 4 Fast (Reasoning)",
        "description": "Scene directive author and specialist renderer",
        "context_window": 2000000,
        "max_output": 30000,
        "recommended_for": ["scene_renderer"],
    },
    "grok-4-fast-non-reasoning": {
        "name": "Grok 4 Fast (Non-Reasoning)",
        "description": "Lower latency renderer variant",
        "context_window": 2000000,
        "max_output": 30000,
        "recommended_for": ["scene_renderer"],
    },
    "grok-3": {
        "name": "Grok 3",
        "description": "Previous generation Grok model",
        "context_window": 131072,
        "max_output": 16384,
        "recommended_for": ["scene_renderer"],
    },
}

MISTRAL_MODELS: Dict[str, Dict[str, Any]] = {
    "mistral-medium-latest": {
        "name": "Mistral Medium",
        "description": "Fallback scene directive author and renderer",
        "context_window": 128000,
        "max_output": 8192,
        "recommended_for": ["fallback_renderer"],
    },
    "mistral-large-latest": {
        "name": "Mistral Large",
        "description": "Larger Mistral fallback renderer",
        "context_window": 128000,
        "max_output": 8192,
        "recommended_for": ["fallback_renderer"],
    },
}

CLAUDE_MODELS: Dict[str, Dict[str, Any]] = {
    "claude-3-5-sonnet-20241022": {
        "name": "Claude 3.5 Sonnet",
        "description": "Claude 3.5 Sonnet",
        "context_window": 200000,
        "max_output": 8192,
        "recommended_for": ["fallback_author"],
    },
    "claude-3-5-haiku-20241022": {
        "name": "Claude 3.5 Haiku",
        "description": "Fast and cost-effective Claude model",
        "context_window": 200000,
        "max_output": 8192,
        "recommended_for": ["fallback_author"],
    },
}

OPENROUTER_MODELS: Dict[str, Dict[str, Any]] = {
    "openai/gpt-4o": {
        "name": "GPT-4o (via OpenRouter)",
        "description": "OpenAI GPT-4o through OpenRouter",
        "context_window": 128000,
        "max_output": 16384,
        "recommended_for": ["primary_author"],
    },
    "google/gemini-2.0-flash-001": {
        "name": "Gemini 2.0 Flash (via OpenRouter)",
        "description": "Google Gemini 2.0 Flash through OpenRouter",
        "context_window": 1000000,
        "max_output": 8192,
        "recommended_for": ["fallback_author"],
    },
}

# Per-role allowlists. A role may only be served by these model ids.
ROLE_MODEL_ALLOWLIST: Dict[ServiceRole, List[str]] = {
    ServiceRole.PRIMARY_AUTHOR: ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-4", "openai/gpt-4o"],
    ServiceRole.FALLBACK_AUTHOR: [
        "gemini-2.0-flash",
        "gemini-1.5-flash",
        "google/gemini-2.0-flash-001",
        "claude-3-5-haiku-20241022",
        "claude-3-5-sonnet-20241022",
    ],
    ServiceRole.SCENE_RENDERER: ["grok-4-fast-reasoning", "grok-4-fast-non-reasoning", "grok-3"],
    ServiceRole.FALLBACK_RENDERER: ["mistral-medium-latest", "mistral-large-latest"],
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


class OpenAIConfig(ProviderConfig):
    """OpenAI-specific configuration."""
    provider: LLMProvider = LLMProvider.OPENAI
    base_url: str = "https://api.openai.com/v1"
    default_model: str = "gpt-4o-mini"
    organization_id: Optional[str] = None

    @property
    def available_models(self) -> Dict[str, Dict[str, Any]]:
        return OPENAI_MODELS


class OpenRouterConfig(ProviderConfig):
    """OpenRouter-specific configuration."""
    provider: LLMProvider = LLMProvider.OPENROUTER
    base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "openai/gpt-4o"

    @property
    def available_models(self) -> Dict[str, Dict[str, Any]]:
        return OPENROUTER_MODELS


class GeminiConfig(ProviderConfig):
    """Google Gemini-specific configuration."""
    provider: LLMProvider = LLMProvider.GEMINI
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    default_model: str = "gemini-2.0-flash"

    @property
    def available_models(self) -> Dict[str, Dict[str, Any]]:
        return GEMINI_MODELS


class ClaudeConfig(ProviderConfig):
    """Anthropic Claude-specific configuration."""
    provider: LLMProvider = LLMProvider.CLAUDE
    base_url: str = "https://api.anthropic.com/v1"
    default_model: str = "claude-3-5-sonnet-20241022"

    @property
    def available_models(self) -> Dict[str, Dict[str, Any]]:
        return CLAUDE_MODELS


class XAIConfig(ProviderConfig):
    """xAI Grok configuration (OpenAI-compatible API)."""
    provider: LLMProvider = LLMProvider.XAI
    base_url: str = "https://api.x.ai/v1"
    default_model: str = "grok-4-fast-reasoning"

    @property
    def available_models(self) -> Dict[str, Dict[str, Any]]:
        return XAI_MODELS


class MistralConfig(ProviderConfig):
    """Mistral configuration (OpenAI-compatible chat completions)."""
    provider: LLMProvider = LLMProvider.MISTRAL
    base_url: str = "https://api.mistral.ai/v1"
    default_model: str = "mistral-medium-latest"

    @property
    def available_models(self) -> Dict[str, Dict[str, Any]]:
        return MISTRAL_MODELS


# ============================================================================
# Role Model Assignment
# ============================================================================

class RoleModelConfig(BaseModel):
    """Model and sampling parameters for one service role."""
    provider: LLMProvider
    model: str
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1000, ge=1)


class RoleModelAssignments(BaseModel):
    """Which model serves each generation role."""
    primary_author: RoleModelConfig = Field(
        default_factory=lambda: RoleModelConfig(
            provider=LLMProvider.OPENAI, model="gpt-4o-mini", temperature=0.7, max_tokens=1500
        )
    )
    # Conservative parameters for the one-shot author fallback
    fallback_author: RoleModelConfig = Field(
        default_factory=lambda: RoleModelConfig(
            provider=LLMProvider.GEMINI, model="gemini-2.0-flash", temperature=0.5, max_tokens=1500
        )
    )
    scene_renderer: RoleModelConfig = Field(
        default_factory=lambda: RoleModelConfig(
            provider=LLMProvider.XAI, model="grok-4-fast-reasoning", temperature=0.8, max_tokens=1000
        )
    )
    fallback_renderer: RoleModelConfig = Field(
        default_factory=lambda: RoleModelConfig(
            provider=LLMProvider.MISTRAL, model="mistral-medium-latest", temperature=0.7, max_tokens=1000
        )
    )

    def for_role(self, role: ServiceRole) -> RoleModelConfig:
        return getattr(self, role.value)


class OrchestrationSettings(BaseModel):
    """Tunables for the per-turn orchestration controller."""
    api_timeout_seconds: float = Field(default=60.0, gt=0)
    sd_authoring_enabled: bool = True
    specialist_renderer_enabled: bool = True
    # Scene directive authoring runs on the renderer roles with tighter limits
    sd_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    sd_max_tokens: int = Field(default=500, ge=1)
    cascade_min_output_chars: int = Field(default=40, ge=1)
    continuity_excerpt_words: int = Field(default=150, ge=1)
    default_cascade_cap: int = Field(default=3, ge=1)


class LensSettings(BaseModel):
    """Tunables for lens assignment and the anti-repetition history."""
    pacing_variation_penalty: float = Field(default=0.15, ge=0.0, le=1.0)
    history_cap: int = Field(default=10, ge=1)
    recent_window: int = Field(default=5, ge=1)


# ============================================================================
# Master Configuration
# ============================================================================

class LLMConfiguration(BaseModel):
    """Master configuration with all providers and orchestration settings."""

    openai: Optional[OpenAIConfig] = None
    openrouter: Optional[OpenRouterConfig] = None
    gemini: Optional[GeminiConfig] = None
    claude: Optional[ClaudeConfig] = None
    xai: Optional[XAIConfig] = None
    mistral: Optional[MistralConfig] = None

    role_models: RoleModelAssignments = Field(default_factory=RoleModelAssignments)
    orchestration: OrchestrationSettings = Field(default_factory=OrchestrationSettings)
    lenses: LensSettings = Field(default_factory=LensSettings)

    redis_url: Optional[str] = None

    def get_provider_config(self, provider: LLMProvider) -> Optional[ProviderConfig]:
        """Get configuration for a specific provider."""
        provider_map = {
            LLMProvider.OPENAI: self.openai,
            LLMProvider.OPENROUTER: self.openrouter,
            LLMProvider.GEMINI: self.gemini,
            LLMProvider.CLAUDE: self.claude,
            LLMProvider.XAI: self.xai,
            LLMProvider.MISTRAL: self.mistral,
        }
        return provider_map.get(provider)

    def get_enabled_providers(self) -> List[LLMProvider]:
        """Get list of enabled providers."""
        enabled = []
        for provider in LLMProvider:
            provider_config = self.get_provider_config(provider)
            if provider_config and provider_config.enabled:
                enabled.append(provider)
        return enabled

    def get_role_model(self, role: ServiceRole) -> RoleModelConfig:
        """Get the model config for a role, enforcing the role allowlist."""
        role_config = self.role_models.for_role(role)
        if role_config.model not in ROLE_MODEL_ALLOWLIST[role]:
            raise ModelNotAllowedError(role, role_config.model)
        return role_config

    def validate_role_models(self) -> List[str]:
        """Validate that every role model is allowlisted and served by an enabled provider."""
        errors = []
        for role in ServiceRole:
            role_config = self.role_models.for_role(role)
            provider = role_config.provider
            provider_config = self.get_provider_config(provider)
            if role_config.model not in ROLE_MODEL_ALLOWLIST[role]:
                errors.append(f"{role.value}: Model {role_config.model} is not allowed for this role")
            if not provider_config:
                errors.append(f"{role.value}: Provider {provider.value} is not configured")
            elif not provider_config.enabled:
                errors.append(f"{role.value}: Provider {provider.value} is disabled")
            elif role_config.model not in provider_config.available_models:
                errors.append(f"{role.value}: Model {role_config.model} not available for {provider.value}")
        return errors


# ============================================================================
# Helper Functions
# ============================================================================

def _role_override(role: ServiceRole, current: RoleModelConfig) -> RoleModelConfig:
    prefix = f"STORYLOOM_{role.value.upper()}"
    updates: Dict[str, Any] = {}
    if os.getenv(f"{prefix}_PROVIDER"):
        updates["provider"] = LLMProvider(os.getenv(f"{prefix}_PROVIDER"))
    if os.getenv(f"{prefix}_MODEL"):
        updates["model"] = os.getenv(f"{prefix}_MODEL")
    if not updates:
        return current
    return current.model_copy(update=updates)


def create_default_config_from_env() -> LLMConfiguration:
    """Create configuration from environment variables."""
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

    if os.getenv("XAI_API_KEY"):
        config.xai = XAIConfig(
            api_key=SecretStr(os.getenv("XAI_API_KEY")),
        )

    if os.getenv("MISTRAL_API_KEY"):
        config.mistral = MistralConfig(
            api_key=SecretStr(os.getenv("MISTRAL_API_KEY")),
        )

    for role in ServiceRole:
        setattr(config.role_models, role.value, _role_override(role, config.role_models.for_role(role)))

    if os.getenv("API_TIMEOUT_SECONDS"):
        config.orchestration.api_timeout_seconds = float(os.getenv("API_TIMEOUT_SECONDS"))
    if os.getenv("CASCADE_DEFAULT_CAP"):
        config.orchestration.default_cascade_cap = int(os.getenv("CASCADE_DEFAULT_CAP"))
    if os.getenv("SD_AUTHORING_ENABLED"):
        config.orchestration.sd_authoring_enabled = os.getenv("SD_AUTHORING_ENABLED").lower() in ("1", "true", "yes")

    config.redis_url = os.getenv("REDIS_URL")

    return config
