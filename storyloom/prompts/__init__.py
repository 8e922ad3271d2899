"""
Storyloom Prompts Module
System and user prompt templates for every generation role.
"""

from .author import (
    AUTHOR_SYSTEM_PROMPT,
    AUTHOR_USER_PROMPT_TEMPLATE,
    DIRECT_DIRECTIVE_PROTOCOL,
    SPLIT_AUTHORING_PROTOCOL,
    TRIGGER_CONTEXT_TEMPLATE,
)
from .integration import (
    CLIFFHANGER_DIRECTIVE,
    COMPLETION_FORBIDDEN_DIRECTIVE,
    INTEGRATION_SYSTEM_PROMPT,
    INTEGRATION_USER_PROMPT_TEMPLATE,
    INTERRUPTION_DIRECTIVE,
    NO_RENDERED_CONTENT,
)
from .scene import (
    CASCADE_SYSTEM_SUFFIX,
    CASCADE_USER_PROMPT_TEMPLATE,
    COMPLETION_GUARD,
    RENDERER_SYSTEM_PROMPT,
    RENDERER_USER_PROMPT_TEMPLATE,
    SD_AUTHOR_SYSTEM_PROMPT,
    SD_AUTHOR_USER_PROMPT_TEMPLATE,
)

__all__ = [
    "AUTHOR_SYSTEM_PROMPT",
    "AUTHOR_USER_PROMPT_TEMPLATE",
    "DIRECT_DIRECTIVE_PROTOCOL",
    "SPLIT_AUTHORING_PROTOCOL",
    "TRIGGER_CONTEXT_TEMPLATE",
    "CLIFFHANGER_DIRECTIVE",
    "COMPLETION_FORBIDDEN_DIRECTIVE",
    "INTEGRATION_SYSTEM_PROMPT",
    "INTEGRATION_USER_PROMPT_TEMPLATE",
    "INTERRUPTION_DIRECTIVE",
    "NO_RENDERED_CONTENT",
    "CASCADE_SYSTEM_SUFFIX",
    "CASCADE_USER_PROMPT_TEMPLATE",
    "COMPLETION_GUARD",
    "RENDERER_SYSTEM_PROMPT",
    "RENDERER_USER_PROMPT_TEMPLATE",
    "SD_AUTHOR_SYSTEM_PROMPT",
    "SD_AUTHOR_USER_PROMPT_TEMPLATE",
]
