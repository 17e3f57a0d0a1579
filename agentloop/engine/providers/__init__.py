"""Agent CLI provider abstraction."""
from .base import Provider
from .registry import ProviderRegistry, build_provider_registry, parse_provider_kind
from .claude_provider import ClaudeCodeProvider
from .amp_provider import AmpProvider

__all__ = [
    "Provider",
    "ProviderRegistry",
    "build_provider_registry",
    "parse_provider_kind",
    "ClaudeCodeProvider",
    "AmpProvider",
]
