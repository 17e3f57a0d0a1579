"""Provider registry: maps provider kinds to Provider instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..models import ProviderKind, ProviderStatus
from .base import Provider

if TYPE_CHECKING:
    from ..yaml_config import ProviderConfig

logger = logging.getLogger(__name__)


def parse_provider_kind(value: str | ProviderKind) -> ProviderKind:
    """Accept 'claude_code', 'claude', 'amp' or a ProviderKind."""
    if isinstance(value, ProviderKind):
        return value
    normalized = value.strip().lower().replace("-", "_")
    if normalized in {"claude", "claude_code"}:
        return ProviderKind.CLAUDE_CODE
    try:
        return ProviderKind(normalized)
    except ValueError:
        valid = ", ".join(k.value for k in ProviderKind)
        raise ValueError(
            f"Unknown provider '{value}'. Valid providers: {valid}"
        ) from None


class ProviderRegistry:
    """Registry of agent CLI providers keyed by ProviderKind."""

    def __init__(self, default: ProviderKind = ProviderKind.CLAUDE_CODE) -> None:
        self._providers: dict[ProviderKind, Provider] = {}
        self._default = default

    def register(self, provider: Provider) -> None:
        """Register a provider under its own kind."""
        self._providers[provider.kind] = provider
        logger.debug("Provider registered: %s", provider.name)

    def get(self, kind: ProviderKind | str | None = None) -> Provider | None:
        """Get a provider, or the default one when kind is None."""
        if kind is None:
            kind = self._default
        return self._providers.get(parse_provider_kind(kind))

    def get_or_raise(self, kind: ProviderKind | str | None = None) -> Provider:
        provider = self.get(kind)
        if provider is None:
            available = ", ".join(k.value for k in self._providers)
            raise KeyError(
                f"Provider '{kind or self._default.value}' not registered. "
                f"Available: {available or 'none'}"
            )
        return provider

    @property
    def default_kind(self) -> ProviderKind:
        return self._default

    def list_kinds(self) -> list[ProviderKind]:
        return list(self._providers)

    async def availability_report(self) -> dict[ProviderKind, ProviderStatus]:
        """Check every registered provider and log the result."""
        report: dict[ProviderKind, ProviderStatus] = {}
        for kind, provider in self._providers.items():
            status = await provider.check_available()
            report[kind] = status
            if status.available:
                logger.info("Provider %s is available", kind.value)
            else:
                logger.warning(
                    "Provider %s unavailable (%s): %s",
                    kind.value,
                    status.error_kind.value if status.error_kind else "unknown",
                    status.error,
                )
        return report

    @property
    def count(self) -> int:
        return len(self._providers)


def build_provider_registry(
    provider_configs: dict[str, ProviderConfig] | None = None,
    default: ProviderKind | str = ProviderKind.CLAUDE_CODE,
) -> ProviderRegistry:
    """Build a ProviderRegistry, applying YAML-sourced overrides.

    Every known provider is registered; a config entry only changes its
    command or adds extra arguments.
    """
    from .amp_provider import AmpProvider
    from .claude_provider import ClaudeCodeProvider

    factories = {
        ProviderKind.CLAUDE_CODE: ClaudeCodeProvider,
        ProviderKind.AMP: AmpProvider,
    }
    overrides: dict[ProviderKind, ProviderConfig] = {}
    for name, cfg in (provider_configs or {}).items():
        try:
            overrides[parse_provider_kind(cfg.type or name)] = cfg
        except ValueError:
            logger.warning(
                "Unknown provider type '%s' for '%s', skipping",
                cfg.type, name,
            )

    registry = ProviderRegistry(default=parse_provider_kind(default))
    for kind, factory in factories.items():
        cfg = overrides.get(kind)
        if cfg is None:
            registry.register(factory())
        else:
            registry.register(factory(command=cfg.command, extra_args=cfg.args))
    return registry
