from __future__ import annotations

from app.services.providers.base import ProviderAdapter
from app.services.providers.registry import ADAPTER_CLASSES, ProviderRegistry, build_provider_registry

__all__ = ["ProviderAdapter", "ProviderRegistry", "ADAPTER_CLASSES", "build_provider_registry"]
