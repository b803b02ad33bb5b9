"""Image Relay - Replicate image generation proxy with durable thumbnail storage."""

__version__ = "0.3.0"

from imagerelay.core.config import RelayConfig, config
from imagerelay.core.model_families import ModelFamilyBase, family_registry

__all__ = [
    "ModelFamilyBase",
    "family_registry",
    "RelayConfig",
    "config",
]
