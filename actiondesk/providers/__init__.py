from .base import ActionProvider, ProviderResult
from .google_workspace import GoogleWorkspaceProvider
from .registry import ActionDefinition, ActionRegistry, build_default_registry

__all__ = [
    "ActionDefinition",
    "ActionProvider",
    "ActionRegistry",
    "GoogleWorkspaceProvider",
    "ProviderResult",
    "build_default_registry",
]
