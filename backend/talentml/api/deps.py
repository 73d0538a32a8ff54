from talentml.services.registry import ModelRegistry, get_registry


def registry_dependency() -> ModelRegistry:
    """Shared registry without exposing get_registry's arguments as query parameters."""
    return get_registry()
