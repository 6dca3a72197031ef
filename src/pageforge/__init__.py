"""pageforge - AI coloring-book page generation with batching and caching."""

__version__ = "0.1.0"

from pageforge.core.backend import GenerationBackend, backend_registry
from pageforge.core.config import PageforgeConfig, config

# Import adapters to ensure they're registered
from pageforge.core.adapters import GeminiBackend, PlaceholderBackend  # noqa: F401

__all__ = [
    "GenerationBackend",
    "backend_registry",
    "PageforgeConfig",
    "config",
    "GeminiBackend",
    "PlaceholderBackend",
]
