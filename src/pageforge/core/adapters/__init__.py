"""Generation backend implementations.

Importing this package registers every backend with
:data:`pageforge.core.backend.backend_registry`.
"""

from pageforge.core.adapters.gemini import GeminiBackend, GeminiEnhancer
from pageforge.core.adapters.placeholder import PlaceholderBackend, TemplateEnhancer

__all__ = [
    "GeminiBackend",
    "GeminiEnhancer",
    "PlaceholderBackend",
    "TemplateEnhancer",
]
