"""Core functionality for coloring-book page generation.

This module provides the core components of pageforge:

- **Generation backends**: pluggable image generators behind one interface
- **backend_registry**: registry for discovering and instantiating backends
- **GenerationOrchestrator**: enhance-then-generate pipeline for one page
- **BatchScheduler**: whole-book runs with the session style reference
- **ArtifactCache**: size-capped LRU cache of generated images
- **PageforgeConfig** / **config**: settings loaded from PAGEFORGE_* variables

Architecture Overview
---------------------
The core module follows a layered architecture:

1. **Configuration Layer** (config.py):
   - Environment-based configuration using Pydantic Settings
   - All settings prefixed with PAGEFORGE_ in .env files

2. **Backend Layer** (backend.py, adapters/):
   - ``GenerationBackend`` and ``PromptEnhancer`` interfaces
   - Gemini (remote, httpx) and placeholder (offline, Pillow) implementations
   - Prompt vocabulary and construction (prompts.py)

3. **Pipeline Layer** (orchestrator.py, quality.py, costs.py):
   - Phase-by-phase generation with progress callbacks and retries
   - Grayscale-shading grading of finished pages
   - Per-attempt cost estimation

4. **Batch Layer** (scheduler.py, cancellation.py):
   - Sequential and bounded-concurrent book generation
   - Cooperative cancellation with partial results

5. **Storage Layer** (cache.py, persistence.py, library.py, usage.py):
   - SQLite-backed artifact cache with LRU eviction and handle revocation
   - Object storage plus project records for durable pages
   - Process-lifetime usage counters

Usage Example
-------------
    from pageforge.core import backend_registry, config
    from pageforge.core.orchestrator import GenerationOrchestrator
    from pageforge.core.models import GenerationRequest

    backend = backend_registry.instantiate("placeholder", config)
    orchestrator = GenerationOrchestrator(backend, backend.create_enhancer())
    result = await orchestrator.run(
        GenerationRequest("a fox in a forest", "Cozy", "Moderate", "kids")
    )

See Also
--------
- GenerationBackend: Base class for backends
- PageforgeConfig: Configuration options and environment variables
"""

# Import adapters to ensure they're registered
from pageforge.core.adapters import GeminiBackend, PlaceholderBackend  # noqa: F401
from pageforge.core.backend import GenerationBackend, PromptEnhancer, backend_registry
from pageforge.core.config import PageforgeConfig, config

__all__ = [
    "GenerationBackend",
    "PromptEnhancer",
    "backend_registry",
    "PageforgeConfig",
    "config",
]
