"""Base classes and registry for generation backends.

A generation backend is the remote (or local) capability that turns a
prompt into a page image.  The orchestrator only depends on the interface
defined here, so the Gemini adapter, the offline placeholder, and test
doubles are interchangeable.

Backend Pattern
---------------
Each backend encapsulates:
- Credential and endpoint handling (``is_configured`` reports whether the
  backend can be called at all)
- Translating the request fields into the provider's wire format
- Classifying failures: a :class:`BackendResult` with ``retryable=True``
  marks a transient problem the orchestrator may retry

Backends never raise for upstream failures; they return an unsuccessful
:class:`BackendResult`.  The only exception allowed to escape is
:class:`~pageforge.core.cancellation.GenerationCancelled`.

Prompt Enhancers
----------------
A :class:`PromptEnhancer` optionally rewrites the user's prompt before
generation.  Each backend may supply a matching enhancer through
:meth:`GenerationBackend.create_enhancer`.

Usage Example
-------------
    >>> from pageforge.core.backend import backend_registry
    >>> from pageforge.core.config import config
    >>>
    >>> backend_registry.list_available()
    ['placeholder', 'gemini']
    >>> backend = backend_registry.instantiate("placeholder", config)
    >>> result = await backend.generate(
    ...     "a friendly dragon",
    ...     style="Cozy",
    ...     complexity="Simple",
    ...     audience="kids",
    ...     aspect_ratio="1:1",
    ...     resolution="1K",
    ... )
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pageforge.core.cancellation import CancellationToken
    from pageforge.core.config import PageforgeConfig
    from pageforge.core.models import ReferenceImage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendResult:
    """Raw outcome of one backend call."""

    success: bool
    data: bytes | None = None
    mime_type: str = "image/png"
    error: str | None = None
    duration_ms: float = 0.0
    prompt_used: str = ""
    retryable: bool = False

    @classmethod
    def failure(cls, error: str, *, retryable: bool = False, **kwargs: Any) -> BackendResult:
        return cls(success=False, error=error, retryable=retryable, **kwargs)


@dataclass(frozen=True)
class EnhanceResult:
    success: bool
    enhanced_prompt: str | None = None
    error: str | None = None


class PromptEnhancer(ABC):
    """Rewrites a user prompt into a richer generation prompt."""

    name: str = "Base Enhancer"

    @abstractmethod
    async def enhance(
        self,
        prompt: str,
        *,
        style: str,
        complexity: str,
        audience: str,
        hints: dict[str, Any] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> EnhanceResult:
        """Return an enhanced prompt.

        Implementations report failure through :class:`EnhanceResult`;
        raising is tolerated (the orchestrator falls back to the original
        prompt) except for cancellation, which must propagate.
        """


class GenerationBackend(ABC):
    """Abstract base class for generation backends.

    Attributes
    ----------
    name : str
        Registry key (matches ``PageforgeConfig.backend``)
    description : str
        Brief description of the backend
    version : str
        Adapter version
    """

    name: str = "base"
    description: str = "Base class for generation backends"
    version: str = "0.1.0"

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Whether the backend has everything it needs to be called.

        Returns
        -------
        bool
            False when a credential or endpoint is missing
        """

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        style: str,
        complexity: str,
        audience: str,
        aspect_ratio: str,
        resolution: str,
        reference_images: tuple[ReferenceImage, ...] = (),
        requires_text: bool = False,
        hero_name: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BackendResult:
        """Generate one page image.

        Args:
            prompt: Text describing the page
            style: Art style id
            complexity: Complexity label
            audience: Target audience id
            aspect_ratio: Ratio string such as "1:1" or "3:4"
            resolution: Resolution tier ("1K", "2K", "4K")
            reference_images: Style anchors, in priority order
            requires_text: Whether the page must contain lettering
            hero_name: Recurring character to feature
            cancel_token: Checked around network calls

        Returns
        -------
        BackendResult
            Image bytes on success, an error description otherwise

        Raises
        ------
        GenerationCancelled
            If the token is cancelled
        """

    def create_enhancer(self) -> PromptEnhancer | None:
        """Return the prompt enhancer paired with this backend, if any."""
        return None

    async def aclose(self) -> None:
        """Release network resources held by the backend."""

    def get_backend_info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "is_configured": self.is_configured,
        }


class BackendRegistry:
    """Registry for discovering and instantiating generation backends.

    Usage
    -----
        >>> backend_registry.register(MyBackend)
        >>> backend = backend_registry.instantiate("my-backend", config)

    Notes
    -----
    - Backends must be registered before they can be instantiated
    - Backend classes take the configuration as their single constructor
      argument
    """

    def __init__(self) -> None:
        self._backends: dict[str, type[GenerationBackend]] = {}

    def register(self, backend_class: type[GenerationBackend]) -> None:
        """Register a backend class under its ``name``.

        Args:
            backend_class: Backend class to register
        """
        backend_name = backend_class.name

        if backend_name in self._backends:
            logger.warning(f"Backend '{backend_name}' is already registered, overwriting")

        self._backends[backend_name] = backend_class
        logger.debug(f"Registered generation backend: {backend_name}")

    def instantiate(self, backend_name: str, config: PageforgeConfig) -> GenerationBackend:
        """Create an instance of a registered backend.

        Args:
            backend_name: Name of the backend to instantiate
            config: Configuration object

        Returns
        -------
        GenerationBackend
            New backend instance

        Raises
        ------
        KeyError
            If backend_name is not registered
        """
        if backend_name not in self._backends:
            available = ", ".join(self.list_available())
            raise KeyError(
                f"Generation backend '{backend_name}' not found. Available backends: {available}"
            )

        instance = self._backends[backend_name](config)
        logger.info(f"Instantiated generation backend: {backend_name}")
        return instance

    def get_backend_class(self, backend_name: str) -> type[GenerationBackend] | None:
        return self._backends.get(backend_name)

    def list_available(self) -> list[str]:
        return list(self._backends.keys())

    def get_backend_info(self, backend_name: str) -> dict[str, Any] | None:
        """Get class-level information about a registered backend.

        Args:
            backend_name: Name of the backend

        Returns
        -------
        dict[str, Any] | None
            Backend metadata or None if not found
        """
        backend_class = self._backends.get(backend_name)
        if backend_class is None:
            return None
        return {
            "name": backend_class.name,
            "description": backend_class.description,
            "version": backend_class.version,
        }


# Global backend registry instance
backend_registry = BackendRegistry()
