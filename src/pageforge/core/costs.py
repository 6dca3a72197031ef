"""Cost estimation for page generation.

Prices are per backend call and depend only on the output resolution tier.
Every attempt is billed, so retries multiply the cost of a page.
"""

from __future__ import annotations

from pageforge.core.models import ResolutionTier

COST_PER_GENERATION: dict[str, float] = {
    "1K": 0.02,
    "2K": 0.04,
    "4K": 0.08,
}

COMPLEXITY_TO_RESOLUTION: dict[str, ResolutionTier] = {
    "Very Simple": "1K",
    "Simple": "1K",
    "Moderate": "2K",
    "Intricate": "2K",
    "Extreme Detail": "4K",
}

DEFAULT_RESOLUTION: ResolutionTier = "2K"
DEFAULT_EXPECTED_ATTEMPTS = 1.5


def resolution_for(complexity: str) -> ResolutionTier:
    """Map a complexity label to its resolution tier (2K when unknown)."""
    return COMPLEXITY_TO_RESOLUTION.get(complexity, DEFAULT_RESOLUTION)


def estimate_cost(resolution: str, attempts: int = 1) -> float:
    """Estimate the cost of ``attempts`` generations at ``resolution``.

    Args:
        resolution: Resolution tier ("1K", "2K" or "4K").  Unknown tiers
            are priced as 2K.
        attempts: Number of backend calls made.

    Returns:
        Cost in USD.  Zero attempts cost nothing.
    """
    if attempts <= 0:
        return 0.0
    per_call = COST_PER_GENERATION.get(resolution, COST_PER_GENERATION[DEFAULT_RESOLUTION])
    return per_call * attempts


def estimate_batch_cost(
    page_count: int,
    complexity: str,
    expected_attempts: float = DEFAULT_EXPECTED_ATTEMPTS,
) -> float:
    """Estimate the total cost of a book before generating it.

    Args:
        page_count: Number of pages in the book.
        complexity: Complexity label shared by every page.
        expected_attempts: Average backend calls per page.

    Returns:
        Estimated cost in USD.
    """
    if page_count <= 0:
        return 0.0
    per_call = COST_PER_GENERATION[resolution_for(complexity)]
    return per_call * expected_attempts * page_count
