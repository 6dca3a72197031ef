"""Lightweight quality grading for generated pages.

Coloring pages should be pure black lines on white.  :class:`GrayscaleChecker`
samples the image at reduced resolution and counts pixels that are neither
near-black nor near-white.  Too many of them means the model added shading.

Grading is advisory: an image that cannot be decoded is reported as clean
rather than blocking the page.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field

from PIL import Image, ImageChops, UnidentifiedImageError

logger = logging.getLogger(__name__)

GRAYSCALE_TAG = "grayscale_shading"

# A page carrying any of these tags never becomes the session reference.
DISQUALIFYING_TAGS: frozenset[str] = frozenset(
    {"colored_artifacts", "mockup_style", GRAYSCALE_TAG}
)

BLACK_CEILING = 30
WHITE_FLOOR = 225
OPAQUE_FLOOR = 128


@dataclass(frozen=True)
class QualityReport:
    score: float
    tags: tuple[str, ...] = field(default_factory=tuple)
    gray_percent: float = 0.0
    summary: str = ""

    @property
    def is_clean(self) -> bool:
        return GRAYSCALE_TAG not in self.tags


class GrayscaleChecker:
    """Detect unwanted gray shading in a line-art page.

    Args:
        threshold_percent: Maximum share of gray pixels (0-100) for a clean page
        max_dimension: Longest side the image is downsampled to before counting
    """

    def __init__(self, threshold_percent: float = 5.0, max_dimension: int = 400):
        self.threshold_percent = threshold_percent
        self.max_dimension = max_dimension

    def check(self, data: bytes) -> QualityReport:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image.load()
                rgba = image.convert("RGBA")
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Quality check could not decode image: {e}")
            return QualityReport(score=100.0, summary="Could not analyse image")

        rgba.thumbnail((self.max_dimension, self.max_dimension))
        gray_percent = self._gray_percent(rgba)

        if gray_percent > self.threshold_percent:
            return QualityReport(
                score=max(0.0, min(60.0, 100.0 - 2 * gray_percent)),
                tags=(GRAYSCALE_TAG,),
                gray_percent=gray_percent,
                summary=f"{gray_percent}% gray shading detected",
            )

        if gray_percent == 0:
            summary = "Pure black and white"
        else:
            summary = f"{gray_percent}% gray (below {self.threshold_percent}% threshold)"
        return QualityReport(
            score=100.0 - gray_percent,
            gray_percent=gray_percent,
            summary=summary,
        )

    @staticmethod
    def _gray_percent(rgba: Image.Image) -> float:
        """Share of opaque pixels that are neither near-black nor near-white.

        A pixel is black when its brightest channel is below
        ``BLACK_CEILING`` and white when its darkest channel is above
        ``WHITE_FLOOR``; both are counted from masked histograms.
        """
        r, g, b, alpha = rgba.split()
        opaque = alpha.point([0] * OPAQUE_FLOOR + [255] * (256 - OPAQUE_FLOOR))
        brightest = ImageChops.lighter(ImageChops.lighter(r, g), b)
        darkest = ImageChops.darker(ImageChops.darker(r, g), b)

        brightest_hist = brightest.histogram(mask=opaque)
        total = sum(brightest_hist)
        if not total:
            return 0.0

        black = sum(brightest_hist[:BLACK_CEILING])
        white = sum(darkest.histogram(mask=opaque)[WHITE_FLOOR + 1 :])
        return round((total - black - white) / total * 100, 1)
