"""Offline placeholder backend.

Renders a deterministic black-and-white line-art page with Pillow instead of
calling a remote model.  Used for local development and in tests; the same
prompt always yields the same bytes.
"""

from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import time
from typing import TYPE_CHECKING

from PIL import Image, ImageDraw

from pageforge.core.backend import (
    BackendResult,
    EnhanceResult,
    GenerationBackend,
    PromptEnhancer,
    backend_registry,
)
from pageforge.core.prompts import STYLES, aspect_ratio_for_page_size, scrub_color_words

if TYPE_CHECKING:
    from pageforge.core.cancellation import CancellationToken
    from pageforge.core.config import PageforgeConfig
    from pageforge.core.models import ReferenceImage

logger = logging.getLogger(__name__)

# Long edge in pixels per resolution tier
LONG_EDGE = {"1K": 256, "2K": 384, "4K": 512}


def page_dimensions(aspect_ratio: str, resolution: str) -> tuple[int, int]:
    """Return (width, height) for a ratio string or named page size."""
    long_edge = LONG_EDGE.get(resolution, LONG_EDGE["2K"])
    ratio = aspect_ratio_for_page_size(aspect_ratio)
    try:
        w, h = (float(part) for part in ratio.split(":"))
    except ValueError:
        w, h = 1.0, 1.0
    if w >= h:
        return long_edge, max(1, round(long_edge * h / w))
    return max(1, round(long_edge * w / h)), long_edge


class PlaceholderBackend(GenerationBackend):
    """Deterministic offline backend.

    Args:
        config: Application configuration (unused, accepted for the registry)
        latency_s: Artificial delay per call, honouring cancellation
    """

    name = "placeholder"
    description = "Offline Pillow renderer producing labelled line-art pages"

    def __init__(self, config: PageforgeConfig | None = None, *, latency_s: float = 0.0):
        self.config = config
        self.latency_s = latency_s

    @property
    def is_configured(self) -> bool:
        return True

    def create_enhancer(self) -> PromptEnhancer:
        return TemplateEnhancer()

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
        start = time.perf_counter()
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
            await cancel_token.sleep(self.latency_s)
        elif self.latency_s > 0:
            await asyncio.sleep(self.latency_s)

        width, height = page_dimensions(aspect_ratio, resolution)
        data = render_page(prompt, width, height, label=f"{style} / {complexity}")

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        return BackendResult(
            success=True,
            data=data,
            mime_type="image/png",
            duration_ms=(time.perf_counter() - start) * 1000,
            prompt_used=prompt,
        )


def render_page(prompt: str, width: int, height: int, label: str = "") -> bytes:
    """Draw a pure black-on-white page whose shapes are seeded by ``prompt``."""
    digest = hashlib.sha256(prompt.encode("utf-8")).digest()

    image = Image.new("L", (width, height), 255)
    draw = ImageDraw.Draw(image)
    # Aliased text keeps the page strictly two-valued
    draw.fontmode = "1"

    margin = max(4, min(width, height) // 16)
    stroke = max(2, min(width, height) // 96)
    draw.rectangle(
        [margin, margin, width - margin, height - margin], outline=0, width=stroke
    )

    inner_w = width - 4 * margin
    inner_h = height - 4 * margin
    for i in range(0, 12, 3):
        cx = 2 * margin + digest[i] * inner_w // 255
        cy = 2 * margin + digest[i + 1] * inner_h // 255
        radius = max(6, digest[i + 2] * min(inner_w, inner_h) // 1020)
        draw.ellipse([cx - radius, cy - radius, cx + radius, cy + radius], outline=0, width=stroke)

    if label:
        draw.text((margin + stroke * 2, margin + stroke * 2), label, fill=0)

    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, format="PNG")
    return buffer.getvalue()


class TemplateEnhancer(PromptEnhancer):
    """Rewrites prompts with a fixed template, no network required."""

    name = "template"

    async def enhance(
        self,
        prompt: str,
        *,
        style: str,
        complexity: str,
        audience: str,
        hints: dict | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> EnhanceResult:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        subject = prompt.strip()
        if not subject:
            return EnhanceResult(success=False, error="Empty prompt")

        style_spec = STYLES.get(style)
        flavour = style_spec.keyword if style_spec else f"{style} line art"
        enhanced = f"{subject}. Drawn as {flavour}, a {complexity.lower()} scene for {audience}."
        return EnhanceResult(success=True, enhanced_prompt=scrub_color_words(enhanced))


# Register the backend with the global backend registry
backend_registry.register(PlaceholderBackend)
