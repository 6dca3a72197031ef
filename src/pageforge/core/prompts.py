"""Prompt vocabulary and construction for coloring-book pages.

This module owns the style, complexity and audience vocabularies and turns a
user's scene description into the full text prompt sent to an image model.

Complexity Clamping
-------------------
Every audience has a maximum complexity.  A request for more detail than
the audience supports is silently lowered to that maximum, so toddlers never
get a 150-region page.

Aspect Ratios
-------------
Pages are described by a named page size (``square``, ``portrait``,
``landscape``, ``letter``, ``a4``) or directly by a ratio string.  Print
ratios (``17:22`` for US Letter, ``210:297`` for A4) are kept in the prompt
text for layout guidance but sent to the model as the nearest supported
ratio (see :func:`api_aspect_ratio`).
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StyleSpec:
    keyword: str
    line_weight: str
    requirements: tuple[str, ...]
    role: str = "You are an expert digital illustrator."


@dataclass(frozen=True)
class ComplexitySpec:
    region_range: str
    background_rule: str
    detail_level: str


@dataclass(frozen=True)
class AudienceSpec:
    max_complexity: str
    content_guidance: str


STYLES: dict[str, StyleSpec] = {
    "Cozy": StyleSpec(
        keyword="Bold and Easy coloring book page, thick uniform black marker outlines",
        line_weight="extremely thick uniform monoline (2-3mm), no line variation",
        requirements=(
            "Simple rounded blob-like characters with dot eyes",
            "Large open coloring areas and plenty of white space",
            "No textures, no thin lines",
        ),
        role="You are a Scandinavian lifestyle illustrator creating warmth and comfort.",
    ),
    "HandDrawn": StyleSpec(
        keyword="Hand-drawn hygge coloring book, extra-thick felt-tip marker lines",
        line_weight="ultra-thick felt-tip lines with a slight organic wobble",
        requirements=(
            "Cozy domestic scenes with gentle characters",
            "Minimal detail and large open areas",
        ),
    ),
    "Kawaii": StyleSpec(
        keyword="Super deformed kawaii coloring page, chibi proportions",
        line_weight="uniform thick monoline (felt-tip marker style)",
        requirements=(
            "Two-head body ratio with stubby limbs",
            "Soft rounded forms, every area enclosed and colorable",
        ),
    ),
    "Whimsical": StyleSpec(
        keyword="Whimsical storybook illustration coloring page, fairy tale aesthetic",
        line_weight="flowing variable lines with Art Nouveau influence",
        requirements=(
            "Curvilinear organic composition",
            "Full body visible, no cropped heads or feet",
        ),
    ),
    "Cartoon": StyleSpec(
        keyword="Western cartoon style coloring page, Saturday morning cartoon",
        line_weight="thick uniform outlines (vector art style)",
        requirements=("Clear silhouettes", "Squash and stretch limbs"),
    ),
    "Botanical": StyleSpec(
        keyword="Antique botanical illustration, scientific plate",
        line_weight="fine 0.3mm technical pen lines",
        requirements=("Morphological accuracy", "Clean unbroken lines, isolated on white"),
    ),
    "Realistic": StyleSpec(
        keyword="Scientific illustration, 19th-century steel engraving",
        line_weight="variable width ink lines with crisp edges",
        requirements=("Biologically accurate proportions", "High-contrast black and white only"),
        role="Act as a scientific illustrator creating a museum-quality steel engraving.",
    ),
    "Geometric": StyleSpec(
        keyword="Geometric abstraction coloring page",
        line_weight="uniform straight lines (0.8mm)",
        requirements=("Only straight lines, no curves", "Faceted low-poly construction"),
        role="You are a professional vector illustrator obsessed with Euclidean geometry.",
    ),
    "Fantasy": StyleSpec(
        keyword="Fantasy RPG concept art, vector line art",
        line_weight="bold outer contours with fine inner details",
        requirements=("Heroic proportions and dynamic poses", "Detailed focal points, clean rest areas"),
        role="You are a professional fantasy concept artist for a high-end RPG rulebook.",
    ),
    "Gothic": StyleSpec(
        keyword="Gothic style line art",
        line_weight="fine to medium varied lines",
        requirements=("Ornate decorative details", "Intricate patterns drawn as outlined shapes"),
        role="You are a master woodcut engraver from the Victorian era.",
    ),
    "StainedGlass": StyleSpec(
        keyword="Tiffany style stained glass coloring page",
        line_weight="thick bold uniform lines (simulating lead cames)",
        requirements=("Segmented composition", "Closed shapes only"),
        role="You are an expert stained glass artist designing a template for a leaded glass window.",
    ),
    "Mandala": StyleSpec(
        keyword="Sacred geometry mandala, kaleidoscopic pattern",
        line_weight="precise vector lines",
        requirements=("Perfect symmetry", "Closed-loop tessellation", "Center-focused with white margins"),
        role="You are a sacred geometry architect.",
    ),
    "Zentangle": StyleSpec(
        keyword="Zentangle inspired art, Micron 05 pen",
        line_weight="uniform monoline (Micron 05 style)",
        requirements=("Subject acts as a container for patterns", "Each segment filled with a distinct tangle"),
    ),
}

COMPLEXITY_ORDER: tuple[str, ...] = (
    "Very Simple",
    "Simple",
    "Moderate",
    "Intricate",
    "Extreme Detail",
)

COMPLEXITIES: dict[str, ComplexitySpec] = {
    "Very Simple": ComplexitySpec(
        region_range="3-8 large colorable regions",
        background_rule="Pure white background with no background elements",
        detail_level="Single iconic subject. Minimum region size 10mm.",
    ),
    "Simple": ComplexitySpec(
        region_range="15-30 large colorable regions",
        background_rule="Clear background with essential context only",
        detail_level="Focus on main subject. Minimum region size 5mm.",
    ),
    "Moderate": ComplexitySpec(
        region_range="40-80 colorable regions",
        background_rule="Full scene with foreground, midground and background",
        detail_level="Complete scene. Minimum region size 3mm.",
    ),
    "Intricate": ComplexitySpec(
        region_range="80-120 colorable regions",
        background_rule="Detailed environment throughout",
        detail_level="Rich detailed scene. Minimum region size 2mm.",
    ),
    "Extreme Detail": ComplexitySpec(
        region_range="120-150+ colorable regions",
        background_rule="Maximum detail throughout",
        detail_level="Expert-level complexity. Minimum region size 1mm.",
    ),
}

AUDIENCES: dict[str, AudienceSpec] = {
    "toddlers": AudienceSpec(
        max_complexity="Very Simple",
        content_guidance="Single friendly recognizable object, no scary elements",
    ),
    "preschool": AudienceSpec(
        max_complexity="Simple",
        content_guidance="Friendly characters, simple scenes, clear definition",
    ),
    "kids": AudienceSpec(
        max_complexity="Moderate",
        content_guidance="Fun engaging scenes, adventure themes, ages 6-12",
    ),
    "teens": AudienceSpec(
        max_complexity="Intricate",
        content_guidance="Stylish dynamic scenes for ages 13-17",
    ),
    "adults": AudienceSpec(
        max_complexity="Extreme Detail",
        content_guidance="Sophisticated artistic designs for relaxation",
    ),
    "seniors": AudienceSpec(
        max_complexity="Moderate",
        content_guidance="High clarity, distinct sections, nostalgic themes, no tiny details",
    ),
}

PAGE_SIZE_RATIOS: dict[str, str] = {
    "square": "1:1",
    "portrait": "3:4",
    "landscape": "4:3",
    "letter": "17:22",
    "a4": "210:297",
}

# Print ratios the image model does not accept directly
_API_RATIO_FALLBACKS: dict[str, str] = {
    "17:22": "3:4",
    "210:297": "3:4",
}

_FRAMING: dict[str, str] = {
    "17:22": 'Vertical portrait composition (8.5" x 11"). Tall aspect ratio (17:22). Fit full height.',
    "210:297": "Vertical portrait composition (A4). Tall aspect ratio. Fit full height.",
    "3:4": "Vertical portrait composition (3:4). Tall aspect ratio. Fit full height.",
    "4:3": "Horizontal landscape composition. Wide aspect ratio.",
    "1:1": "Square composition (1:1). Balanced height and width.",
}

STYLE_REFERENCE_INSTRUCTION = (
    "STYLE REFERENCE: Study the uploaded reference image(s) carefully. Match their exact "
    "line weight, artistic style, density, and overall aesthetic while creating the new scene."
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def aspect_ratio_for_page_size(page_size: str) -> str:
    """Map a named page size to its ratio string.

    Ratio strings pass through unchanged; unknown names fall back to 1:1.
    """
    if ":" in page_size:
        return page_size
    return PAGE_SIZE_RATIOS.get(page_size.lower(), "1:1")


def api_aspect_ratio(aspect_ratio: str) -> str:
    """Return the ratio to send to the image model for ``aspect_ratio``."""
    ratio = aspect_ratio_for_page_size(aspect_ratio)
    return _API_RATIO_FALLBACKS.get(ratio, ratio)


def effective_complexity(complexity: str, audience: str) -> str:
    """Clamp ``complexity`` to the maximum the audience supports.

    Unknown complexities or audiences are returned unchanged.
    """
    audience_spec = AUDIENCES.get(audience)
    if audience_spec is None or complexity not in COMPLEXITY_ORDER:
        return complexity
    if COMPLEXITY_ORDER.index(complexity) > COMPLEXITY_ORDER.index(audience_spec.max_complexity):
        return audience_spec.max_complexity
    return complexity


def build_prompt(
    user_prompt: str,
    style: str,
    complexity: str,
    audience: str,
    aspect_ratio: str = "1:1",
    *,
    requires_text: bool = False,
    hero_name: str | None = None,
) -> tuple[str, str]:
    """Build the full generation prompt for a page.

    Args:
        user_prompt: Scene description
        style: Style id (see :data:`STYLES`)
        complexity: Requested complexity label
        audience: Audience id (see :data:`AUDIENCES`)
        aspect_ratio: Ratio string or named page size
        requires_text: Whether the page must contain legible lettering
        hero_name: Recurring character to feature, if any

    Returns:
        Tuple of (prompt text, effective complexity after clamping)
    """
    style_spec = STYLES.get(style) or StyleSpec(
        keyword=f"{style} coloring book page",
        line_weight="clean uniform black outlines",
        requirements=(),
    )
    clamped = effective_complexity(complexity, audience)
    complexity_spec = COMPLEXITIES.get(clamped, COMPLEXITIES["Moderate"])
    audience_spec = AUDIENCES.get(audience)

    ratio = aspect_ratio_for_page_size(aspect_ratio)
    framing = _FRAMING.get(ratio, "Full-bleed composition filling the entire canvas.")

    style_rules = ". ".join((style_spec.line_weight, *style_spec.requirements))
    lines = [
        f"ROLE: {style_spec.role}",
        f"TASK: Generate a high-quality {style_spec.keyword}. Designed for {audience} audience.",
        "",
        "SUBJECT (draw exactly this, nothing else):",
        user_prompt,
        "",
    ]
    if hero_name:
        lines.append(f"MAIN CHARACTER: {hero_name}, drawn consistently with earlier pages.")
    if audience_spec is not None:
        lines.append(f"AUDIENCE: {audience_spec.content_guidance}")
    lines.extend(
        [
            f"STYLE: {style_rules}.",
            (
                f"COMPOSITION: {complexity_spec.region_range}. "
                f"{complexity_spec.background_rule}. {complexity_spec.detail_level}"
            ),
            f"LAYOUT: {framing} No borders. No frames. Direct 2D flat view.",
            (
                "TEXT: Include the requested lettering as clean outlined letters."
                if requires_text
                else "TEXT: No text, letters or numbers."
            ),
            "",
            "OUTPUT: A printable black-and-white coloring book page.",
            "- Pure black lines on a pure white background, two values only",
            "- No gray, shading, gradients, textures or colors",
            "- Every shape fully enclosed with no gaps",
        ]
    )
    return "\n".join(lines), clamped


_COLOR_WORDS = re.compile(
    r"\b(red|blue|green|yellow|purple|orange|pink|brown|colored|colorful"
    r"|shading|shaded|gradient|tinted|hued)\b",
    re.IGNORECASE,
)


def scrub_color_words(text: str) -> str:
    """Remove colour and shading words an enhancer may have slipped in."""
    return " ".join(_COLOR_WORDS.sub("", text).split())
