"""Design prompt compilation for the generation provider.

Generated artwork is a *design element* meant to be composited onto a
garment template, not a picture of a whole garment.  The prompt therefore
combines the user's concept with a style preset and a fixed block of
technical requirements that keep the output print-ready and self-contained.

Base design structure::

    Create a high-quality graphic design element for [product] customization.
    Design concept: [prompt].
    [Theme and mood: ...]  [Must include elements: ...]  [Primary colour ...]
    Style: [preset modifier].
    Technical requirements: [fixed placement/print block for the view]
    [Avoid: ...]
    [Additional details: ...]

Optional sections are omitted when their value is empty.  Typography
iterations use :func:`build_typography_prompt`, which describes the text,
placement and font treatment to apply on top of an existing design.

Usage
-----
::

    front = build_design_prompt("a roaring tiger logo", product_type="jersey", view="front")
    edit = build_typography_prompt("WILDCATS", focus_area="chest", text_color="gold")
"""

from __future__ import annotations

from designlab.core.errors import ValidationError

STYLE_PRESETS: dict[str, str] = {
    "athletic": "dynamic, energetic, performance-focused, bold typography, athletic wear design",
    "modern": "clean lines, minimalist, contemporary, geometric patterns, modern aesthetic",
    "vintage": "retro aesthetics, classic typography, weathered texture, timeless design",
    "bold": "high contrast, oversized graphics, impactful visual design, statement pieces",
}

DEFAULT_STYLE = "modern"
FOCUS_AREAS: tuple[str, ...] = ("chest", "back", "sleeve", "full")
VIEWS: tuple[str, ...] = ("front", "back")


def _technical_requirements(view: str) -> str:
    return (
        "Technical requirements: "
        f"Create as a standalone design graphic suitable for placement on {view} of sportswear. "
        "High resolution, clean edges, suitable for sublimation printing. "
        f"Design should be self-contained and positioned for {view} placement. "
        "Professional quality, vector-like clarity, vibrant colors."
    )


def resolve_style_modifier(style: str | None, style_modifier: str | None = None) -> str:
    """Return the style text for a preset name or an explicit modifier.

    An explicit *style_modifier* always wins.  Unknown preset names fall back
    to the default preset so that custom style labels never fail a request.
    """
    if style_modifier and style_modifier.strip():
        return style_modifier.strip()
    return STYLE_PRESETS.get(style or DEFAULT_STYLE, STYLE_PRESETS[DEFAULT_STYLE])


def build_design_prompt(
    base_prompt: str,
    *,
    product_type: str | None = None,
    style: str | None = None,
    view: str = "front",
    style_modifier: str | None = None,
    design_theme: str | None = None,
    key_elements: str | None = None,
    primary_color: str | None = None,
    things_to_avoid: str | None = None,
    additional_modifiers: list[str] | None = None,
) -> str:
    """Compile the prompt for one view of a base design.

    Args:
        base_prompt: The user's design concept.  Required.
        product_type: Product the design is for (e.g. ``"jersey"``).
            Defaults to ``"apparel"``.
        style: Style preset name (athletic, modern, vintage, bold).
        view: ``"front"`` or ``"back"``.
        style_modifier: Free-text style overriding the preset.
        design_theme: Theme and mood description.
        key_elements: Elements that must appear.
        primary_color: Colour palette guidance.
        things_to_avoid: Negative guidance.
        additional_modifiers: Extra detail phrases appended at the end.

    Returns:
        The compiled prompt, one sentence group per section.

    Raises:
        ValidationError: If *base_prompt* is empty or *view* is unknown.
    """
    if not base_prompt or not base_prompt.strip():
        raise ValidationError("Base prompt is required")
    if view not in VIEWS:
        raise ValidationError(f"view must be one of: {', '.join(VIEWS)}")

    parts: list[str] = [
        f"Create a high-quality graphic design element for {product_type or 'apparel'} customization.",
        f"Design concept: {base_prompt.strip()}.",
    ]
    if design_theme:
        parts.append(f"Theme and mood: {design_theme}.")
    if key_elements:
        parts.append(f"Must include elements: {key_elements}.")
    if primary_color:
        parts.append(f"Primary color palette based on: {primary_color}.")

    parts.append(f"Style: {resolve_style_modifier(style, style_modifier)}.")
    parts.append(_technical_requirements(view))

    if things_to_avoid:
        parts.append(f"Avoid: {things_to_avoid}.")
    if additional_modifiers:
        parts.append(f"Additional details: {', '.join(additional_modifiers)}.")

    return " ".join(parts)


def build_typography_prompt(
    text_content: str,
    *,
    font_family: str | None = None,
    font_size: str | None = None,
    text_color: str | None = None,
    focus_area: str | None = None,
    style: str | None = None,
) -> str:
    """Compile the edit prompt for a typography iteration.

    Raises:
        ValidationError: If *text_content* is empty or *focus_area* is not
            one of chest, back, sleeve, full.
    """
    if not text_content or not text_content.strip():
        raise ValidationError("Text content is required")

    focus_area = focus_area or "chest"
    if focus_area not in FOCUS_AREAS:
        raise ValidationError(f"focus_area must be one of: {', '.join(FOCUS_AREAS)}")

    return " ".join(
        [
            f'Create a professional sportswear design with typography: "{text_content.strip()}".',
            f"Typography placement: {focus_area} area.",
            f"Font style: {font_family or 'modern athletic'}, {font_size or 'large'} size, "
            f"{text_color or 'white'} color.",
            f"Overall style: {style or 'bold'}, athletic wear aesthetic.",
            "Ensure the typography is prominent, readable, and professionally integrated "
            "into the design.",
        ]
    )
