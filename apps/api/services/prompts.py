"""Prompt builders for each generation stage."""

import re
from typing import Any, Dict, List, Optional

from services.storage import ProductRecord

GENERATION_MODE_INSTRUCTIONS = {
    "black_and_white": (
        "GENERATION STYLE: BLACK & WHITE SKETCH\n"
        "- Render as a black and white technical illustration using only grayscale tones\n"
        "- Clean, professional hand-drawn line work with subtle pencil-like shading\n"
        "- White or light gray background\n"
        "- Ignore any color references in the prompt"
    ),
    "minimalist": (
        "GENERATION STYLE: MINIMALIST\n"
        "- Limited palette of 2-3 colors\n"
        "- Simple, uncluttered composition with flat or subtle shading"
    ),
    "detailed": (
        "GENERATION STYLE: HIGHLY DETAILED\n"
        "- Maximum detail and realism with visible material variation\n"
        "- Realistic shadows and highlights, product photography quality"
    ),
}

VIEW_ROTATIONS = {
    "back": "rotate it 180 degrees to show the BACK of the product",
    "side": "rotate it 90 degrees to show the RIGHT SIDE profile of the product",
    "top": "view it from directly ABOVE to show the TOP of the product",
    "bottom": "view it from directly BELOW to show the BOTTOM of the product",
}

LOGO_MENTION = re.compile(r"logo|brand|emblem|mark", re.IGNORECASE)

CLOSEUP_SHOTS = [
    "primary material texture",
    "stitching and seams",
    "hardware and fasteners",
    "logo and branding placement",
    "edge finishing",
    "functional details",
    "interior construction",
    "trims and accents",
]


def generation_mode_instructions(generation_mode: Optional[str]) -> str:
    if not generation_mode or generation_mode == "regular":
        return ""
    return GENERATION_MODE_INSTRUCTIONS.get(generation_mode, "")


def _logo_instructions(product: ProductRecord) -> str:
    if not product.logo_url:
        return ""
    return "Place the provided logo on the product exactly as shown in the logo reference; do not redraw or restyle it."


def _feature_lines(features: Optional[Dict[str, Any]]) -> List[str]:
    if not features:
        return ["- Match colors, materials and details directly from the reference images"]

    def _join(values: List[Any]) -> str:
        names = []
        for value in values:
            if isinstance(value, dict):
                names.append(" ".join(str(part) for part in (value.get("name"), value.get("hex")) if part))
            else:
                names.append(str(value))
        return ", ".join(name for name in names if name)

    lines = []
    colors = _join(features.get("colors") or [])
    materials = _join(features.get("materials") or [])
    elements = _join(features.get("key_elements") or [])
    lines.append(f"- Main colors: {colors}" if colors else "- Sample the exact colors from the reference image")
    lines.append(f"- Materials: {materials}" if materials else "- Materials: as visible in the reference")
    lines.append(f"- Key features: {elements}" if elements else "- Key features: as visible in the reference")
    if features.get("description"):
        lines.append(f"- Description: {features['description']}")
    return lines


def _compose(*sections: str) -> str:
    return "\n\n".join(section.strip() for section in sections if section and section.strip())


def build_front_view_prompt(
    product: ProductRecord,
    user_prompt: str,
    *,
    feedback: Optional[str] = None,
    has_reference: bool = False,
) -> str:
    task = (
        "Edit the provided front view of this product according to the requested changes. "
        "Keep everything that was not mentioned exactly as it is."
        if has_reference
        else "Generate a single FRONT VIEW product image for manufacturing."
    )
    request = f"PRODUCT: {product.name}\nREQUEST: {user_prompt.strip()}"
    if feedback:
        request += f"\nREQUESTED CHANGES: {feedback.strip()}"
    return _compose(
        task,
        request,
        generation_mode_instructions(product.generation_mode),
        _logo_instructions(product),
        "OUTPUT: centered product, straight-on front angle, plain white background, no text or watermarks.",
    )


def build_view_prompt(view_type: str, product: ProductRecord, features: Optional[Dict[str, Any]]) -> str:
    rotation = VIEW_ROTATIONS[view_type]
    return _compose(
        "IMAGE TRANSFORMATION TASK: the reference image IS the product. Do not reimagine it.",
        "THE REFERENCE IMAGE SHOWS:\n" + "\n".join(_feature_lines(features)),
        f"YOUR TASK: take the exact product shown in the reference image and {rotation}.",
        "Keep the exact shape, colors, materials, proportions, style and lighting of the reference.",
        generation_mode_instructions(product.generation_mode),
        _logo_instructions(product),
        f"OUTPUT: {view_type} view only, plain white background, no text.",
    )


def closeup_shots(count: int) -> List[str]:
    return CLOSEUP_SHOTS[: max(count, 0)]


def build_closeup_prompt(shot: str, product: ProductRecord, features: Optional[Dict[str, Any]]) -> str:
    return _compose(
        f"Generate a macro close-up photograph of the {shot} of this product ({product.name}).",
        "\n".join(_feature_lines(features)),
        "This close-up must match the exact style, colors, materials and design of the reference product images.",
        "OUTPUT: tightly framed detail shot, neutral background, no text.",
    )


def build_component_prompt(component: str, product: ProductRecord, features: Optional[Dict[str, Any]]) -> str:
    return _compose(
        f"Generate an isolated image of the '{component}' component of this product ({product.name}), "
        "as it would be supplied to a manufacturer before assembly.",
        "\n".join(_feature_lines(features)),
        "Match the component exactly as it appears in the reference product images.",
        "OUTPUT: the single component, centered, plain white background, no text.",
    )


def build_sketch_prompt(view_type: str, product: ProductRecord, features: Optional[Dict[str, Any]]) -> str:
    return _compose(
        f"Create a black and white technical flat sketch of the {view_type} view of this product ({product.name}).",
        "\n".join(_feature_lines(features)),
        f"The sketch must show the {view_type} view of THIS SPECIFIC PRODUCT with every seam, panel and "
        "construction detail visible in the reference images. Do not draw a generic product.",
        "OUTPUT: clean vector-style line art on white, no shading, no text labels.",
    )


def mentions_logo(instructions: Optional[str]) -> bool:
    return bool(instructions and LOGO_MENTION.search(instructions))


def build_single_view_prompt(view_type: str, product: ProductRecord, instructions: str) -> str:
    """Edit one existing view, changing only what the instructions ask for."""
    logo = (
        "A logo reference is provided and should be applied as requested."
        if product.logo_url and mentions_logo(instructions)
        else ""
    )
    return _compose(
        "You are editing an existing product image. The reference image shows its current state.",
        f"TASK: modify the {view_type} view by making ONLY the following change:\n\"{instructions.strip()}\"",
        "RULES:\n"
        "- Start from the reference image; it is the base\n"
        "- Do not add logos, text, patterns or decorations unless explicitly requested\n"
        "- Do not change colors, materials, shapes or features that were not mentioned\n"
        "- Keep proportions, lighting, camera angle and the white background identical",
        logo,
        f"OUTPUT: a photorealistic {view_type} view that matches the reference except for the requested change.",
    )
