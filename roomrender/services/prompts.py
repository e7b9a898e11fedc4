from __future__ import annotations

from typing import Any


_BASE_INSTRUCTION = (
    "Place the product from the second image into the room shown in the first image. "
    "Keep the room's perspective, lighting and shadows consistent, keep the product's "
    "shape, color and proportions unchanged, and do not add other objects."
)

_PLACEMENT_KEYS = ("anchor", "x", "y", "scale", "rotation", "surface")


def describe_placement(placement: dict[str, Any] | None) -> str | None:
    if not placement:
        return None
    parts = [f"{key}={placement[key]}" for key in _PLACEMENT_KEYS if placement.get(key) is not None]
    extra = sorted(key for key in placement if key not in _PLACEMENT_KEYS)
    parts.extend(f"{key}={placement[key]}" for key in extra)
    return ", ".join(parts) if parts else None


def build_composite_prompt(facts: dict[str, Any], spec: dict[str, Any]) -> str:
    """Compose the provider prompt from resolved product facts and one variant spec."""
    product = facts.get("product") or {}
    lines = [_BASE_INSTRUCTION]
    title = product.get("title")
    if title:
        lines.append(f"Product: {title}.")
    instructions = product.get("render_instructions")
    if instructions:
        lines.append(f"Merchant instructions: {instructions}")
    hints = describe_placement(product.get("placement_hints"))
    if hints:
        lines.append(f"Default placement: {hints}.")
    placement = describe_placement(spec.get("placement"))
    if placement:
        lines.append(f"Placement for this variant: {placement}.")
    style_hint = spec.get("style_hint")
    if style_hint:
        lines.append(f"Style: {style_hint}")
    return "\n".join(lines)
