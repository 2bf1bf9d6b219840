"""Validation boundary for page writes.

Every write path runs the candidate page through :func:`validate` before
anything is stored. Rules are checked in a fixed order and the first
violation is raised as :class:`ValidationError`; nothing is ever partially
applied.
"""

import re
from dataclasses import dataclass
from typing import Any

import pydantic

from tokenpage.core.errors import ValidationError
from tokenpage.core.models import DesignStyle, PageRecord

SLUG_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,50}$")
URL_PATTERN = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

MAX_TITLE_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
FONT_SLOTS = ("global", "heading", "paragraph", "links")


@dataclass(frozen=True)
class PresetRule:
    """URL grammar for one link category."""

    prefixes: tuple[str, ...] = ()
    required: bool = False
    label: str = "URL"

    def accepts(self, url: str) -> bool:
        return url.startswith(self.prefixes)


PRESET_RULES: dict[str, PresetRule] = {
    "telegram": PresetRule(("https://t.me/",), label="Telegram URL"),
    "private-chat": PresetRule(("https://t.me/",), required=True, label="Telegram URL"),
    "discord": PresetRule(
        ("https://discord.gg/", "https://discord.com/"), label="Discord URL"
    ),
    "twitter": PresetRule(
        ("https://twitter.com/", "https://x.com/"), label="Twitter URL"
    ),
    "tiktok": PresetRule(
        ("https://tiktok.com/@", "https://www.tiktok.com/@"), label="TikTok URL"
    ),
    "instagram": PresetRule(
        ("https://instagram.com/", "https://www.instagram.com/"),
        label="Instagram URL",
    ),
    "dexscreener": PresetRule(("https://dexscreener.com/",), label="DexScreener URL"),
}


def is_valid_slug(slug: Any) -> bool:
    return isinstance(slug, str) and SLUG_PATTERN.match(slug) is not None


def is_absolute_url(value: str) -> bool:
    return URL_PATTERN.match(value) is not None


def is_email_target(value: str) -> bool:
    """Accept a bare address or a ``mailto:`` URL."""
    if value.startswith("mailto:"):
        return len(value) > len("mailto:")
    return EMAIL_PATTERN.match(value) is not None


def check_item_url(item: dict[str, Any]) -> str | None:
    """Return an error message if the item's url breaks its preset grammar."""
    preset_id = item.get("presetId")
    url = item.get("url")
    rule = PRESET_RULES.get(preset_id)

    if url is None or url == "":
        if rule is not None and rule.required:
            return f"A {rule.label} is required for this item type"
        return None
    if not isinstance(url, str):
        return "URL must be a string"

    if preset_id == "email":
        if not is_email_target(url):
            return "Invalid email format"
        return None
    if rule is not None:
        if not rule.accepts(url):
            return f"Invalid {rule.label}"
        return None
    # Plugins carry their own addressing scheme.
    if not item.get("isPlugin") and not is_absolute_url(url):
        return "Invalid URL format for this item type"
    return None


def _check_optional_str(
    candidate: dict[str, Any], key: str, max_length: int | None = None
) -> None:
    value = candidate.get(key)
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", field=key)
    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{key} must be at most {max_length} characters", field=key
        )


def _check_optional_bool(container: dict[str, Any], key: str, path: str) -> None:
    value = container.get(key)
    if value is not None and not isinstance(value, bool):
        raise ValidationError(f"{key} must be a boolean", field=path)


def _check_fonts(fonts: Any) -> None:
    if fonts is None:
        return
    if not isinstance(fonts, dict):
        raise ValidationError("fonts must be an object", field="fonts")
    for slot, value in fonts.items():
        if slot not in FONT_SLOTS:
            raise ValidationError(f"Unknown font slot '{slot}'", field=f"fonts.{slot}")
        if value is not None and not isinstance(value, str):
            raise ValidationError("Font name must be a string", field=f"fonts.{slot}")


def _check_item(index: int, item: Any, seen_ids: set[str]) -> None:
    path = f"items.{index}"
    if not isinstance(item, dict):
        raise ValidationError("Item must be an object", field=path)

    item_id = item.get("id")
    if not isinstance(item_id, str) or not item_id:
        raise ValidationError("Item id is required", field=f"{path}.id")
    if item_id in seen_ids:
        raise ValidationError(f"Duplicate item id '{item_id}'", field=f"{path}.id")
    seen_ids.add(item_id)

    preset_id = item.get("presetId")
    if not isinstance(preset_id, str) or not preset_id:
        raise ValidationError("Item presetId is required", field=f"{path}.presetId")

    title = item.get("title")
    if title is not None and not isinstance(title, str):
        raise ValidationError("Item title must be a string", field=f"{path}.title")

    order = item.get("order")
    if isinstance(order, float) and order.is_integer():
        # JSON numbers such as 1.0 are integral.
        order = item["order"] = int(order)
    if isinstance(order, bool) or not isinstance(order, int) or order < 0:
        raise ValidationError(
            "Item order must be a non-negative integer", field=f"{path}.order"
        )

    _check_optional_bool(item, "isPlugin", f"{path}.isPlugin")
    _check_optional_bool(item, "tokenGated", f"{path}.tokenGated")

    required_tokens = item.get("requiredTokens")
    if required_tokens is not None and (
        not isinstance(required_tokens, list)
        or not all(isinstance(t, str) for t in required_tokens)
    ):
        raise ValidationError(
            "requiredTokens must be a list of token addresses",
            field=f"{path}.requiredTokens",
        )

    message = check_item_url(item)
    if message is not None:
        raise ValidationError(message, field=f"{path}.url")


def validate(candidate: dict[str, Any]) -> PageRecord:
    """Validate a complete candidate page and return the typed record.

    Raises:
        ValidationError: for the first rule the candidate breaks.
    """
    if not isinstance(candidate, dict):
        raise ValidationError("Page data must be an object")

    if not is_valid_slug(candidate.get("slug")):
        raise ValidationError(
            "Only letters, numbers, and hyphens allowed (1-50 characters)",
            field="slug",
        )

    wallet = candidate.get("walletAddress")
    if not isinstance(wallet, str) or not wallet:
        raise ValidationError("walletAddress is required", field="walletAddress")

    _check_optional_str(candidate, "title", MAX_TITLE_LENGTH)
    _check_optional_str(candidate, "description", MAX_DESCRIPTION_LENGTH)
    _check_optional_str(candidate, "connectedToken")
    _check_optional_str(candidate, "tokenSymbol")
    _check_optional_bool(candidate, "showToken", "showToken")
    _check_optional_bool(candidate, "showSymbol", "showSymbol")

    image = candidate.get("image")
    if image is not None and (not isinstance(image, str) or not is_absolute_url(image)):
        raise ValidationError("Invalid image URL", field="image")

    design_style = candidate.get("designStyle")
    if design_style is not None and design_style not in {s.value for s in DesignStyle}:
        allowed = ", ".join(s.value for s in DesignStyle)
        raise ValidationError(
            f"designStyle must be one of: {allowed}", field="designStyle"
        )

    _check_fonts(candidate.get("fonts"))

    items = candidate.get("items")
    if items is not None:
        if not isinstance(items, list):
            raise ValidationError("items must be a list", field="items")
        seen_ids: set[str] = set()
        for index, item in enumerate(items):
            _check_item(index, item, seen_ids)

    try:
        return PageRecord.model_validate(
            {key: value for key, value in candidate.items() if value is not None}
        )
    except pydantic.ValidationError as exc:
        # Remaining structural problems, e.g. malformed timestamps.
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        raise ValidationError(first["msg"], field=field) from exc
