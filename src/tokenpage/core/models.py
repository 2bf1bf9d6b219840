"""Data models for TokenPage."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class DesignStyle(str, Enum):
    DEFAULT = "default"
    MINIMAL = "minimal"
    MODERN = "modern"


class WireModel(BaseModel):
    """Base for models exchanged as camelCase JSON.

    Unknown keys are ignored so that records written by older versions
    still load.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        """Dump as a JSON-safe camelCase dict, omitting unset values."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Fonts(WireModel):
    """Named font slots; any slot may be empty."""

    global_: str | None = Field(default=None, alias="global")
    heading: str | None = None
    paragraph: str | None = None
    links: str | None = None


class PageItem(WireModel):
    """A single link on a page."""

    id: str
    preset_id: str
    title: str | None = None
    url: str | None = None
    order: int = 0
    is_plugin: bool = False
    token_gated: bool = False
    required_tokens: list[str] = Field(default_factory=list)


class PageRecord(WireModel):
    """A stored link page, keyed by slug."""

    slug: str
    wallet_address: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    title: str | None = None
    description: str | None = None
    image: str | None = None
    connected_token: str | None = None
    token_symbol: str | None = None
    show_token: bool | None = None
    show_symbol: bool | None = None
    design_style: DesignStyle | None = None
    fonts: Fonts | None = None
    items: list[PageItem] = Field(default_factory=list)

    def is_owned_by(self, wallet: str) -> bool:
        """Case-insensitive owner comparison."""
        return self.wallet_address.lower() == wallet.lower()

    @property
    def sorted_items(self) -> list[PageItem]:
        """Items in display order."""
        return sorted(self.items, key=lambda item: item.order)


class AccessResult(WireModel):
    """Outcome of a token balance check."""

    allowed: bool
    balance: str


class SignedAccess(WireModel):
    """A time-boxed link to private content."""

    url: str
    expires_in: str


class ReconcileReport(WireModel):
    """Changes applied to the wallet index by a reconciliation pass."""

    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    pages_scanned: int = 0
