"""Page record storage.

Records live as documents under ``page:{slug}``. Writes always pass through
the validation boundary; reads decode leniently so that a record written by
an older schema still loads.

``update`` is a read-merge-validate-write sequence and is not atomic: two
concurrent updates of the same slug race and the later write wins. Callers
that need protection pass ``expected_updated_at`` to reject stale writes.
"""

import logging
from datetime import datetime, timezone
from typing import Any

import pydantic

from tokenpage.core import validation
from tokenpage.core.errors import ConflictError, NotFoundError, ServiceError, StaleWriteError
from tokenpage.core.kv import KeyValueStore
from tokenpage.core.models import PageItem, PageRecord

logger = logging.getLogger(__name__)

PAGE_KEY_PREFIX = "page:"

# Fields a client may change after creation. slug and walletAddress are
# fixed for the life of the record.
UPDATABLE_FIELDS = (
    "title",
    "description",
    "image",
    "items",
    "connectedToken",
    "tokenSymbol",
    "showToken",
    "showSymbol",
    "designStyle",
    "fonts",
)


def page_key(slug: str) -> str:
    """Get the storage key for a slug."""
    return f"{PAGE_KEY_PREFIX}{slug}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def merge_fields(
    current: dict[str, Any], fields: dict[str, Any], *, skip_falsy: bool = False
) -> dict[str, Any]:
    """Overlay updatable fields onto a stored document.

    Omitted fields keep their stored value and ``items`` is replaced as a
    whole. An explicit ``None`` clears the field, unless ``skip_falsy`` is
    set, in which case every falsy value is ignored.
    """
    merged = dict(current)
    for name in UPDATABLE_FIELDS:
        if name not in fields:
            continue
        value = fields[name]
        if skip_falsy and not value:
            continue
        if value is None:
            merged.pop(name, None)
        else:
            merged[name] = value
    return merged


def decode_record(data: Any, slug: str) -> PageRecord:
    """Leniently decode a stored document.

    Fields that no longer decode are dropped (and broken items skipped)
    rather than failing the whole read. Only a document missing its owner
    is treated as unreadable.
    """
    if not isinstance(data, dict):
        raise ServiceError(f"Stored page '{slug}' is not a document")
    doc = {key: value for key, value in data.items() if value is not None}
    doc["slug"] = slug

    items = doc.get("items")
    if isinstance(items, list):
        doc["items"] = []
        for index, item in enumerate(items):
            try:
                doc["items"].append(PageItem.model_validate(item))
            except pydantic.ValidationError:
                logger.warning("Dropping undecodable item %d of page %s", index, slug)

    for _ in range(len(doc) + 1):
        try:
            return PageRecord.model_validate(doc)
        except pydantic.ValidationError as exc:
            loc = exc.errors()[0]["loc"]
            name = loc[0] if loc else None
            if name in PageRecord.model_fields:
                name = PageRecord.model_fields[name].alias or name
            if name in (None, "slug", "walletAddress", "wallet_address"):
                raise ServiceError(f"Stored page '{slug}' has no owner") from exc
            logger.warning("Dropping undecodable field %s of page %s", name, slug)
            doc.pop(name, None)
    raise ServiceError(f"Stored page '{slug}' could not be decoded")


def encode_record(record: PageRecord) -> dict[str, Any]:
    data = record.to_wire()
    data.pop("slug", None)
    return data


class PageStore:
    """CRUD access to page records."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    async def find(self, slug: str) -> PageRecord | None:
        """Get a page by slug. Returns None if not found."""
        if not validation.is_valid_slug(slug):
            return None
        data = await self.kv.get(page_key(slug))
        if data is None:
            return None
        return decode_record(data, slug)

    async def get(self, slug: str) -> PageRecord:
        """Get a page by slug.

        Raises:
            NotFoundError: if no page is stored under the slug.
        """
        record = await self.find(slug)
        if record is None:
            raise NotFoundError("Page not found")
        return record

    async def create(
        self, slug: str, wallet_address: str, fields: dict[str, Any] | None = None,
        *, minimal: bool = False,
    ) -> tuple[PageRecord, bool]:
        """Create a page, or update it when the same wallet already owns it.

        Only truthy fields are applied, matching the create form which sends
        blanks for untouched inputs. With ``minimal`` the record holds just
        the owner and creation time.

        Returns:
            (record, created) where created is False for a re-create.

        Raises:
            ConflictError: if another wallet owns the slug.
            ValidationError: if the resulting page is invalid.
        """
        existing = await self.find(slug)
        if existing is not None and not existing.is_owned_by(wallet_address):
            raise ConflictError("This URL is already taken", field="slug")

        now = utcnow()
        if minimal:
            candidate: dict[str, Any] = {
                "slug": slug,
                "walletAddress": wallet_address,
                "createdAt": now.isoformat(),
            }
        else:
            base = encode_record(existing) if existing is not None else {}
            candidate = merge_fields(base, fields or {}, skip_falsy=True)
            candidate["slug"] = slug
            candidate["walletAddress"] = (
                existing.wallet_address if existing is not None else wallet_address
            )
            candidate.setdefault("createdAt", now.isoformat())
            candidate["updatedAt"] = now.isoformat()

        record = validation.validate(candidate)
        await self.kv.put(page_key(slug), encode_record(record))
        logger.info(
            "%s page %s for %s",
            "Created" if existing is None else "Re-created",
            slug,
            wallet_address,
        )
        return record, existing is None

    async def update(
        self,
        slug: str,
        fields: dict[str, Any],
        *,
        expected_updated_at: datetime | None = None,
    ) -> PageRecord:
        """Merge fields into an existing page and write it back.

        Raises:
            NotFoundError: if the page does not exist.
            StaleWriteError: if expected_updated_at no longer matches.
            ValidationError: if the merged page is invalid.
        """
        current = await self.get(slug)
        if expected_updated_at is not None and current.updated_at != expected_updated_at:
            raise StaleWriteError(
                "Page was modified by another request", field="expectedUpdatedAt"
            )

        candidate = merge_fields(encode_record(current), fields)
        candidate["slug"] = slug
        candidate["walletAddress"] = current.wallet_address
        candidate["updatedAt"] = utcnow().isoformat()

        record = validation.validate(candidate)
        await self.kv.put(page_key(slug), encode_record(record))
        logger.info("Updated page %s", slug)
        return record

    async def delete(self, slug: str) -> None:
        """Delete a page. Ownership must already be established.

        Raises:
            NotFoundError: if the page does not exist.
        """
        if not validation.is_valid_slug(slug) or not await self.kv.delete(page_key(slug)):
            raise NotFoundError("Page not found")
        logger.info("Deleted page %s", slug)

    async def slugs(self) -> list[str]:
        """List all stored page slugs."""
        keys = await self.kv.keys(PAGE_KEY_PREFIX)
        return [key.removeprefix(PAGE_KEY_PREFIX) for key in keys]
