"""Unit tests for the record store backends and PageStore."""

import typing
from datetime import datetime, timedelta

import pytest

from tokenpage.core.errors import (
    ConflictError,
    NotFoundError,
    ServiceError,
    StaleWriteError,
    ValidationError,
)
from tokenpage.core.kv import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from tokenpage.core.storage import PageStore, decode_record, merge_fields, page_key


@pytest.fixture
def file_kv(tmp_path):
    return FileKeyValueStore(tmp_path)


ITEMS = [
    {"id": "a", "presetId": "telegram", "url": "https://t.me/alice", "order": 0},
    {"id": "b", "presetId": "discord", "url": "https://discord.gg/x", "order": 1,
     "tokenGated": True},
]


# ============================================================
# Key / path conversion
# ============================================================


class TestKeyConversion:
    def test_page_key(self):
        assert page_key("alice") == "page:alice"

    def test_key_to_path(self, file_kv, tmp_path):
        assert file_kv._key_to_path("page:alice") == tmp_path / "page" / "alice.yaml"

    def test_nested_key_to_path(self, file_kv, tmp_path):
        path = file_kv._key_to_path("wallet:wx1:pages")
        assert path == tmp_path / "wallet" / "wx1" / "pages.yaml"

    def test_path_to_key_roundtrip(self, file_kv):
        key = "wallet:wx1:pages"
        assert file_kv._path_to_key(file_kv._key_to_path(key)) == key

    @pytest.mark.parametrize("key", ["page:..", "page:", "page:a/b", ":x", "page:a\\b"])
    def test_unsafe_keys_rejected(self, file_kv, key):
        with pytest.raises(ValueError):
            file_kv._key_to_path(key)


# ============================================================
# Backends
# ============================================================


@pytest.fixture(params=["memory", "file"])
def backend(request, tmp_path):
    if request.param == "memory":
        return MemoryKeyValueStore()
    return FileKeyValueStore(tmp_path)


class TestBackends:
    @pytest.mark.parametrize(
        "cls", [KeyValueStore, MemoryKeyValueStore, FileKeyValueStore]
    )
    def test_set_members_annotation(self, cls):
        assert typing.get_type_hints(cls.set_members)["return"] == set[str]

    @pytest.mark.asyncio
    async def test_get_missing(self, backend):
        assert await backend.get("page:nope") is None

    @pytest.mark.asyncio
    async def test_put_get_delete(self, backend):
        await backend.put("page:a", {"walletAddress": "Wx1", "items": []})
        assert await backend.get("page:a") == {"walletAddress": "Wx1", "items": []}
        assert await backend.delete("page:a") is True
        assert await backend.delete("page:a") is False
        assert await backend.get("page:a") is None

    @pytest.mark.asyncio
    async def test_set_operations(self, backend):
        assert await backend.set_add("wallet:w:pages", "a") is True
        assert await backend.set_add("wallet:w:pages", "a") is False
        await backend.set_add("wallet:w:pages", "b")
        assert await backend.set_members("wallet:w:pages") == {"a", "b"}
        assert await backend.set_remove("wallet:w:pages", "a") is True
        assert await backend.set_remove("wallet:w:pages", "a") is False
        assert await backend.set_members("wallet:w:pages") == {"b"}

    @pytest.mark.asyncio
    async def test_empty_set_disappears(self, backend):
        await backend.set_add("wallet:w:pages", "a")
        await backend.set_remove("wallet:w:pages", "a")
        assert await backend.keys("wallet:") == []
        assert await backend.set_members("wallet:w:pages") == set()

    @pytest.mark.asyncio
    async def test_keys_by_prefix(self, backend):
        await backend.put("page:b", {})
        await backend.put("page:a", {})
        await backend.set_add("wallet:w:pages", "a")
        assert await backend.keys("page:") == ["page:a", "page:b"]
        assert await backend.keys() == ["page:a", "page:b", "wallet:w:pages"]


class TestFileBackend:
    @pytest.mark.asyncio
    async def test_documents_are_yaml(self, file_kv, tmp_path):
        await file_kv.put("page:alice", {"walletAddress": "Wx1", "title": "Hi"})
        text = (tmp_path / "page" / "alice.yaml").read_text(encoding="utf-8")
        assert "walletAddress: Wx1" in text
        assert "title: Hi" in text

    @pytest.mark.asyncio
    async def test_corrupt_file_is_service_error(self, file_kv, tmp_path):
        (tmp_path / "page").mkdir()
        (tmp_path / "page" / "bad.yaml").write_text("a: [unclosed", encoding="utf-8")
        with pytest.raises(ServiceError):
            await file_kv.get("page:bad")

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, file_kv, tmp_path):
        await file_kv.put("page:alice", {"walletAddress": "Wx1"})
        assert not list(tmp_path.rglob("*.tmp"))


# ============================================================
# Merge and decode
# ============================================================


class TestMergeFields:
    def test_omitted_fields_preserved(self):
        current = {"title": "Old", "items": ITEMS}
        merged = merge_fields(current, {"title": "T"})
        assert merged == {"title": "T", "items": ITEMS}

    def test_items_replaced_whole(self):
        merged = merge_fields({"items": ITEMS}, {"items": ITEMS[:1]})
        assert merged["items"] == ITEMS[:1]

    def test_explicit_null_clears(self):
        merged = merge_fields({"connectedToken": "TOK1"}, {"connectedToken": None})
        assert "connectedToken" not in merged

    def test_skip_falsy(self):
        current = {"title": "Old", "description": "Keep"}
        merged = merge_fields(current, {"title": "", "description": None}, skip_falsy=True)
        assert merged == current

    def test_owner_and_slug_not_overlaid(self):
        merged = merge_fields(
            {"walletAddress": "Wx1"}, {"walletAddress": "Wx2", "slug": "other"}
        )
        assert merged == {"walletAddress": "Wx1"}


class TestDecodeRecord:
    def test_unknown_keys_ignored(self):
        record = decode_record({"walletAddress": "Wx1", "theme": "dark"}, "alice")
        assert record.slug == "alice"

    def test_bad_field_dropped(self):
        record = decode_record({"walletAddress": "Wx1", "designStyle": "retro"}, "alice")
        assert record.design_style is None

    def test_bad_item_dropped(self):
        items = [ITEMS[0], {"presetId": "x"}, ITEMS[1]]
        record = decode_record({"walletAddress": "Wx1", "items": items}, "alice")
        assert [i.id for i in record.items] == ["a", "b"]

    def test_many_bad_items_dropped(self):
        broken = [{"id": f"x{n}", "presetId": "telegram", "order": "x"} for n in range(5)]
        record = decode_record(
            {"walletAddress": "Wx1", "items": broken + [ITEMS[0]]}, "alice"
        )
        assert [i.id for i in record.items] == ["a"]

    def test_bad_items_and_bad_field_dropped(self):
        record = decode_record(
            {"walletAddress": "Wx1", "designStyle": "retro",
             "items": [{"id": "x"}, ITEMS[1]]},
            "alice",
        )
        assert record.design_style is None
        assert [i.id for i in record.items] == ["b"]

    def test_missing_owner_is_service_error(self):
        with pytest.raises(ServiceError):
            decode_record({"title": "orphan"}, "alice")

    def test_non_document_is_service_error(self):
        with pytest.raises(ServiceError):
            decode_record(["a", "b"], "alice")


# ============================================================
# PageStore CRUD
# ============================================================


class TestPageStore:
    @pytest.mark.asyncio
    async def test_get_missing(self, pages):
        with pytest.raises(NotFoundError):
            await pages.get("nope")
        assert await pages.find("nope") is None

    @pytest.mark.asyncio
    async def test_get_invalid_slug_is_not_found(self, pages):
        with pytest.raises(NotFoundError):
            await pages.get("../secret")

    @pytest.mark.asyncio
    async def test_minimal_create(self, pages):
        record, created = await pages.create("abc", "Wx1", minimal=True)
        assert created is True
        assert record.created_at is not None
        assert record.updated_at is None
        stored = await pages.get("abc")
        assert stored.wallet_address == "Wx1"
        assert stored.items == []

    @pytest.mark.asyncio
    async def test_create_conflict_for_other_owner(self, pages):
        await pages.create("abc", "W1", minimal=True)
        with pytest.raises(ConflictError) as exc_info:
            await pages.create("abc", "W2", minimal=True)
        assert exc_info.value.status_code == 400
        assert (await pages.get("abc")).wallet_address == "W1"

    @pytest.mark.asyncio
    async def test_recreate_same_owner_is_idempotent(self, pages):
        await pages.create("abc", "W1", {"title": "First"})
        record, created = await pages.create("abc", "w1", {"description": "More"})
        assert created is False
        assert record.wallet_address == "W1"
        assert record.title == "First"
        assert record.description == "More"

    @pytest.mark.asyncio
    async def test_create_ignores_blank_fields(self, pages):
        await pages.create("abc", "W1", {"title": "Keep"})
        record, _ = await pages.create("abc", "W1", {"title": "", "items": []})
        assert record.title == "Keep"

    @pytest.mark.asyncio
    async def test_create_rejects_invalid_payload(self, pages):
        bad = {"items": [{"id": "a", "presetId": "telegram", "url": "nope", "order": 0}]}
        with pytest.raises(ValidationError):
            await pages.create("abc", "W1", bad)
        assert await pages.find("abc") is None

    @pytest.mark.asyncio
    async def test_update_preserves_omitted_items(self, pages):
        await pages.create("abc", "W1", {"items": ITEMS})
        record = await pages.update("abc", {"title": "T"})
        assert record.title == "T"
        assert [i.id for i in record.items] == ["a", "b"]
        stored = await pages.get("abc")
        assert [i.url for i in stored.items] == [i["url"] for i in ITEMS]

    @pytest.mark.asyncio
    async def test_update_replaces_items(self, pages):
        await pages.create("abc", "W1", {"items": ITEMS})
        record = await pages.update("abc", {"items": []})
        assert record.items == []

    @pytest.mark.asyncio
    async def test_update_cannot_change_owner(self, pages):
        await pages.create("abc", "W1", minimal=True)
        record = await pages.update("abc", {"walletAddress": "W2", "title": "x"})
        assert record.wallet_address == "W1"

    @pytest.mark.asyncio
    async def test_update_missing(self, pages):
        with pytest.raises(NotFoundError):
            await pages.update("nope", {"title": "T"})

    @pytest.mark.asyncio
    async def test_invalid_update_leaves_record_untouched(self, pages):
        await pages.create("abc", "W1", {"title": "Old", "items": ITEMS})
        with pytest.raises(ValidationError):
            await pages.update("abc", {"title": "New", "designStyle": "bogus"})
        stored = await pages.get("abc")
        assert stored.title == "Old"
        assert len(stored.items) == 2

    @pytest.mark.asyncio
    async def test_last_write_wins(self, pages):
        await pages.create("abc", "W1", minimal=True)
        await pages.update("abc", {"title": "First"})
        await pages.update("abc", {"title": "Second"})
        assert (await pages.get("abc")).title == "Second"

    @pytest.mark.asyncio
    async def test_expected_updated_at_matches(self, pages):
        await pages.create("abc", "W1", {"title": "v1"})
        current = await pages.get("abc")
        record = await pages.update(
            "abc", {"title": "v2"}, expected_updated_at=current.updated_at
        )
        assert record.title == "v2"

    @pytest.mark.asyncio
    async def test_stale_write_rejected(self, pages):
        await pages.create("abc", "W1", {"title": "v1"})
        current = await pages.get("abc")
        stale = current.updated_at - timedelta(seconds=5)
        with pytest.raises(StaleWriteError) as exc_info:
            await pages.update("abc", {"title": "v2"}, expected_updated_at=stale)
        assert exc_info.value.status_code == 409
        assert (await pages.get("abc")).title == "v1"

    @pytest.mark.asyncio
    async def test_delete(self, pages):
        await pages.create("abc", "W1", minimal=True)
        await pages.delete("abc")
        with pytest.raises(NotFoundError):
            await pages.get("abc")
        with pytest.raises(NotFoundError):
            await pages.delete("abc")

    @pytest.mark.asyncio
    async def test_slugs(self, pages):
        await pages.create("b", "W1", minimal=True)
        await pages.create("a", "W2", minimal=True)
        assert await pages.slugs() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_file_backed_roundtrip(self, file_kv):
        store = PageStore(file_kv)
        await store.create("abc", "W1", {"title": "Hello", "items": ITEMS})
        record = await PageStore(file_kv).get("abc")
        assert record.title == "Hello"
        assert record.items[1].token_gated is True
        assert isinstance(record.created_at, datetime)
