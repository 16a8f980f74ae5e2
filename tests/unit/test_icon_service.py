"""
Unit tests for IconService

Tests conditional icon retrieval against the icon hash cache, the provider
chain, and icon uploads.
"""
import asyncio

import pytest
from unittest.mock import AsyncMock, Mock

from core.exceptions import InternalError, NotFoundError, ValidationError
from core.models import Icon
from providers.icon_provider import StoredIconProvider, icon_hash
from services.icon_service import IconContent, IconService, NotModified, strip_etag_quotes


@pytest.fixture
def icon_service(storage, caches, fallback_icon):
    return IconService(storage, caches, providers=[fallback_icon, StoredIconProvider()])


class TestStripEtagQuotes:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ('"abc"', "abc"),
            ("abc", "abc"),
            ('""', '""'),
            ('"', '"'),
            ("", ""),
            (None, ""),
        ],
    )
    def test_strip(self, value, expected):
        assert strip_etag_quotes(value) == expected


class TestProviderOrder:
    def test_providers_sorted_by_priority(self, icon_service):
        assert [p.source_name for p in icon_service.providers] == ["stored", "fallback"]

    def test_default_chain(self, caches):
        service = IconService(Mock(), caches)
        assert [p.source_name for p in service.providers] == ["stored", "fallback"]


@pytest.mark.unit
class TestGetIcon:
    @pytest.mark.asyncio
    async def test_stored_icon(self, seed, icon_service, caches, streamer_with_livestream):
        alice, _, _ = streamer_with_livestream
        await seed(Icon(user_id=alice.id, image=b"alice.jpg"))

        result = await icon_service.get_icon("alice")

        assert result == IconContent(image=b"alice.jpg", icon_hash=icon_hash(b"alice.jpg"), source="stored")
        assert caches.icon_hash.get("alice") == (icon_hash(b"alice.jpg"), True)

    @pytest.mark.asyncio
    async def test_fallback_icon(self, icon_service, streamer_with_livestream):
        result = await icon_service.get_icon("bob")

        assert result.image == b"<svg fallback/>"
        assert result.source == "fallback"

    @pytest.mark.asyncio
    async def test_quoted_etag_match_is_not_modified(self, icon_service, caches, streamer_with_livestream):
        first = await icon_service.get_icon("bob")

        result = await icon_service.get_icon("bob", if_none_match=f'"{first.icon_hash}"')

        assert result == NotModified(icon_hash=first.icon_hash)

    @pytest.mark.asyncio
    async def test_unquoted_etag_match_is_not_modified(self, icon_service, caches, streamer_with_livestream):
        caches.icon_hash.set("bob", "abc123")

        assert await icon_service.get_icon("bob", if_none_match="abc123") == NotModified(icon_hash="abc123")

    @pytest.mark.asyncio
    async def test_stale_etag_returns_content(self, icon_service, streamer_with_livestream):
        result = await icon_service.get_icon("bob", if_none_match='"outdated"')
        assert isinstance(result, IconContent)

    @pytest.mark.asyncio
    async def test_etag_without_cache_entry_returns_content(self, icon_service, caches, streamer_with_livestream):
        fallback_hash = icon_hash(b"<svg fallback/>")

        result = await icon_service.get_icon("bob", if_none_match=fallback_hash)

        assert isinstance(result, IconContent)
        assert result.icon_hash == fallback_hash

    @pytest.mark.asyncio
    async def test_expired_cache_entry_not_trusted(
        self, icon_service, caches, fake_clock, streamer_with_livestream
    ):
        caches.icon_hash.set("bob", "old-hash")
        fake_clock.advance(100)

        result = await icon_service.get_icon("bob", if_none_match="old-hash")

        assert isinstance(result, IconContent)

    @pytest.mark.asyncio
    async def test_unknown_user(self, icon_service):
        with pytest.raises(NotFoundError):
            await icon_service.get_icon("nobody")

    @pytest.mark.asyncio
    async def test_no_provider_answers(self, storage, caches, streamer_with_livestream):
        silent = Mock(priority=5, source_name="silent")
        silent.get_icon = AsyncMock(return_value=None)
        service = IconService(storage, caches, providers=[silent])

        with pytest.raises(InternalError):
            await service.get_icon("alice")


@pytest.mark.unit
class TestPostIcon:
    @pytest.mark.asyncio
    async def test_upload_primes_cache(self, icon_service, caches, streamer_with_livestream):
        alice, _, _ = streamer_with_livestream

        icon = await icon_service.post_icon(alice.id, b"new.jpg")

        assert icon.id is not None
        assert caches.icon_hash.get("alice") == (icon_hash(b"new.jpg"), True)
        assert (await icon_service.get_icon("alice")).image == b"new.jpg"

    @pytest.mark.asyncio
    async def test_upload_replaces_previous(self, icon_service, streamer_with_livestream):
        alice, _, _ = streamer_with_livestream
        await icon_service.post_icon(alice.id, b"first")
        await icon_service.post_icon(alice.id, b"second")

        result = await icon_service.get_icon("alice", if_none_match=icon_hash(b"first"))

        assert result.image == b"second"

    @pytest.mark.asyncio
    async def test_empty_image_rejected(self, icon_service, streamer_with_livestream):
        alice, _, _ = streamer_with_livestream
        with pytest.raises(ValidationError):
            await icon_service.post_icon(alice.id, b"")

    @pytest.mark.asyncio
    async def test_unknown_user(self, icon_service):
        with pytest.raises(NotFoundError):
            await icon_service.post_icon(404, b"img")

    @pytest.mark.asyncio
    async def test_upload_during_read_keeps_new_hash(self, storage, caches, streamer_with_livestream):
        alice, _, _ = streamer_with_livestream
        read_started = asyncio.Event()
        resume = asyncio.Event()

        async def slow_read(tx, user_id):
            read_started.set()
            await resume.wait()
            return b"old.jpg"

        slow = Mock(priority=10, source_name="stored")
        slow.get_icon = slow_read
        reader = IconService(storage, caches, providers=[slow])
        service = IconService(storage, caches)

        pending = asyncio.create_task(reader.get_icon("alice"))
        await read_started.wait()
        await service.post_icon(alice.id, b"new.jpg")
        resume.set()
        outdated = await pending

        assert outdated.icon_hash == icon_hash(b"old.jpg")
        assert caches.icon_hash.get("alice") == (icon_hash(b"new.jpg"), True)
        result = await service.get_icon("alice", if_none_match=f'"{icon_hash(b"old.jpg")}"')
        assert isinstance(result, IconContent)
        assert result.image == b"new.jpg"
