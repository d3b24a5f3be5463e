import asyncio

import httpx
import pytest

from enricher.src.errors import EntityConflictError
from enricher.src.models import CatalogEntity, EntityKind
from enricher.src.processing.entity_cache import (
    RESTRICTED_REASON,
    CatalogCaches,
    EntityCache,
    creation_payload,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def tags(paperless, clock):
    return EntityCache(paperless, EntityKind.TAG, ttl_seconds=3.0, clock=clock)


def test_restricted_unknown_name_returns_none_without_create(paperless, tags):
    paperless.add_entity(EntityKind.TAG, "Receipt")

    entity = asyncio.run(tags.find_or_create("Invoice", restrict=True))

    assert entity is None
    assert paperless.count("create_entity") == 0


def test_resolve_many_restricted_reports_missing_name(paperless, tags):
    resolution = asyncio.run(tags.resolve_many(["Invoice"], restrict=True))

    assert resolution.ids == []
    assert resolution.errors == [{"name": "Invoice", "reason": RESTRICTED_REASON}]
    assert paperless.count("create_entity") == 0


def test_resolve_many_dedupes_case_insensitively(paperless, tags):
    resolution = asyncio.run(tags.resolve_many(["Invoice", " invoice ", "INVOICE", "", "Tax"], restrict=False))

    assert len(resolution.ids) == 2
    assert resolution.errors == []
    created = [call[2]["name"] for call in paperless.calls if call[0] == "create_entity"]
    assert created == ["Invoice", "Tax"]


def test_cached_entity_is_found_case_insensitively(paperless, tags):
    paperless.add_entity(EntityKind.TAG, "Insurance", entity_id=7)

    entity = asyncio.run(tags.find_or_create("insurance", restrict=True))

    assert entity.id == 7
    assert paperless.count("find_entity_by_name") == 0


def test_conflicting_creates_converge_to_one_id(paperless, clock):
    winner = CatalogEntity(id=42, name="Invoice")
    paperless.race_winners["invoice"] = winner
    first = EntityCache(paperless, EntityKind.TAG, ttl_seconds=3.0, clock=clock)
    second = EntityCache(paperless, EntityKind.TAG, ttl_seconds=3.0, clock=clock)

    async def scenario():
        return await first.find_or_create("Invoice", False), await second.find_or_create("invoice", False)

    a, b = asyncio.run(scenario())

    assert a.id == b.id == 42
    assert paperless.count("create_entity") == 1
    assert first.entries["invoice"].id == 42


def test_conflict_without_entity_afterwards_is_raised(paperless, tags):
    async def always_conflicts(kind, payload):
        paperless.calls.append(("create_entity", kind, payload))
        raise EntityConflictError(kind.label, payload["name"], "invalid name")

    paperless.create_entity = always_conflicts

    with pytest.raises(EntityConflictError):
        asyncio.run(tags.find_or_create("Broken", restrict=False))

    resolution = asyncio.run(tags.resolve_many(["Broken", "Also broken"], restrict=False))
    assert resolution.ids == []
    assert [e["name"] for e in resolution.errors] == ["Broken", "Also broken"]


def test_other_create_errors_propagate_and_batch_continues(paperless, tags):
    request = httpx.Request("POST", "http://paperless/api/tags/")
    original_create = paperless.create_entity

    async def flaky_create(kind, payload):
        if payload["name"] == "Bad":
            raise httpx.HTTPStatusError("boom", request=request, response=httpx.Response(500, request=request))
        return await original_create(kind, payload)

    paperless.create_entity = flaky_create

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(tags.find_or_create("Bad", restrict=False))

    resolution = asyncio.run(tags.resolve_many(["Bad", "Good"], restrict=False))
    assert len(resolution.ids) == 1
    assert resolution.errors[0]["name"] == "Bad"


def test_store_query_catches_entities_created_elsewhere(paperless, tags, clock):
    paperless.add_entity(EntityKind.TAG, "Known")
    asyncio.run(tags.ensure_fresh())
    paperless.add_entity(EntityKind.TAG, "Fresh", entity_id=9)

    entity = asyncio.run(tags.find_or_create("fresh", restrict=True))

    assert entity.id == 9
    assert paperless.count("list_entities") == 1
    assert tags.entries["fresh"].id == 9


def test_ttl_controls_reloads(paperless, tags, clock):
    paperless.add_entity(EntityKind.TAG, "Known")

    asyncio.run(tags.find("Known"))
    clock.now += 2.0
    asyncio.run(tags.find("Known"))
    assert paperless.count("list_entities") == 1

    clock.now += 5.0
    asyncio.run(tags.find("Known"))
    assert paperless.count("list_entities") == 2

    tags.invalidate()
    asyncio.run(tags.find("Known"))
    assert paperless.count("list_entities") == 3


def test_empty_table_always_reloads(paperless, tags):
    asyncio.run(tags.find("anything"))
    asyncio.run(tags.find("anything"))
    assert paperless.count("list_entities") == 2


def test_creation_payloads_per_kind():
    assert creation_payload(EntityKind.TAG, "Tax") == {"name": "Tax"}
    assert creation_payload(EntityKind.CORRESPONDENT, "ACME") == {"name": "ACME", "matching_algorithm": 0}
    assert creation_payload(EntityKind.DOCUMENT_TYPE, "Invoice") == {
        "name": "Invoice",
        "matching_algorithm": 1,
        "match": "",
        "is_insensitive": True,
    }


def test_catalog_caches_follow_restriction_policy(paperless, make_settings):
    settings = make_settings(RESTRICT_TO_EXISTING_CORRESPONDENTS=True)
    caches = CatalogCaches(paperless, settings)

    async def scenario():
        correspondent = await caches.find_or_create(EntityKind.CORRESPONDENT, "Unknown GmbH")
        tag = await caches.find_or_create(EntityKind.TAG, "Fresh")
        return correspondent, tag, await caches.snapshot()

    correspondent, tag, snapshot = asyncio.run(scenario())

    assert correspondent is None
    assert tag is not None
    assert snapshot.tags == ["Fresh"]
    assert snapshot.correspondents == []
