import asyncio
import json

import httpx
import pytest

from enricher.src.connectors.paperless_connector import PaperlessConnector, normalize_date
from enricher.src.errors import EntityConflictError, StoreWriteError
from enricher.src.models import Document, EntityKind


def make_connector(settings, handler):
    return PaperlessConnector(settings, transport=httpx.MockTransport(handler))


def run(connector, coro_factory):
    async def scenario():
        try:
            return await coro_factory()
        finally:
            await connector.aclose()

    return asyncio.run(scenario())


def document_json(doc_id=1, **fields):
    base = {
        "id": doc_id,
        "title": "scan",
        "content": "text",
        "tags": [1, 2],
        "correspondent": None,
        "document_type": None,
        "created": "2023-01-01",
        "custom_fields": [],
        "user_can_change": True,
    }
    base.update(fields)
    return base


def test_pagination_follows_foreign_host_next_links(settings):
    seen = []

    def handler(request: httpx.Request):
        seen.append(request.url)
        assert request.headers["Authorization"] == "Token secret"
        page = request.url.params.get("page")
        if page is None:
            return httpx.Response(200, json={
                "results": [{"id": 1, "name": "Tax"}],
                "next": "https://proxy.internal:9999/api/tags/?page=2&page_size=100",
            })
        return httpx.Response(200, json={"results": [{"id": 2, "name": "Invoice"}], "next": None})

    connector = make_connector(settings, handler)
    entities = run(connector, lambda: connector.list_entities(EntityKind.TAG))

    assert [e.name for e in entities] == ["Tax", "Invoice"]
    assert all(url.host == "paperless" for url in seen)
    assert seen[1].path == "/api/tags/"
    assert seen[1].params["page"] == "2"


def test_relative_next_strips_scheme_host_and_api_prefix(settings):
    connector = PaperlessConnector(settings)
    assert connector.relative_next("https://other:1/api/documents/?page=3") == "documents/?page=3"
    assert connector.relative_next("/api/tags/") == "tags/"


def test_document_listing_filters_by_tags(settings):
    captured = {}

    def handler(request):
        captured.update(request.url.params)
        return httpx.Response(200, json={"results": [{"id": 4}], "next": None})

    connector = make_connector(settings, handler)

    async def collect():
        return [d async for d in connector.iter_documents([3, 5])]

    assert run(connector, collect) == [{"id": 4}]
    assert captured["tags__id__in"] == "3,5"
    assert captured["ordering"] == "id"


def test_update_merges_before_patching(settings):
    bodies = []

    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json=document_json(correspondent=9))
        body = json.loads(request.content)
        bodies.append(body)
        return httpx.Response(200, json=document_json(**body))

    connector = make_connector(settings, handler)
    updates = {
        "tags": [2, 7],
        "correspondent": 4,
        "title": "T" * 200,
        "created": "31.12.2023",
    }
    document = run(connector, lambda: connector.update_document(1, updates))

    body = bodies[0]
    assert body["tags"] == [1, 2, 7]
    assert "correspondent" not in body
    assert len(body["title"]) == 125 and body["title"].endswith("…")
    assert body["created"] == "2023-12-31"
    assert document.tags == [1, 2, 7]


def test_unparseable_date_is_dropped():
    payload = PaperlessConnector.merge_update(Document(id=1), {"created": "sometime in spring", "title": ""})
    assert "created" not in payload


def test_create_conflict_raises_entity_conflict(settings):
    def handler(request):
        return httpx.Response(400, json={"name": ["tag with this name already exists."]})

    connector = make_connector(settings, handler)

    with pytest.raises(EntityConflictError) as excinfo:
        run(connector, lambda: connector.create_entity(EntityKind.TAG, {"name": "Tax"}))
    assert excinfo.value.name == "Tax"


def test_failed_patch_raises_store_write_error(settings):
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json=document_json())
        return httpx.Response(500, text="database is locked")

    connector = make_connector(settings, handler)

    with pytest.raises(StoreWriteError) as excinfo:
        run(connector, lambda: connector.update_document(1, {"title": "New"}))
    assert excinfo.value.doc_id == 1
    assert "500" in excinfo.value.detail


def test_find_entity_by_name_uses_iexact(settings):
    captured = {}

    def handler(request):
        captured.update(request.url.params)
        return httpx.Response(200, json={"results": [{"id": 5, "name": "ACME Corp"}]})

    connector = make_connector(settings, handler)
    entity = run(connector, lambda: connector.find_entity_by_name(EntityKind.CORRESPONDENT, "acme corp"))

    assert entity.id == 5
    assert captured["name__iexact"] == "acme corp"


def test_can_edit_reads_permission_flag(settings):
    def handler(request):
        return httpx.Response(200, json=document_json(user_can_change=False))

    connector = make_connector(settings, handler)
    assert run(connector, lambda: connector.can_edit(1)) is False


def test_download_original_returns_bytes_and_type(settings):
    def handler(request):
        assert request.url.params["original"] == "true"
        return httpx.Response(200, content=b"%PDF", headers={"content-type": "application/pdf; charset=binary"})

    connector = make_connector(settings, handler)
    assert run(connector, lambda: connector.download_original(1)) == (b"%PDF", "application/pdf")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("2024-03-31", "2024-03-31"),
        ("2024-03-31T10:00:00Z", "2024-03-31"),
        ("31.03.2024", "2024-03-31"),
        ("31-03-2024", "2024-03-31"),
        ("31/03/2024", None),
        ("", None),
        (None, None),
    ],
)
def test_normalize_date(value, expected):
    assert normalize_date(value) == expected
