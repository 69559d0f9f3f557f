import asyncio

import httpx
import pytest

from chronicle_keeper.world_store import (
    PostgrestWorldStore,
    SupabaseSettings,
    WorldStoreError,
    build_world_store,
)


def make_store(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PostgrestWorldStore(base_url='https://proj.supabase.co/', service_key='svc', client=client)


def run(store, coro_fn):
    async def _run():
        try:
            return await coro_fn(store)
        finally:
            await store.aclose()
    return asyncio.run(_run())


def test_list_candidates_projects_columns_and_authenticates():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{'id': 'c1', 'name': 'Mel', 'aliases': ['梅尔']}])

    rows = run(make_store(handler), lambda s: s.list_candidates('characters'))
    assert rows == [{'id': 'c1', 'name': 'Mel', 'aliases': ['梅尔']}]
    req = seen[0]
    assert req.url.path == '/rest/v1/characters'
    assert req.url.params['select'] == 'id,name,aliases'
    assert req.headers['apikey'] == 'svc'
    assert req.headers['Authorization'] == 'Bearer svc'


def test_fetch_stories_filters_orders_and_limits():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[])

    run(make_store(handler), lambda s: s.fetch_stories(['s1', 's2'], 6))
    params = seen[0].url.params
    assert params['id'] == 'in.("s1","s2")'
    assert params['order'] == 'created_at.desc'
    assert params['limit'] == '6'


def test_fetch_joins_uses_filter_column():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{'story_id': 's1'}])

    rows = run(make_store(handler), lambda s: s.fetch_joins('story_places', 'place_id', ['p1']))
    assert rows == [{'story_id': 's1'}]
    assert seen[0].url.path == '/rest/v1/story_places'
    assert seen[0].url.params['place_id'] == 'in.("p1")'


def test_empty_id_lists_skip_the_network():
    def handler(request):  # pragma: no cover - must not be called
        raise AssertionError('unexpected request')

    store = make_store(handler)
    assert run(store, lambda s: s.fetch_details('places', [])) == []


def test_http_error_raises_store_error():
    with pytest.raises(WorldStoreError):
        run(make_store(lambda r: httpx.Response(500, text='db down')), lambda s: s.list_candidates('places'))


def test_unknown_entity_type_rejected():
    with pytest.raises(WorldStoreError):
        run(make_store(lambda r: httpx.Response(200, json=[])), lambda s: s.list_candidates('dragons'))


def test_unconfigured_settings_build_no_store():
    assert build_world_store(SupabaseSettings(url=None, service_key='k')) is None
    assert build_world_store(SupabaseSettings(url='https://x', service_key='')) is None
