import asyncio

import httpx
import pytest

from orbitwatch.errors import MalformedTLE, TLESourceError
from orbitwatch.services.catalog_store import CatalogStore
from orbitwatch.services.ingest_service import IngestService

from conftest import make_tle

SOURCE_URL = "https://tle.example.com/active.txt"


def _catalog_text(*tles):
    return "".join(f"{tle.name}\n{tle.line1}\n{tle.line2}\n" for tle in tles)


def _service(handler, store=None, max_retries=3):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = IngestService(store or CatalogStore(), client=client, max_retries=max_retries, sleep=fake_sleep)
    return service, sleeps


def test_fetch_applies_whole_catalog():
    text = _catalog_text(make_tle(41001), make_tle(41002), make_tle(41003))
    seen_urls = []

    def handler(request):
        seen_urls.append(str(request.url))
        return httpx.Response(200, text=text)

    service, _ = _service(handler)
    summary = asyncio.run(service.ingest_latest_tles(SOURCE_URL))

    assert summary.inserted == 3
    assert len(service.store) == 3
    assert seen_urls == [SOURCE_URL]


def test_refetching_same_catalog_is_idempotent():
    text = _catalog_text(make_tle(41001), make_tle(41002))
    service, _ = _service(lambda request: httpx.Response(200, text=text))

    async def run():
        await service.ingest_latest_tles(SOURCE_URL)
        return await service.ingest_latest_tles(SOURCE_URL)

    second = asyncio.run(run())

    assert second.unchanged == 2
    assert second.inserted == 0
    assert service.store.history(41001) == []


def test_malformed_payload_leaves_catalog_untouched():
    store = CatalogStore()
    store.ingest_batch([make_tle(41001)])
    good = make_tle(41002)
    bad_line2 = good.line2[:-1] + str((int(good.line2[-1]) + 1) % 10)
    text = _catalog_text(make_tle(41003)) + f"BROKEN\n{good.line1}\n{bad_line2}\n"
    service, _ = _service(lambda request: httpx.Response(200, text=text), store=store)

    with pytest.raises(MalformedTLE):
        asyncio.run(service.ingest_latest_tles(SOURCE_URL))

    assert sorted(store.snapshot()) == [41001]


def test_transient_failures_are_retried():
    text = _catalog_text(make_tle(41001))
    responses = [httpx.Response(503), httpx.Response(429), httpx.Response(200, text=text)]
    service, sleeps = _service(lambda request: responses.pop(0))

    summary = asyncio.run(service.ingest_latest_tles(SOURCE_URL))

    assert summary.inserted == 1
    assert sleeps == [0.5, 1.0]


def test_exhausted_retries_raise_source_error():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502)

    service, sleeps = _service(handler, max_retries=3)

    with pytest.raises(TLESourceError) as excinfo:
        asyncio.run(service.ingest_latest_tles(SOURCE_URL))

    assert excinfo.value.kind == "tle_source_unavailable"
    assert len(calls) == 3
    assert sleeps == [0.5, 1.0]


def test_not_found_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404)

    service, _ = _service(handler)

    with pytest.raises(TLESourceError):
        asyncio.run(service.ingest_latest_tles(SOURCE_URL))
    assert len(calls) == 1


def test_connection_errors_surface_as_source_error():
    def handler(request):
        raise httpx.ConnectError("no route to host", request=request)

    service, sleeps = _service(handler, max_retries=2)

    with pytest.raises(TLESourceError):
        asyncio.run(service.ingest_latest_tles(SOURCE_URL))
    assert sleeps == [0.5]


def test_ingest_file(tmp_path):
    path = tmp_path / "catalog.tle"
    path.write_text(_catalog_text(make_tle(41001, name="ALPHA")), encoding="utf-8")
    service = IngestService(CatalogStore())

    summary = service.ingest_file(path)

    assert summary.inserted == 1
    assert service.store.get_current(41001).name == "ALPHA"


def test_default_source_falls_back_to_mirrors():
    service = IngestService(CatalogStore())
    urls = service._bulk_tle_source_urls()
    assert len(urls) == len(set(urls))
    assert service._bulk_tle_source_urls(SOURCE_URL) == [SOURCE_URL]
