import pytest

from apihub.content.store import ContentStore, PutOutcome


@pytest.mark.asyncio
async def test_blob_is_stored_once_per_package(session):
    store = ContentStore(session)

    assert await store.put_blob("acme.svc", "abc", "application/yaml", b"one") == PutOutcome.stored
    assert await store.put_blob("acme.svc", "abc", "text/plain", b"two") == PutOutcome.deduped
    assert await store.put_blob("acme.lib", "abc", "text/plain", b"two") == PutOutcome.stored

    assert await store.get_blob("acme.svc", "abc") == b"one"
    assert await store.get_blob_media_type("acme.svc", "abc") == "application/yaml"
    assert await store.get_blob("acme.lib", "abc") == b"two"
    assert await store.get_blob("acme.svc", "missing") is None


@pytest.mark.asyncio
async def test_source_archive_is_shared_by_checksum(session):
    store = ContentStore(session)

    assert await store.put_source_archive("zip-1", b"PK") == PutOutcome.stored
    assert await store.put_source_archive("zip-1", b"other") == PutOutcome.deduped


@pytest.mark.asyncio
async def test_binding_points_revision_at_latest_archive(session):
    store = ContentStore(session)
    await store.put_source_archive("zip-1", b"first")
    await store.put_source_archive("zip-2", b"second")

    await store.bind_version_sources("acme.svc", "1.0", 1, "zip-1", {"version": "1.0"})
    bound = await store.get_version_sources("acme.svc", "1.0", 1)
    assert bound is not None
    assert (bound.archive_checksum, bound.data) == ("zip-1", b"first")

    await store.bind_version_sources("acme.svc", "1.0", 1, "zip-2", {"version": "1.0", "rebuilt": True})
    await session.commit()
    rebound = await store.get_version_sources("acme.svc", "1.0", 1)
    assert rebound is not None
    assert rebound.data == b"second"
    assert rebound.config == {"version": "1.0", "rebuilt": True}
    assert await store.get_version_sources("acme.svc", "1.0", 2) is None
