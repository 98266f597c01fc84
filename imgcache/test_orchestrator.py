import dataclasses
import threading
from concurrent.futures import ThreadPoolExecutor
from logging import Logger
from typing import Any, Callable, Optional

import httpx
import pytest
from pyvips import Image  # type: ignore

from imgcache.conftest import (
    KEY_PREFIX,
    RED,
    URL_CACHE_TTL,
    CountingTransport,
    FakeClock,
    MemoryMetadataCache,
    MemoryObjectStore,
    image_size,
    make_jpeg,
    make_png
)
from imgcache.errors import (
    AlreadyExistsError,
    InvalidImageError,
    NotFoundError,
    StorageError,
    UpstreamFetchError,
    ValidationError
)
from imgcache.fetch import UrlFetcher
from imgcache.metadata import SYSTEM_OWNER, CacheEntry, Caller
from imgcache.orchestrator import ImageCache
from imgcache.transform import ImageInfo, TransformEngine
from imgcache.typing import S3Key

ALICE = Caller.user('alice')
BOB = Caller.user('bob')
URL = 'https://example.com/photo.png'


class SpyEngine(TransformEngine):

  def __init__(self, engine: TransformEngine):
    super().__init__(engine.log)
    self.derive_calls = 0

  def derive(self, *args: Any, **kwargs: Any) -> Any:
    self.derive_calls += 1
    return super().derive(*args, **kwargs)


def test_serve_resize_then_exact_hit(cache: ImageCache, store: MemoryObjectStore) -> None:
  spy = SpyEngine(cache.engine)
  cache.engine = spy
  image_id = cache.ingest_from_bytes(ALICE, make_png(800, 600)).id

  first = cache.serve(ALICE, image_id, {'w': '400'})
  cache.persist.flush()

  assert not first.cached
  assert image_size(first.data) == (400, 300)
  assert first.content_type == 'image/png'
  assert 'height:300' in first.key
  assert 'width:400' in first.key
  assert first.key.endswith('.png')
  assert first.key in store.objects

  second = cache.serve(ALICE, image_id, {'w': '400'})

  assert second.cached
  assert second.key == first.key
  assert second.data == first.data
  assert spy.derive_calls == 1


def test_serve_equivalent_requests_share_rendition(cache: ImageCache) -> None:
  image_id = cache.ingest_from_bytes(ALICE, make_png(800, 600)).id

  cache.serve(ALICE, image_id, {'w': '400'})
  cache.persist.flush()

  for raw in ({'width': '400', 'height': '300'}, {'h': '300', 'fmt': 'png'}):
    assert cache.serve(ALICE, image_id, raw).cached, raw


def test_serve_never_upscales(cache: ImageCache, store: MemoryObjectStore) -> None:
  original = make_png(800, 600)
  image_id = cache.ingest_from_bytes(ALICE, original).id

  served = cache.serve(ALICE, image_id, {'w': '1600', 'h': '1200'})

  assert served.cached
  assert served.data == original
  assert len(store.list_keys(KEY_PREFIX)) == 1


def test_serve_transcodes(cache: ImageCache) -> None:
  image_id = cache.ingest_from_bytes(ALICE, make_png(80, 60)).id

  served = cache.serve(ALICE, image_id, {'format': 'webp', 'q': '80'})

  assert served.content_type == 'image/webp'
  assert served.key.endswith('.webp')
  assert image_size(served.data) == (80, 60)


def test_serve_default_format_is_originals(cache: ImageCache) -> None:
  image_id = cache.ingest_from_bytes(ALICE, make_jpeg(80, 60)).id

  served = cache.serve(ALICE, image_id, {'w': '40'})

  assert served.content_type == 'image/jpeg'
  assert served.key.endswith('.jpeg')


def test_serve_invalid_params(cache: ImageCache) -> None:
  image_id = cache.ingest_from_bytes(ALICE, make_png(80, 60)).id

  with pytest.raises(ValidationError) as e:
    cache.serve(ALICE, image_id, {'w': '-1', 'fit': 'nope'})
  assert sorted(e.value.fields) == ['fit', 'width']


def test_privacy(cache: ImageCache) -> None:
  image_id = cache.ingest_from_bytes(ALICE, make_png(80, 60)).id

  with pytest.raises(NotFoundError) as absent:
    cache.serve(BOB, 'absent', {})
  with pytest.raises(NotFoundError) as private:
    cache.serve(BOB, image_id, {})
  with pytest.raises(NotFoundError):
    cache.serve(Caller.anonymous(), image_id, {})

  assert type(absent.value) is type(private.value)
  assert cache.serve(Caller.system(), image_id, {}).cached


def test_public_bytes_are_readable_by_anyone(cache: ImageCache) -> None:
  image_id = cache.ingest_from_bytes(ALICE, make_png(80, 60), public=True).id

  served = cache.serve(Caller.anonymous(), image_id, {'w': '8'})

  assert served.public
  assert image_size(served.data) == (8, 6)


def test_ingest_from_bytes(
    cache: ImageCache,
    store: MemoryObjectStore,
    metadata: MemoryMetadataCache,
    clock: FakeClock,
) -> None:
  result = cache.ingest_from_bytes(ALICE, make_png(80, 60))

  assert not result.not_modified
  entry = metadata.get_by_id(result.id)
  assert entry is not None
  assert entry.owner == 'alice'
  assert not entry.public
  assert entry.created_at == clock()
  assert entry.expires_at is None
  assert entry.original_key == cache.codec.encode(
      'alice', result.id, cache.codec.decode(entry.original_key).params)
  assert entry.original_key.startswith(f'{KEY_PREFIX}alice/{result.id}_')
  assert store.objects[entry.original_key][1] == 'image/png'


def test_ingest_from_bytes_does_not_dedup(cache: ImageCache) -> None:
  data = make_png(80, 60)

  assert cache.ingest_from_bytes(ALICE, data).id != cache.ingest_from_bytes(ALICE, data).id


def test_ingest_system_owner(cache: ImageCache, metadata: MemoryMetadataCache) -> None:
  result = cache.ingest_from_bytes(Caller.system(), make_png(8, 6))

  entry = metadata.get_by_id(result.id)
  assert entry is not None
  assert entry.owner == SYSTEM_OWNER


def test_ingest_invalid_image(cache: ImageCache, store: MemoryObjectStore) -> None:
  with pytest.raises(InvalidImageError):
    cache.ingest_from_bytes(ALICE, b'not an image')
  assert store.objects == {}


def test_ingest_transcodes_unsupported_original(
    cache: ImageCache,
    store: MemoryObjectStore,
    metadata: MemoryMetadataCache,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
  data = make_jpeg(40, 30)
  info = cache.engine.inspect(data)
  monkeypatch.setattr(
      cache.engine, 'inspect', lambda _: ImageInfo(size=info.size, format='gif', has_alpha=False))

  result = cache.ingest_from_bytes(ALICE, data)

  entry = metadata.get_by_id(result.id)
  assert entry is not None
  assert entry.original_key.endswith('.png')
  assert store.objects[entry.original_key][1] == 'image/png'


def test_url_dedup(cache: ImageCache, upstream: CountingTransport) -> None:
  upstream.bodies[URL] = make_png(80, 60)

  first = cache.ingest_from_url(ALICE, URL)
  second = cache.ingest_from_url(BOB, URL)

  assert not first.not_modified
  assert second.not_modified
  assert second.id == first.id
  assert upstream.requests == [URL]


def test_url_entry_is_public_and_expires(
    cache: ImageCache,
    metadata: MemoryMetadataCache,
    upstream: CountingTransport,
    clock: FakeClock,
) -> None:
  upstream.bodies[URL] = make_png(80, 60)

  result = cache.ingest_from_url(ALICE, URL)
  entry = metadata.get_by_id(result.id)

  assert entry is not None
  assert entry.public
  assert entry.source_url == URL
  assert entry.expires_at is not None
  assert (entry.expires_at - clock()).total_seconds() == URL_CACHE_TTL


def test_url_refresh_after_expiry(
    cache: ImageCache,
    store: MemoryObjectStore,
    upstream: CountingTransport,
    clock: FakeClock,
) -> None:
  upstream.bodies[URL] = make_png(80, 60)
  first = cache.ingest_from_url(ALICE, URL)
  cache.serve(ALICE, first.id, {'w': '10'})
  cache.persist.flush()
  assert len(store.objects) == 2

  clock.advance(URL_CACHE_TTL + 1)
  with pytest.raises(NotFoundError):
    cache.serve(ALICE, first.id, {})

  upstream.bodies[URL] = make_png(40, 20)
  second = cache.ingest_from_url(ALICE, URL)

  assert not second.not_modified
  assert second.id == first.id
  assert upstream.requests == [URL, URL]
  assert len(store.objects) == 1
  assert image_size(cache.serve(ALICE, second.id, {}).data) == (40, 20)


def test_url_force_refetches(cache: ImageCache, upstream: CountingTransport) -> None:
  upstream.bodies[URL] = make_png(80, 60)

  first = cache.ingest_from_url(ALICE, URL)
  second = cache.ingest_from_url(ALICE, URL, force=True)

  assert second.id == first.id
  assert not second.not_modified
  assert len(upstream.requests) == 2


def test_url_fetch_failure(cache: ImageCache, metadata: MemoryMetadataCache) -> None:
  with pytest.raises(UpstreamFetchError) as e:
    cache.ingest_from_url(ALICE, 'https://example.com/missing.png')

  assert e.value.status == 404
  assert metadata.entries == {}


def test_serve_from_url(cache: ImageCache, upstream: CountingTransport) -> None:
  upstream.bodies[URL] = make_png(80, 60)

  first = cache.serve_from_url(Caller.anonymous(), URL, {'w': '40'})
  cache.persist.flush()
  second = cache.serve_from_url(Caller.anonymous(), URL, {'w': '40'})

  assert image_size(first.data) == (40, 30)
  assert first.public
  assert second.cached
  assert len(upstream.requests) == 1


def test_delete_all(cache: ImageCache, store: MemoryObjectStore) -> None:
  image_id = cache.ingest_from_bytes(ALICE, make_png(80, 60)).id
  other_id = cache.ingest_from_bytes(ALICE, make_png(80, 60)).id
  for w in ('10', '20', '30'):
    cache.serve(ALICE, image_id, {'w': w})

  cache.delete_all(ALICE, image_id)

  assert store.list_keys(cache.codec.image_prefix('alice', image_id)) == []
  assert len(store.list_keys(cache.codec.image_prefix('alice', other_id))) == 1
  with pytest.raises(NotFoundError):
    cache.serve(ALICE, image_id, {})
  with pytest.raises(NotFoundError):
    cache.delete_all(ALICE, image_id)


def test_delete_requires_owner(cache: ImageCache) -> None:
  image_id = cache.ingest_from_bytes(ALICE, make_png(80, 60), public=True).id

  with pytest.raises(NotFoundError):
    cache.delete_all(BOB, image_id)
  with pytest.raises(NotFoundError):
    cache.delete_all(Caller.anonymous(), image_id)

  cache.delete_all(Caller.system(), image_id)


def test_delete_reports_failures_after_trying_all(
    cache: ImageCache,
    store: MemoryObjectStore,
    metadata: MemoryMetadataCache,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
  image_id = cache.ingest_from_bytes(ALICE, make_png(80, 60)).id
  cache.serve(ALICE, image_id, {'w': '10'})
  cache.serve(ALICE, image_id, {'w': '20'})
  cache.persist.flush()

  keys = store.list_keys(cache.codec.image_prefix('alice', image_id))
  delete = store.delete

  def failing_delete(key: str) -> None:
    if key == keys[0]:
      raise StorageError('boom')
    delete(key)

  monkeypatch.setattr(store, 'delete', failing_delete)

  with pytest.raises(StorageError):
    cache.delete_all(ALICE, image_id)

  assert metadata.get_by_id(image_id) is None
  assert store.list_keys(cache.codec.image_prefix('alice', image_id)) == [keys[0]]


def test_list_images(cache: ImageCache) -> None:
  ids = sorted(cache.ingest_from_bytes(ALICE, make_png(8, 6)).id for _ in range(5))
  cache.ingest_from_bytes(BOB, make_png(8, 6))

  page1 = cache.list_images(ALICE, limit=2)
  page2 = cache.list_images(ALICE, limit=2, token=page1.next_token)
  page3 = cache.list_images(ALICE, limit=2, token=page2.next_token)

  assert page1.ids + page2.ids + page3.ids == ids
  assert page3.next_token is None
  assert cache.list_images(Caller.anonymous()).ids == []


@pytest.mark.parametrize('limit', [0, 101])
def test_list_images_limit(cache: ImageCache, limit: int) -> None:
  with pytest.raises(ValidationError):
    cache.list_images(ALICE, limit=limit)


def test_list_images_rejects_foreign_token(cache: ImageCache) -> None:
  for _ in range(3):
    cache.ingest_from_bytes(ALICE, make_png(8, 6))

  token = cache.list_images(ALICE, limit=1).next_token

  with pytest.raises(ValidationError):
    cache.list_images(BOB, limit=1, token=token)


def test_concurrent_misses_converge(
    make_cache: Callable[[], ImageCache],
    store: MemoryObjectStore,
) -> None:
  a = make_cache()
  b = make_cache()
  image_id = a.ingest_from_bytes(ALICE, make_png(200, 100)).id

  with ThreadPoolExecutor(max_workers=4) as executor:
    results = list(
        executor.map(lambda c: c.serve(ALICE, image_id, {'w': '50'}), [a, b, a, b]))
  a.persist.flush()
  b.persist.flush()

  assert len({r.key for r in results}) == 1
  assert len(store.list_keys(KEY_PREFIX)) == 2
  assert a.serve(ALICE, image_id, {'w': '50'}).cached


def test_concurrent_url_ingests_converge(
    make_cache: Callable[[], ImageCache],
    metadata: MemoryMetadataCache,
    store: MemoryObjectStore,
    logger: Logger,
) -> None:
  barrier = threading.Barrier(2, timeout=5)
  body = make_png(80, 60)

  def handler(request: httpx.Request) -> httpx.Response:
    # Both ingests have missed the URL lookup before either creates.
    barrier.wait()
    return httpx.Response(200, content=body)

  caches = [make_cache(), make_cache()]
  for c in caches:
    c.fetcher = UrlFetcher(
        logger, httpx.Client(transport=httpx.MockTransport(handler)), 1024 * 1024)

  with ThreadPoolExecutor(max_workers=2) as executor:
    futures = [
        executor.submit(c.ingest_from_url, caller, URL) for c, caller in zip(caches, [ALICE, BOB])
    ]
    results = [f.result() for f in futures]

  assert results[0].id == results[1].id
  assert len(metadata.entries) == 1
  winner = metadata.entries[results[0].id]
  assert store.list_keys(KEY_PREFIX) == [winner.original_key]


def test_failed_refresh_keeps_entry(
    cache: ImageCache,
    metadata: MemoryMetadataCache,
    store: MemoryObjectStore,
    upstream: CountingTransport,
) -> None:
  upstream.bodies[URL] = make_png(80, 60)
  first = cache.ingest_from_url(ALICE, URL)
  cache.serve(ALICE, first.id, {'w': '10'})
  cache.persist.flush()
  keys = store.list_keys(KEY_PREFIX)

  upstream.bodies[URL] = b'<html>moved</html>'
  with pytest.raises(InvalidImageError):
    cache.ingest_from_url(ALICE, URL, force=True)

  assert metadata.get_by_id(first.id) is not None
  assert store.list_keys(KEY_PREFIX) == keys
  assert cache.serve(ALICE, first.id, {'w': '10'}).cached


class RacingMetadataCache(MemoryMetadataCache):
  """Lets another ingest win every create, optionally under another owner."""

  def __init__(self, winner_owner: Optional[str]):
    super().__init__()
    self.winner_owner = winner_owner

  def create(self, entry: CacheEntry) -> None:
    if self.winner_owner is not None:
      super().create(
          dataclasses.replace(
              entry,
              owner=self.winner_owner,
              original_key=S3Key(
                  entry.original_key.replace(f'{entry.owner}/', f'{self.winner_owner}/'))))
    raise AlreadyExistsError(entry.id)


def test_lost_creation_race_returns_winner(
    cache: ImageCache,
    store: MemoryObjectStore,
    upstream: CountingTransport,
) -> None:
  upstream.bodies[URL] = make_png(80, 60)
  racing = RacingMetadataCache('bob')
  cache.metadata = racing

  result = cache.ingest_from_url(ALICE, URL)

  winner = racing.entries[result.id]
  assert winner.owner == 'bob'
  assert not result.not_modified
  assert store.list_keys(cache.codec.owner_prefix('alice')) == []


def test_lost_creation_race_with_vanished_winner(
    cache: ImageCache,
    upstream: CountingTransport,
) -> None:
  upstream.bodies[URL] = make_png(80, 60)
  cache.metadata = RacingMetadataCache(None)

  with pytest.raises(StorageError):
    cache.ingest_from_url(ALICE, URL)


def test_url_ingest_clears_renditions_of_swept_entry(
    cache: ImageCache,
    metadata: MemoryMetadataCache,
    upstream: CountingTransport,
) -> None:
  upstream.bodies[URL] = make_png(80, 60)
  first = cache.ingest_from_url(ALICE, URL)
  cache.serve(ALICE, first.id, {'w': '10'})
  cache.persist.flush()

  # The row expires and is swept while its renditions stay in the bucket.
  metadata.delete(first.id)
  upstream.bodies[URL] = make_png(80, 60, RED)
  second = cache.ingest_from_url(ALICE, URL)
  served = cache.serve(ALICE, second.id, {'w': '10'})

  assert second.id == first.id
  assert not served.cached
  pixel = Image.new_from_buffer(served.data, '').getpoint(5, 3)
  assert all(abs(a - b) <= 1 for a, b in zip(pixel, RED))
