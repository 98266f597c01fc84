import datetime
import logging
import threading
from logging import Logger
from typing import Callable, Generator, Optional

import httpx
import pytest
from dateutil import tz
from pyvips import Image  # type: ignore

from imgcache.errors import AlreadyExistsError, NotFoundError
from imgcache.fetch import UrlFetcher
from imgcache.keys import KeyCodec
from imgcache.log import JsonLogFormatter
from imgcache.metadata import CacheEntry, EntryPage, decode_page_token, encode_page_token
from imgcache.orchestrator import ImageCache
from imgcache.persist import PersistQueue
from imgcache.transform import TransformEngine

KEY_PREFIX = 'prefix/'
URL_CACHE_TTL = 60 * 60
DUMMY_DATETIME = datetime.datetime(2000, 1, 1, tzinfo=tz.tzutc())

RED = [200, 30, 10]
GREEN = [10, 200, 30]


def make_image(width: int, height: int, colour: list[int] = GREEN) -> Image:
  return (Image.black(width, height, bands=len(colour)) + colour).cast('uchar').copy(
      interpretation='srgb')


def make_png(width: int, height: int, colour: list[int] = GREEN) -> bytes:
  return make_image(width, height, colour).write_to_buffer('.png')


def make_jpeg(width: int, height: int, quality: int = 90) -> bytes:
  return make_image(width, height).write_to_buffer('.jpg', Q=quality)


def image_size(data: bytes) -> tuple[int, int]:
  image = Image.new_from_buffer(data, '')
  return image.width, image.height


class MemoryObjectStore:

  def __init__(self) -> None:
    self.lock = threading.Lock()
    self.objects: dict[str, tuple[bytes, str]] = {}
    self.gets: list[str] = []

  def put(self, key: str, data: bytes, content_type: str) -> None:
    with self.lock:
      self.objects[key] = (data, content_type)

  def get(self, key: str) -> bytes:
    with self.lock:
      self.gets.append(key)
      if key not in self.objects:
        raise NotFoundError(key)
      return self.objects[key][0]

  def delete(self, key: str) -> None:
    with self.lock:
      self.objects.pop(key, None)

  def list_keys(self, prefix: str) -> list[str]:
    with self.lock:
      return sorted(k for k in self.objects if k.startswith(prefix))


class MemoryMetadataCache:

  def __init__(self) -> None:
    self.lock = threading.Lock()
    self.entries: dict[str, CacheEntry] = {}

  def get_by_id(self, image_id: str) -> Optional[CacheEntry]:
    with self.lock:
      return self.entries.get(image_id)

  def get_by_url(self, url: str) -> Optional[CacheEntry]:
    with self.lock:
      found = [e for e in self.entries.values() if e.source_url == url]
    if len(found) == 0:
      return None
    return max(found, key=lambda e: e.expires_at or DUMMY_DATETIME)

  def create(self, entry: CacheEntry) -> None:
    with self.lock:
      if entry.id in self.entries:
        raise AlreadyExistsError(entry.id)
      self.entries[entry.id] = entry

  def delete(self, image_id: str) -> Optional[CacheEntry]:
    with self.lock:
      return self.entries.pop(image_id, None)

  def list_by_owner(self, owner: str, limit: int, token: Optional[str]) -> EntryPage:
    start = '' if token is None else decode_page_token(token, owner)['id']
    with self.lock:
      owned = sorted((e for e in self.entries.values() if e.owner == owner and e.id > start),
                     key=lambda e: e.id)

    page = owned[:limit]
    next_token = None
    if len(owned) > limit:
      next_token = encode_page_token({'id': page[-1].id, 'user': owner})
    return EntryPage(entries=page, next_token=next_token)


class FakeClock:

  def __init__(self, now: datetime.datetime):
    self.now = now

  def __call__(self) -> datetime.datetime:
    return self.now

  def advance(self, seconds: int) -> None:
    self.now += datetime.timedelta(seconds=seconds)


class CountingTransport:
  """Serves fixed bodies per URL and counts upstream requests."""

  def __init__(self, bodies: dict[str, bytes]):
    self.bodies = bodies
    self.requests: list[str] = []

  def __call__(self, request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    self.requests.append(url)
    if url not in self.bodies:
      return httpx.Response(404)
    return httpx.Response(200, content=self.bodies[url])


@pytest.fixture
def logger() -> Logger:
  log = logging.getLogger('imgcache.test')
  log.setLevel(logging.DEBUG)

  if len(log.handlers) == 0:
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JsonLogFormatter())
    log_handler.setLevel(logging.DEBUG)
    log.addHandler(log_handler)

  return log


@pytest.fixture
def codec() -> KeyCodec:
  return KeyCodec(KEY_PREFIX)


@pytest.fixture
def store() -> MemoryObjectStore:
  return MemoryObjectStore()


@pytest.fixture
def metadata() -> MemoryMetadataCache:
  return MemoryMetadataCache()


@pytest.fixture
def clock() -> FakeClock:
  return FakeClock(datetime.datetime(2024, 1, 1, tzinfo=tz.tzutc()))


@pytest.fixture
def upstream() -> CountingTransport:
  return CountingTransport({})


@pytest.fixture
def engine(logger: Logger) -> TransformEngine:
  return TransformEngine(logger)


@pytest.fixture
def make_cache(
    logger: Logger,
    store: MemoryObjectStore,
    metadata: MemoryMetadataCache,
    codec: KeyCodec,
    engine: TransformEngine,
    clock: FakeClock,
    upstream: CountingTransport,
) -> Generator[Callable[[], ImageCache], None, None]:
  caches: list[ImageCache] = []

  def make() -> ImageCache:
    client = httpx.Client(transport=httpx.MockTransport(upstream))
    cache = ImageCache(
        log=logger,
        store=store,
        metadata=metadata,
        codec=codec,
        engine=engine,
        fetcher=UrlFetcher(logger, client, 1024 * 1024),
        persist=PersistQueue(logger, store, 2),
        transform_workers=2,
        url_cache_ttl=URL_CACHE_TTL,
        clock=clock)
    caches.append(cache)
    return cache

  yield make

  for c in caches:
    c.close()


@pytest.fixture
def cache(make_cache: Callable[[], ImageCache]) -> ImageCache:
  return make_cache()
