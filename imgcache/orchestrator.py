import dataclasses
import datetime
import uuid
from concurrent.futures import ThreadPoolExecutor
from logging import Logger
from typing import Any, Callable, Optional, TypeVar

import boto3
import httpx

from imgcache.config import Config
from imgcache.errors import (
    AlreadyExistsError,
    FieldError,
    NotFoundError,
    StorageError,
    ValidationError
)
from imgcache.fetch import USER_AGENT, UrlFetcher
from imgcache.keys import KeyCodec
from imgcache.metadata import CacheEntry, Caller, DynamoMetadataCache, MetadataCache, get_now
from imgcache.params import OutputFormat, RenditionParams, canonicalize
from imgcache.persist import PersistQueue
from imgcache.resolver import DerivePlan, ExactHit, VariantResolver
from imgcache.storage import ObjectStore, S3ObjectStore
from imgcache.transform import TransformEngine
from imgcache.typing import ImageId, RawParams, S3Key

DEFAULT_LIST_LIMIT = 20
MAX_LIST_LIMIT = 100

T = TypeVar('T')


@dataclasses.dataclass(frozen=True)
class Served:
  data: bytes
  key: S3Key
  params: RenditionParams
  public: bool
  cached: bool

  @property
  def content_type(self) -> str:
    return self.params.format.content_type()


@dataclasses.dataclass(eq=True, frozen=True)
class IngestResult:
  id: ImageId
  not_modified: bool


@dataclasses.dataclass(frozen=True)
class ImagePage:
  ids: list[ImageId]
  next_token: Optional[str]


def new_image_id() -> ImageId:
  return ImageId(str(uuid.uuid4()))


def url_image_id(url: str) -> ImageId:
  # Racing first ingests of one URL collide on the conditional create.
  return ImageId(str(uuid.uuid5(uuid.NAMESPACE_URL, url)))


class ImageCache:

  def __init__(
      self,
      log: Logger,
      store: ObjectStore,
      metadata: MetadataCache,
      codec: KeyCodec,
      engine: TransformEngine,
      fetcher: UrlFetcher,
      persist: PersistQueue,
      transform_workers: int,
      url_cache_ttl: int,
      clock: Callable[[], datetime.datetime] = get_now,
  ):
    self.log = log
    self.store = store
    self.metadata = metadata
    self.codec = codec
    self.engine = engine
    self.fetcher = fetcher
    self.persist = persist
    self.executor = ThreadPoolExecutor(
        max_workers=transform_workers, thread_name_prefix='imgcache-transform')
    self.url_cache_ttl = datetime.timedelta(seconds=url_cache_ttl)
    self.clock = clock
    self.resolver = VariantResolver(log, store, metadata, codec, clock)

  @classmethod
  def from_config(cls, log: Logger, config: Config) -> 'ImageCache':
    s3 = boto3.client('s3', region_name=config.region, endpoint_url=config.s3_endpoint)
    dynamodb = boto3.client(
        'dynamodb', region_name=config.region, endpoint_url=config.dynamodb_endpoint)
    http = httpx.Client(timeout=config.fetch_timeout, headers={'user-agent': USER_AGENT})

    store = S3ObjectStore(s3, config.bucket)
    return cls(
        log=log,
        store=store,
        metadata=DynamoMetadataCache(dynamodb, config.table),
        codec=KeyCodec(config.key_prefix),
        engine=TransformEngine(log),
        fetcher=UrlFetcher(log, http, config.max_fetch_bytes),
        persist=PersistQueue(log, store, config.persist_workers),
        transform_workers=config.transform_workers,
        url_cache_ttl=config.url_cache_ttl)

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **dict,
    })

  def run_transform(self, fn: Callable[..., T], *args: Any) -> T:
    return self.executor.submit(fn, *args).result()

  def serve(self, caller: Caller, image_id: str, raw_params: RawParams) -> Served:
    entry = self.resolver.load_entry(caller, image_id)
    original = self.resolver.decode_original(entry)
    params = canonicalize(raw_params, default_format=original.params.format)

    match self.resolver.resolve_entry(entry, original, params):
      case ExactHit() as hit:
        self.log_debug('exact hit', {'key': hit.key})
        return Served(
            data=hit.data, key=hit.key, params=hit.params, public=entry.public, cached=True)
      case DerivePlan() as plan:
        return self.derive(plan)
      case _:
        raise Exception('system error')

  def derive(self, plan: DerivePlan) -> Served:
    source = self.store.get(plan.source_key)
    derived = self.run_transform(
        self.engine.derive, source, plan.source_params, plan.target_params)

    if not derived.changed:
      self.log_debug('served source as is', {'key': plan.source_key})
      return Served(
          data=derived.data,
          key=plan.source_key,
          params=derived.params,
          public=plan.entry.public,
          cached=True)

    key = self.codec.encode(plan.entry.owner, plan.entry.id, derived.params)
    if key != plan.exact_key:
      self.log_warning('derived size differs from requested', {
          'exact_key': plan.exact_key,
          'key': key,
      })

    self.persist.submit(key, derived.data, derived.params.format.content_type())
    self.log_debug('derived', {
        'source_key': plan.source_key,
        'key': key,
        'vips_us': derived.vips_us,
    })
    return Served(
        data=derived.data, key=key, params=derived.params, public=plan.entry.public, cached=False)

  def prepare_original(self, data: bytes) -> tuple[RenditionParams, bytes]:
    """Decode ``data`` and return the params and bytes to store as the original.

    Raises ``InvalidImageError`` before anything is written.
    """
    info = self.run_transform(self.engine.inspect, data)

    fmt = info.output_format
    if fmt is None:
      # Keep every stored key decodable.
      fmt = OutputFormat.PNG
      data = self.run_transform(self.engine.transcode, data, RenditionParams(format=fmt))
      self.log_debug('transcoded original', {'from': info.format})

    return RenditionParams(format=fmt, width=info.size.width, height=info.size.height), data

  def put_original(
      self,
      owner: str,
      image_id: ImageId,
      params: RenditionParams,
      data: bytes,
  ) -> S3Key:
    key = self.codec.encode(owner, image_id, params)
    self.store.put(key, data, params.format.content_type())
    return key

  def store_original(self, owner: str, image_id: ImageId, data: bytes) -> S3Key:
    params, data = self.prepare_original(data)
    return self.put_original(owner, image_id, params, data)

  def ingest_from_url(self, caller: Caller, url: str, force: bool = False) -> IngestResult:
    now = self.clock()
    cached = self.metadata.get_by_url(url)
    if cached is not None and not force and not cached.is_expired(now):
      return IngestResult(id=cached.id, not_modified=True)

    params, data = self.prepare_original(self.fetcher.fetch(url))

    if cached is None:
      image_id = url_image_id(url)
      # A row removed by the TTL sweeper leaves its renditions behind.
      self.delete_keys(image_id, self.codec.image_prefix(caller.owner, image_id))
    else:
      # Refresh under the same id; stale renditions must not outlive it.
      image_id = cached.id
      self.purge(cached)

    entry = CacheEntry(
        id=image_id,
        owner=caller.owner,
        original_key=self.put_original(caller.owner, image_id, params, data),
        created_at=now,
        public=True,
        source_url=url,
        expires_at=now + self.url_cache_ttl)

    try:
      self.metadata.create(entry)
    except AlreadyExistsError:
      winner = self.metadata.get_by_id(image_id)
      if winner is None:
        raise StorageError(f'entry {image_id} vanished after a conflicting create')
      if winner.original_key != entry.original_key:
        self.store.delete(entry.original_key)
      self.log_debug('lost creation race', {'id': image_id, 'url': url})
      return IngestResult(id=winner.id, not_modified=False)

    self.log_debug('ingested from url', {'id': image_id, 'url': url, 'key': entry.original_key})
    return IngestResult(id=image_id, not_modified=False)

  def ingest_from_bytes(self, caller: Caller, data: bytes, public: bool = False) -> IngestResult:
    image_id = new_image_id()
    entry = CacheEntry(
        id=image_id,
        owner=caller.owner,
        original_key=self.store_original(caller.owner, image_id, data),
        created_at=self.clock(),
        public=public)
    self.metadata.create(entry)

    self.log_debug('ingested', {'id': image_id, 'key': entry.original_key})
    return IngestResult(id=image_id, not_modified=False)

  def serve_from_url(
      self,
      caller: Caller,
      url: str,
      raw_params: RawParams,
      force: bool = False,
  ) -> Served:
    result = self.ingest_from_url(caller, url, force)
    return self.serve(caller, result.id, raw_params)

  def purge(self, entry: CacheEntry) -> None:
    prefix = self.codec.image_prefix(entry.owner, entry.id)
    self.persist.wait_for_prefix(prefix)

    # Without the entry nothing resolves to the renditions any more.
    self.metadata.delete(entry.id)
    self.delete_keys(entry.id, prefix)

  def delete_keys(self, image_id: str, prefix: str) -> None:
    self.persist.wait_for_prefix(prefix)

    failed: list[str] = []
    for key in self.store.list_keys(prefix):
      try:
        self.store.delete(key)
      except StorageError as e:
        self.log_error('failed to delete rendition', {'key': key, 'error': str(e)})
        failed.append(key)

    if len(failed) > 0:
      raise StorageError(f'failed to delete {len(failed)} renditions of {image_id}')

  def delete_all(self, caller: Caller, image_id: str) -> None:
    entry = self.metadata.get_by_id(image_id)
    if entry is None or not entry.owned_by(caller):
      raise NotFoundError(image_id)

    self.purge(entry)
    self.log_debug('deleted', {'id': image_id})

  def list_images(
      self,
      caller: Caller,
      limit: int = DEFAULT_LIST_LIMIT,
      token: Optional[str] = None,
  ) -> ImagePage:
    if limit < 1 or limit > MAX_LIST_LIMIT:
      raise ValidationError([FieldError('limit', f'must be between 1 and {MAX_LIST_LIMIT}')])
    if caller.user_id is None and not caller.is_system:
      return ImagePage(ids=[], next_token=None)

    page = self.metadata.list_by_owner(caller.owner, limit, token)
    return ImagePage(ids=[e.id for e in page.entries], next_token=page.next_token)

  def close(self) -> None:
    self.persist.close()
    self.executor.shutdown(wait=True)
    self.fetcher.close()
