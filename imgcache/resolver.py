import dataclasses
import datetime
from logging import Logger
from typing import Any, Callable

from imgcache.errors import InvalidKeyError, NotFoundError
from imgcache.geometry import Size, calc_target_size
from imgcache.keys import DecodedKey, KeyCodec
from imgcache.metadata import CacheEntry, Caller, MetadataCache, get_now
from imgcache.params import RenditionParams
from imgcache.storage import ObjectStore
from imgcache.typing import S3Key


@dataclasses.dataclass(frozen=True)
class ExactHit:
  entry: CacheEntry
  key: S3Key
  params: RenditionParams
  data: bytes


@dataclasses.dataclass(frozen=True)
class DerivePlan:
  entry: CacheEntry
  source_key: S3Key
  source_params: RenditionParams
  target_params: RenditionParams
  exact_key: S3Key


@dataclasses.dataclass(frozen=True)
class Candidate:
  key: S3Key
  params: RenditionParams
  is_original: bool

  def rank(self) -> tuple[int, int, int, str]:
    # Smallest rank wins.
    return (-self.params.pixels, -self.params.quality, 0 if self.is_original else 1, self.key)


class VariantResolver:

  def __init__(
      self,
      log: Logger,
      store: ObjectStore,
      metadata: MetadataCache,
      codec: KeyCodec,
      clock: Callable[[], datetime.datetime] = get_now,
  ):
    self.log = log
    self.store = store
    self.metadata = metadata
    self.codec = codec
    self.clock = clock

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **dict,
    })

  def load_entry(self, caller: Caller, image_id: str) -> CacheEntry:
    """Return the entry readable by ``caller``.

    An absent id, an expired URL-cache entry and an entry the caller may not
    read raise the same ``NotFoundError`` so that ids cannot be discovered.
    """
    entry = self.metadata.get_by_id(image_id)
    if entry is None or entry.is_expired(self.clock()) or not entry.readable_by(caller):
      raise NotFoundError(image_id)
    return entry

  def decode_original(self, entry: CacheEntry) -> DecodedKey:
    original = self.codec.decode(entry.original_key)
    if original.params.width is None or original.params.height is None:
      raise InvalidKeyError(entry.original_key, 'original key without size')
    return original

  def pin(self, original: DecodedKey, params: RenditionParams) -> RenditionParams:
    source = Size.maybe_from_params(original.params.width, original.params.height)
    if source is None:
      raise Exception('system error')
    size = calc_target_size(source, params.width, params.height, params.fit)
    return params.with_size(size.width, size.height)

  def candidates(self, entry: CacheEntry) -> list[Candidate]:
    candidates: list[Candidate] = []
    for key in self.store.list_keys(self.codec.image_prefix(entry.owner, entry.id)):
      decoded = self.codec.maybe_decode(key)
      if isinstance(decoded, InvalidKeyError):
        self.log_warning('skipped undecodable rendition key', {
            'key': key,
            'reason': decoded.reason,
        })
        continue
      if decoded.image_id != entry.id:
        continue
      candidates.append(
          Candidate(
              key=S3Key(key), params=decoded.params, is_original=key == entry.original_key))
    return candidates

  def best_source(self, entry: CacheEntry, original: DecodedKey) -> Candidate:
    candidates = self.candidates(entry)
    if len(candidates) == 0:
      return Candidate(key=entry.original_key, params=original.params, is_original=True)
    return min(candidates, key=Candidate.rank)

  def resolve(
      self,
      caller: Caller,
      image_id: str,
      params: RenditionParams,
  ) -> ExactHit | DerivePlan:
    entry = self.load_entry(caller, image_id)
    return self.resolve_entry(entry, self.decode_original(entry), params)

  def resolve_entry(
      self,
      entry: CacheEntry,
      original: DecodedKey,
      params: RenditionParams,
  ) -> ExactHit | DerivePlan:
    target = self.pin(original, params)
    exact_key = self.codec.encode(entry.owner, entry.id, target)

    try:
      data = self.store.get(exact_key)
      return ExactHit(entry=entry, key=exact_key, params=target, data=data)
    except NotFoundError:
      pass

    source = self.best_source(entry, original)
    return DerivePlan(
        entry=entry,
        source_key=source.key,
        source_params=source.params,
        target_params=target,
        exact_key=exact_key)
