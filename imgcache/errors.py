import dataclasses
from typing import Optional


class ImgCacheError(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class FieldError:
  field: str
  message: str


class ValidationError(ImgCacheError):

  def __init__(self, errors: list[FieldError]):
    self.errors = errors
    super().__init__('; '.join(f'{e.field}: {e.message}' for e in errors))

  @property
  def fields(self) -> list[str]:
    return [e.field for e in self.errors]


class InvalidKeyError(ImgCacheError):

  def __init__(self, key: str, reason: str):
    self.key = key
    self.reason = reason
    super().__init__(f'invalid key "{key}": {reason}')


class NotFoundError(ImgCacheError):
  pass


class AlreadyExistsError(ImgCacheError):
  pass


class InvalidImageError(ImgCacheError):
  pass


class UpstreamFetchError(ImgCacheError):

  def __init__(self, url: str, status: Optional[int], reason: str):
    self.url = url
    self.status = status
    self.reason = reason
    super().__init__(f'failed to fetch {url}: {reason}')


class StorageError(ImgCacheError):
  pass


class ConfigError(ImgCacheError):
  pass
