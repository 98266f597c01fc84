import base64
import dataclasses
import json
from http import HTTPStatus
from logging import Logger
from typing import Any, Callable, Optional

from imgcache.config import Config
from imgcache.errors import (
    AlreadyExistsError,
    InvalidImageError,
    NotFoundError,
    UpstreamFetchError,
    ValidationError
)
from imgcache.orchestrator import ImagePage, IngestResult, Served

JSON_MIME = 'application/json'


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  body: bytes
  content_type: Optional[str]
  cache_control: str

  @property
  def b64_body(self) -> str:
    return base64.b64encode(self.body).decode()


def json_dump(obj: Any) -> bytes:
  return json.dumps(obj, ensure_ascii=False, separators=(',', ':')).encode()


class Responder:
  """Maps every outcome of the cache to exactly one response."""

  def __init__(
      self,
      log: Logger,
      cache_control_perm: str,
      cache_control_private: str,
      cache_control_temp: str,
  ):
    self.log = log
    self.cache_control_perm = cache_control_perm
    self.cache_control_private = cache_control_private
    self.cache_control_temp = cache_control_temp

  @classmethod
  def from_config(cls, log: Logger, config: Config) -> 'Responder':
    return cls(
        log=log,
        cache_control_perm=config.cache_control_perm,
        cache_control_private=config.cache_control_private,
        cache_control_temp=config.cache_control_temp)

  def json(self, status: int, obj: Any, cache_control: Optional[str] = None) -> InstantResponse:
    return InstantResponse(
        status=status,
        body=json_dump(obj),
        content_type=JSON_MIME,
        cache_control=self.cache_control_temp if cache_control is None else cache_control)

  def served(self, served: Served) -> InstantResponse:
    return InstantResponse(
        status=HTTPStatus.OK,
        body=served.data,
        content_type=served.content_type,
        cache_control=self.cache_control_perm if served.public else self.cache_control_private)

  def ingested(self, result: IngestResult) -> InstantResponse:
    status = HTTPStatus.OK if result.not_modified else HTTPStatus.CREATED
    return self.json(status, {'id': result.id})

  def deleted(self, image_id: str) -> InstantResponse:
    return self.json(HTTPStatus.OK, {'id': image_id, 'deleted': True})

  def listed(self, page: ImagePage) -> InstantResponse:
    body: dict[str, Any] = {'images': page.ids}
    if page.next_token is not None:
      body['next_token'] = page.next_token
    return self.json(HTTPStatus.OK, body, self.cache_control_private)

  def error(self, e: Exception) -> InstantResponse:
    match e:
      case ValidationError():
        return self.json(HTTPStatus.BAD_REQUEST, {
            'error': 'invalid parameters',
            'fields': [{
                'field': f.field,
                'message': f.message
            } for f in e.errors],
        })
      case InvalidImageError():
        return self.json(HTTPStatus.BAD_REQUEST, {'error': str(e)})
      case NotFoundError():
        return self.json(HTTPStatus.NOT_FOUND, {'error': 'not found'})
      case AlreadyExistsError():
        return self.json(HTTPStatus.CONFLICT, {'error': 'already exists'})
      case UpstreamFetchError() if e.status == HTTPStatus.NOT_FOUND:
        return self.json(HTTPStatus.NOT_FOUND, {'error': e.reason})
      case UpstreamFetchError():
        self.log.warning({
            'message': 'upstream fetch failed',
            'url': e.url,
            'status': e.status,
            'reason': e.reason,
        })
        return self.json(HTTPStatus.BAD_GATEWAY, {'error': e.reason})
      case _:
        self.log.error({
            'message': 'internal error',
            'type': type(e).__name__,
            'reason': str(e),
        })
        return self.json(HTTPStatus.INTERNAL_SERVER_ERROR, {'error': 'internal error'})

  def respond(self, fn: Callable[[], InstantResponse]) -> InstantResponse:
    try:
      return fn()
    except Exception as e:
      return self.error(e)
