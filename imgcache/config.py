import dataclasses
import os
from logging import Logger
from typing import Mapping, Optional

from imgcache.errors import ConfigError

DEFAULT_REGION = 'us-east-1'
DEFAULT_URL_CACHE_TTL = 24 * 60 * 60
DEFAULT_FETCH_TIMEOUT = 10.0
DEFAULT_MAX_FETCH_BYTES = 32 * 1024 * 1024
DEFAULT_TRANSFORM_WORKERS = 4
DEFAULT_PERSIST_WORKERS = 2
DEFAULT_PERM_RESP_MAX_AGE = 365 * 24 * 60 * 60
DEFAULT_TEMP_RESP_MAX_AGE = 20 * 60


@dataclasses.dataclass(eq=True, frozen=True)
class Config:
  bucket: str
  table: str
  key_prefix: str = ''
  region: str = DEFAULT_REGION
  s3_endpoint: Optional[str] = None
  dynamodb_endpoint: Optional[str] = None
  url_cache_ttl: int = DEFAULT_URL_CACHE_TTL
  fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
  max_fetch_bytes: int = DEFAULT_MAX_FETCH_BYTES
  transform_workers: int = DEFAULT_TRANSFORM_WORKERS
  persist_workers: int = DEFAULT_PERSIST_WORKERS
  perm_resp_max_age: int = DEFAULT_PERM_RESP_MAX_AGE
  temp_resp_max_age: int = DEFAULT_TEMP_RESP_MAX_AGE

  @classmethod
  def from_env(cls, log: Logger, environ: Optional[Mapping[str, str]] = None) -> Optional['Config']:
    env = os.environ if environ is None else environ

    try:
      bucket = env['IMAGE_BUCKET']
      table = env['IMAGE_TABLE']
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None

    return cls(
        bucket=bucket,
        table=table,
        key_prefix=env.get('IMAGE_BUCKET_PREFIX', ''),
        region=env.get('AWS_REGION') or env.get('AWS_DEFAULT_REGION') or DEFAULT_REGION,
        s3_endpoint=env.get('S3_ENDPOINT') or None,
        dynamodb_endpoint=env.get('DYNAMODB_ENDPOINT') or None,
        url_cache_ttl=_positive_int(env, 'URL_CACHE_TTL_SECONDS', DEFAULT_URL_CACHE_TTL),
        fetch_timeout=_positive_float(env, 'FETCH_TIMEOUT_SECONDS', DEFAULT_FETCH_TIMEOUT),
        max_fetch_bytes=_positive_int(env, 'MAX_FETCH_BYTES', DEFAULT_MAX_FETCH_BYTES),
        transform_workers=_positive_int(env, 'TRANSFORM_WORKERS', DEFAULT_TRANSFORM_WORKERS),
        persist_workers=_positive_int(env, 'PERSIST_WORKERS', DEFAULT_PERSIST_WORKERS),
        perm_resp_max_age=_positive_int(env, 'PERM_RESP_MAX_AGE', DEFAULT_PERM_RESP_MAX_AGE),
        temp_resp_max_age=_positive_int(env, 'TEMP_RESP_MAX_AGE', DEFAULT_TEMP_RESP_MAX_AGE))

  @property
  def cache_control_perm(self) -> str:
    return f'public, max-age={self.perm_resp_max_age}'

  @property
  def cache_control_private(self) -> str:
    return f'private, max-age={self.perm_resp_max_age}'

  @property
  def cache_control_temp(self) -> str:
    return f'public, max-age={self.temp_resp_max_age}'


def _positive_int(env: Mapping[str, str], name: str, default: int) -> int:
  if not env.get(name):
    return default
  try:
    value = int(env[name])
  except ValueError:
    raise ConfigError(f'{name} must be an integer: {env[name]}')
  if value <= 0:
    raise ConfigError(f'{name} must be positive: {value}')
  return value


def _positive_float(env: Mapping[str, str], name: str, default: float) -> float:
  if not env.get(name):
    return default
  try:
    value = float(env[name])
  except ValueError:
    raise ConfigError(f'{name} must be a number: {env[name]}')
  if value <= 0:
    raise ConfigError(f'{name} must be positive: {value}')
  return value
