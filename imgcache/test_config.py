from logging import Logger

import pytest

from imgcache.config import DEFAULT_URL_CACHE_TTL, Config
from imgcache.errors import ConfigError

ENV = {
    'IMAGE_BUCKET': 'images',
    'IMAGE_TABLE': 'entries',
}


def test_from_env_defaults(logger: Logger) -> None:
  config = Config.from_env(logger, ENV)

  assert config == Config(bucket='images', table='entries')
  assert config.url_cache_ttl == DEFAULT_URL_CACHE_TTL
  assert config.cache_control_temp == 'public, max-age=1200'


def test_from_env_overrides(logger: Logger) -> None:
  config = Config.from_env(
      logger, {
          **ENV,
          'IMAGE_BUCKET_PREFIX': 'cache/',
          'AWS_REGION': 'ap-northeast-1',
          'S3_ENDPOINT': 'http://localhost:9000',
          'DYNAMODB_ENDPOINT': '',
          'URL_CACHE_TTL_SECONDS': '60',
          'FETCH_TIMEOUT_SECONDS': '2.5',
          'TRANSFORM_WORKERS': '8',
      })

  assert config is not None
  assert config.key_prefix == 'cache/'
  assert config.region == 'ap-northeast-1'
  assert config.s3_endpoint == 'http://localhost:9000'
  assert config.dynamodb_endpoint is None
  assert config.url_cache_ttl == 60
  assert config.fetch_timeout == 2.5
  assert config.transform_workers == 8


@pytest.mark.parametrize('missing', ['IMAGE_BUCKET', 'IMAGE_TABLE'])
def test_from_env_missing(logger: Logger, missing: str) -> None:
  env = {k: v for k, v in ENV.items() if k != missing}

  assert Config.from_env(logger, env) is None


@pytest.mark.parametrize('name,value', [
    ('URL_CACHE_TTL_SECONDS', 'soon'),
    ('URL_CACHE_TTL_SECONDS', '0'),
    ('FETCH_TIMEOUT_SECONDS', '-1'),
    ('MAX_FETCH_BYTES', '1.5'),
])
def test_from_env_invalid(logger: Logger, name: str, value: str) -> None:
  with pytest.raises(ConfigError):
    Config.from_env(logger, {**ENV, name: value})
