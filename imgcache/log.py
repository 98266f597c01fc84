import datetime
import logging
import sys
from logging import Logger
from typing import Any

from pythonjsonlogger.json import JsonFormatter

import imgcache

QUIET_LOGGERS = {
    'botocore': logging.WARNING,
    'boto3': logging.WARNING,
    's3transfer': logging.WARNING,
    'urllib3': logging.INFO,
    'httpx': logging.WARNING,
    'httpcore': logging.WARNING,
}


class JsonLogFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgcache.version

    super().add_fields(log_record, record, message_dict)


def init_logging(level: int = logging.DEBUG) -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  root = logging.getLogger()
  root.setLevel(level)
  for h in list(root.handlers):
    root.removeHandler(h)

  for name, quiet_level in QUIET_LOGGERS.items():
    logging.getLogger(name).setLevel(quiet_level)

  log = logging.getLogger('imgcache')
  for h in list(log.handlers):
    log.removeHandler(h)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(JsonLogFormatter())
  log_handler.setLevel(level)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log
