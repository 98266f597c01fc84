from typing import Protocol

from botocore.exceptions import BotoCoreError, ClientError
from mypy_boto3_s3.client import S3Client

from imgcache.errors import NotFoundError, StorageError


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey', 'NotFound']


class ObjectStore(Protocol):

  def put(self, key: str, data: bytes, content_type: str) -> None:
    ...

  def get(self, key: str) -> bytes:
    ...

  def delete(self, key: str) -> None:
    ...

  def list_keys(self, prefix: str) -> list[str]:
    ...


class S3ObjectStore:

  def __init__(self, s3: S3Client, bucket: str):
    self.s3 = s3
    self.bucket = bucket

  def put(self, key: str, data: bytes, content_type: str) -> None:
    try:
      self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
    except (ClientError, BotoCoreError) as e:
      raise StorageError(f'failed to put {key}: {e}') from e

  def get(self, key: str) -> bytes:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=key)
      chunks = []
      for chunk in res['Body'].iter_chunks():
        chunks.append(chunk)
      return b''.join(chunks)
    except ClientError as e:
      if is_not_found_client_error(e):
        raise NotFoundError(key) from e
      raise StorageError(f'failed to get {key}: {e}') from e
    except BotoCoreError as e:
      raise StorageError(f'failed to get {key}: {e}') from e

  def delete(self, key: str) -> None:
    # S3 answers 204 for absent keys as well.
    try:
      self.s3.delete_object(Bucket=self.bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        return
      raise StorageError(f'failed to delete {key}: {e}') from e
    except BotoCoreError as e:
      raise StorageError(f'failed to delete {key}: {e}') from e

  def list_keys(self, prefix: str) -> list[str]:
    keys: list[str] = []
    try:
      paginator = self.s3.get_paginator('list_objects_v2')
      for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
        for obj in page.get('Contents', []):
          if 'Key' in obj:
            keys.append(obj['Key'])
    except (ClientError, BotoCoreError) as e:
      raise StorageError(f'failed to list {prefix}: {e}') from e

    return keys
