import base64
import binascii
import dataclasses
import datetime
import json
from typing import Any, Optional, Protocol

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError
from dateutil import parser, tz
from mypy_boto3_dynamodb.client import DynamoDBClient

from imgcache.errors import AlreadyExistsError, FieldError, StorageError, ValidationError
from imgcache.typing import CacheEntryItem, ImageId, PageToken, S3Key

SYSTEM_OWNER = 'internal'

URL_INDEX = 'url'
USER_INDEX = 'user'

serializer = TypeSerializer()
deserializer = TypeDeserializer()


def get_now() -> datetime.datetime:
  # Return timezone-aware datetime
  return datetime.datetime.now(tz=tz.tzutc())


@dataclasses.dataclass(eq=True, frozen=True)
class Caller:
  user_id: Optional[str] = None
  is_system: bool = False

  @classmethod
  def anonymous(cls) -> 'Caller':
    return cls()

  @classmethod
  def system(cls) -> 'Caller':
    return cls(is_system=True)

  @classmethod
  def user(cls, user_id: str) -> 'Caller':
    return cls(user_id=user_id)

  @property
  def owner(self) -> str:
    if self.user_id is not None:
      return self.user_id
    return SYSTEM_OWNER


@dataclasses.dataclass(eq=True, frozen=True)
class CacheEntry:
  id: ImageId
  owner: str
  original_key: S3Key
  created_at: datetime.datetime
  public: bool = False
  source_url: Optional[str] = None
  expires_at: Optional[datetime.datetime] = None

  def is_expired(self, now: datetime.datetime) -> bool:
    return self.expires_at is not None and self.expires_at < now

  def owned_by(self, caller: Caller) -> bool:
    return caller.is_system or (caller.user_id is not None and caller.user_id == self.owner)

  def readable_by(self, caller: Caller) -> bool:
    return self.public or self.owned_by(caller)

  def to_item(self) -> CacheEntryItem:
    item: CacheEntryItem = {
        'id': self.id,
        'user': self.owner,
        'original_key': self.original_key,
        'created_at': self.created_at.astimezone(datetime.timezone.utc).isoformat(),
        'public': self.public,
    }
    if self.source_url is not None:
      item['url'] = self.source_url
    if self.expires_at is not None:
      item['exp'] = int(self.expires_at.timestamp())
    return item

  @classmethod
  def from_item(cls, item: dict[str, Any]) -> 'CacheEntry':
    exp = item.get('exp')
    return cls(
        id=ImageId(item['id']),
        owner=item['user'],
        original_key=S3Key(item['original_key']),
        created_at=parser.isoparse(item['created_at']),
        public=bool(item.get('public', False)),
        source_url=item.get('url'),
        expires_at=None if exp is None else datetime.datetime.fromtimestamp(
            int(exp), tz=tz.tzutc()))


@dataclasses.dataclass(frozen=True)
class EntryPage:
  entries: list[CacheEntry]
  next_token: Optional[str]


def to_attributes(item: dict[str, Any]) -> dict[str, Any]:
  return {k: serializer.serialize(v) for k, v in item.items()}


def from_attributes(attributes: dict[str, Any]) -> dict[str, Any]:
  return {k: deserializer.deserialize(v) for k, v in attributes.items()}


def encode_page_token(key: PageToken) -> str:
  return base64.urlsafe_b64encode(json.dumps(key, sort_keys=True).encode()).decode()


def decode_page_token(token: str, owner: str) -> PageToken:
  try:
    raw = json.loads(base64.urlsafe_b64decode(token.encode()))
  except (binascii.Error, ValueError, UnicodeDecodeError):
    raise ValidationError([FieldError('token', 'malformed pagination token')])

  if (not isinstance(raw, dict) or not isinstance(raw.get('id'), str) or
      raw.get('user') != owner):
    raise ValidationError([FieldError('token', 'malformed pagination token')])

  return {'id': raw['id'], 'user': raw['user']}


class MetadataCache(Protocol):

  def get_by_id(self, image_id: str) -> Optional[CacheEntry]:
    ...

  def get_by_url(self, url: str) -> Optional[CacheEntry]:
    ...

  def create(self, entry: CacheEntry) -> None:
    ...

  def delete(self, image_id: str) -> Optional[CacheEntry]:
    ...

  def list_by_owner(self, owner: str, limit: int, token: Optional[str]) -> EntryPage:
    ...


class DynamoMetadataCache:

  def __init__(self, dynamodb: DynamoDBClient, table: str):
    self.dynamodb = dynamodb
    self.table = table

  def get_by_id(self, image_id: str) -> Optional[CacheEntry]:
    try:
      res = self.dynamodb.get_item(
          TableName=self.table, Key=to_attributes({'id': image_id}), ConsistentRead=True)
    except (ClientError, BotoCoreError) as e:
      raise StorageError(f'failed to get entry {image_id}: {e}') from e

    if 'Item' not in res:
      return None
    return CacheEntry.from_item(from_attributes(res['Item']))

  def get_by_url(self, url: str) -> Optional[CacheEntry]:
    try:
      res = self.dynamodb.query(
          TableName=self.table,
          IndexName=URL_INDEX,
          KeyConditionExpression='#url = :url',
          ExpressionAttributeNames={'#url': 'url'},
          ExpressionAttributeValues=to_attributes({':url': url}))
    except (ClientError, BotoCoreError) as e:
      raise StorageError(f'failed to query entry by url {url}: {e}') from e

    entries = [CacheEntry.from_item(from_attributes(i)) for i in res.get('Items', [])]
    if len(entries) == 0:
      return None

    # Rows of an older ingest may linger until the TTL sweeper removes them.
    def freshness(entry: CacheEntry) -> float:
      return 0.0 if entry.expires_at is None else entry.expires_at.timestamp()

    return max(entries, key=freshness)

  def create(self, entry: CacheEntry) -> None:
    try:
      self.dynamodb.put_item(
          TableName=self.table,
          Item=to_attributes(dict(entry.to_item())),
          ConditionExpression='attribute_not_exists(id)')
    except ClientError as e:
      if e.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException':
        raise AlreadyExistsError(entry.id) from e
      raise StorageError(f'failed to create entry {entry.id}: {e}') from e
    except BotoCoreError as e:
      raise StorageError(f'failed to create entry {entry.id}: {e}') from e

  def delete(self, image_id: str) -> Optional[CacheEntry]:
    try:
      res = self.dynamodb.delete_item(
          TableName=self.table, Key=to_attributes({'id': image_id}), ReturnValues='ALL_OLD')
    except (ClientError, BotoCoreError) as e:
      raise StorageError(f'failed to delete entry {image_id}: {e}') from e

    if 'Attributes' not in res:
      return None
    return CacheEntry.from_item(from_attributes(res['Attributes']))

  def list_by_owner(self, owner: str, limit: int, token: Optional[str]) -> EntryPage:
    kwargs: dict[str, Any] = {
        'TableName': self.table,
        'IndexName': USER_INDEX,
        'KeyConditionExpression': '#user = :user',
        'ExpressionAttributeNames': {
            '#user': 'user'
        },
        'ExpressionAttributeValues': to_attributes({':user': owner}),
        'Limit': limit,
    }
    if token is not None:
      kwargs['ExclusiveStartKey'] = to_attributes(dict(decode_page_token(token, owner)))

    try:
      res = self.dynamodb.query(**kwargs)
    except (ClientError, BotoCoreError) as e:
      raise StorageError(f'failed to list entries of {owner}: {e}') from e

    entries = [CacheEntry.from_item(from_attributes(i)) for i in res.get('Items', [])]

    next_token = None
    if 'LastEvaluatedKey' in res:
      last = from_attributes(res['LastEvaluatedKey'])
      next_token = encode_page_token({'id': str(last['id']), 'user': str(last['user'])})

    return EntryPage(entries=entries, next_token=next_token)
