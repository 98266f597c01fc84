from decimal import Decimal
from typing import Any, Mapping, NewType, NotRequired, TypedDict

S3Key = NewType('S3Key', str)
ImageId = NewType('ImageId', str)

RawParams = Mapping[str, Any]


class CacheEntryItem(TypedDict):
  id: str
  user: str
  original_key: str
  created_at: str
  public: bool
  url: NotRequired[str]
  exp: NotRequired[int | Decimal]


class PageToken(TypedDict):
  id: str
  user: str
