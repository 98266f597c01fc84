"""Storage key layout for renditions.

    {prefix}{owner}/{id}_{name}:{value}-{name}:{value}-....{format}

Names are sorted, so the key is a pure function of the canonical parameter
set; it is the cache index. Changing the separators or the ordering breaks
every stored key.
"""
import dataclasses

from imgcache.errors import FieldError, InvalidKeyError, ValidationError
from imgcache.params import OutputFormat, RenditionParams, canonicalize
from imgcache.typing import ImageId, S3Key

OWNER_SEPARATOR = '/'
ID_SEPARATOR = '_'
ITEM_SEPARATOR = '-'
VALUE_SEPARATOR = ':'
EXTENSION_SEPARATOR = '.'


@dataclasses.dataclass(eq=True, frozen=True)
class DecodedKey:
  owner: str
  image_id: ImageId
  params: RenditionParams


def check_segment(name: str, value: str, forbidden: str) -> None:
  if value == '':
    raise ValidationError([FieldError(name, 'must not be empty')])
  for c in forbidden:
    if c in value:
      raise ValidationError([FieldError(name, f'must not contain "{c}"')])


class KeyCodec:

  def __init__(self, prefix: str = ''):
    self.prefix = prefix

  def owner_prefix(self, owner: str) -> str:
    check_segment('owner', owner, OWNER_SEPARATOR)
    return f'{self.prefix}{owner}{OWNER_SEPARATOR}'

  def image_prefix(self, owner: str, image_id: str) -> str:
    check_segment('id', image_id, OWNER_SEPARATOR + ID_SEPARATOR)
    return f'{self.owner_prefix(owner)}{image_id}{ID_SEPARATOR}'

  def encode(self, owner: str, image_id: str, params: RenditionParams) -> S3Key:
    items = params.key_items()
    blob = ITEM_SEPARATOR.join(f'{name}{VALUE_SEPARATOR}{items[name]}' for name in sorted(items))
    return S3Key(f'{self.image_prefix(owner, image_id)}{blob}{params.format.extension()}')

  def decode(self, key: str) -> DecodedKey:
    if not key.startswith(self.prefix):
      raise InvalidKeyError(key, f'missing prefix "{self.prefix}"')
    rest = key[len(self.prefix):]

    owner, sep, rest = rest.partition(OWNER_SEPARATOR)
    if sep == '' or owner == '':
      raise InvalidKeyError(key, 'missing owner')

    stem, sep, ext = rest.rpartition(EXTENSION_SEPARATOR)
    if sep == '':
      raise InvalidKeyError(key, 'missing extension')
    fmt = OutputFormat.maybe_from_extension(ext)
    if fmt is None or fmt.value != ext:
      raise InvalidKeyError(key, f'unsupported extension "{ext}"')

    image_id, sep, blob = stem.partition(ID_SEPARATOR)
    if sep == '' or image_id == '' or blob == '':
      raise InvalidKeyError(key, 'missing id or parameters')

    raw: dict[str, str] = {}
    for item in blob.split(ITEM_SEPARATOR):
      name, sep, value = item.partition(VALUE_SEPARATOR)
      if sep == '' or name == '' or value == '':
        raise InvalidKeyError(key, f'malformed item "{item}"')
      if name in raw:
        raise InvalidKeyError(key, f'duplicated item "{name}"')
      raw[name] = value

    try:
      params = canonicalize(raw, default_format=fmt)
    except ValidationError as e:
      raise InvalidKeyError(key, str(e))

    # Anything canonicalize() dropped or rewrote (unknown names, aliases,
    # non-canonical values) makes the key differ from its re-encoding.
    try:
      reencoded = self.encode(owner, image_id, params)
    except ValidationError as e:
      raise InvalidKeyError(key, str(e))
    if reencoded != key:
      raise InvalidKeyError(key, 'not in canonical form')

    return DecodedKey(owner=owner, image_id=ImageId(image_id), params=params)

  def maybe_decode(self, key: str) -> DecodedKey | InvalidKeyError:
    try:
      return self.decode(key)
    except InvalidKeyError as e:
      return e
