"""Canonical rendition parameters.

A raw request (query-string style mapping, possibly using short aliases) is
turned into a fully-defaulted, alias-resolved ``RenditionParams``. Only the
parameters that affect output bytes are kept; they are what the key codec
encodes.
"""
import dataclasses
import re
from enum import Enum
from typing import Any, Literal, Optional, Self

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from imgcache.errors import FieldError, ValidationError
from imgcache.typing import RawParams

DEFAULT_QUALITY = 100
FORMAT_FIELDS = ('format', 'fmt', 'ext')
FLOAT_PRECISION = 4

background_re = re.compile(r'^rgba\((\d{1,3}),(\d{1,3}),(\d{1,3}),(\d(?:\.\d+)?)\)$'
                           r'|^rgb\((\d{1,3}),(\d{1,3}),(\d{1,3})\)$')


class OutputFormat(Enum):
  JPEG = 'jpeg'
  PNG = 'png'
  WEBP = 'webp'
  TIFF = 'tiff'
  AVIF = 'avif'

  @classmethod
  def from_extension(cls, ext: str) -> 'OutputFormat':
    n = ext.strip().lower().lstrip('.')
    if n == 'jpg':
      return cls.JPEG
    if n == 'tif':
      return cls.TIFF
    return cls(n)

  @classmethod
  def maybe_from_extension(cls, ext: str) -> Optional['OutputFormat']:
    try:
      return cls.from_extension(ext)
    except ValueError:
      return None

  def extension(self) -> str:
    return f'.{self.value}'

  def content_type(self) -> str:
    return f'image/{self.value}'

  def options_model(self) -> type['FormatOptions']:
    match self:
      case OutputFormat.JPEG:
        return JpegOptions
      case OutputFormat.PNG:
        return PngOptions
      case OutputFormat.WEBP:
        return WebpOptions
      case OutputFormat.TIFF:
        return TiffOptions
      case OutputFormat.AVIF:
        return AvifOptions
      case _:
        raise Exception('system error')


class Fit(Enum):
  COVER = 'cover'
  CONTAIN = 'contain'
  FILL = 'fill'
  INSIDE = 'inside'
  OUTSIDE = 'outside'


class Kernel(Enum):
  NEAREST = 'nearest'
  CUBIC = 'cubic'
  MITCHELL = 'mitchell'
  LANCZOS2 = 'lanczos2'
  LANCZOS3 = 'lanczos3'


class Position(Enum):
  NORTH = 'north'
  NORTHEAST = 'northeast'
  EAST = 'east'
  SOUTHEAST = 'southeast'
  SOUTH = 'south'
  SOUTHWEST = 'southwest'
  WEST = 'west'
  NORTHWEST = 'northwest'
  CENTER = 'center'
  ENTROPY = 'entropy'
  ATTENTION = 'attention'

  @classmethod
  def from_str(cls, s: str) -> 'Position':
    n = s.strip().lower().replace(' ', '').replace('-', '')
    if n in POSITION_ALIASES:
      return POSITION_ALIASES[n]
    return cls(n)

  def is_smart(self) -> bool:
    return self in (Position.ENTROPY, Position.ATTENTION)

  def gravity(self) -> str:
    # libvips compass direction names
    match self:
      case Position.NORTHEAST:
        return 'north-east'
      case Position.SOUTHEAST:
        return 'south-east'
      case Position.SOUTHWEST:
        return 'south-west'
      case Position.NORTHWEST:
        return 'north-west'
      case Position.CENTER | Position.ENTROPY | Position.ATTENTION:
        return 'centre'
      case _:
        return self.value


POSITION_ALIASES = {
    'n': Position.NORTH,
    'top': Position.NORTH,
    'ne': Position.NORTHEAST,
    'rt': Position.NORTHEAST,
    'righttop': Position.NORTHEAST,
    'e': Position.EAST,
    'r': Position.EAST,
    'right': Position.EAST,
    'se': Position.SOUTHEAST,
    'rb': Position.SOUTHEAST,
    'rightbottom': Position.SOUTHEAST,
    's': Position.SOUTH,
    'b': Position.SOUTH,
    'bottom': Position.SOUTH,
    'sw': Position.SOUTHWEST,
    'lb': Position.SOUTHWEST,
    'leftbottom': Position.SOUTHWEST,
    'w': Position.WEST,
    'l': Position.WEST,
    'left': Position.WEST,
    'nw': Position.NORTHWEST,
    'lt': Position.NORTHWEST,
    'lefttop': Position.NORTHWEST,
    'c': Position.CENTER,
    'centre': Position.CENTER,
}


def format_number(v: float) -> str:
  s = f'{v:.{FLOAT_PRECISION}f}'.rstrip('0').rstrip('.')
  return '0' if s in ('', '-0') else s


@dataclasses.dataclass(eq=True, frozen=True)
class Background:
  red: int
  green: int
  blue: int
  alpha: float

  @classmethod
  def parse(cls, s: str) -> 'Background':
    m = background_re.match(re.sub(r'\s+', '', s))
    if m is None:
      raise ValueError(f'must be rgb(r,g,b) or rgba(r,g,b,a): {s}')

    if m[1] is not None:
      red, green, blue, alpha = int(m[1]), int(m[2]), int(m[3]), float(m[4])
    else:
      red, green, blue, alpha = int(m[5]), int(m[6]), int(m[7]), 1.0

    if max(red, green, blue) > 255:
      raise ValueError(f'colour components must be 0-255: {s}')
    if alpha > 1.0:
      raise ValueError(f'alpha must be 0-1: {s}')

    return cls(red, green, blue, round(alpha, FLOAT_PRECISION))

  def __str__(self) -> str:
    return f'rgba({self.red},{self.green},{self.blue},{format_number(self.alpha)})'

  @property
  def opaque(self) -> bool:
    return self.alpha >= 1.0

  def to_vips(self, bands: int) -> list[float]:
    rgb = [float(self.red), float(self.green), float(self.blue)]
    if bands == 4:
      return rgb + [round(self.alpha * 255.0)]
    return rgb


DEFAULT_BACKGROUND = Background(0, 0, 0, 0.0)


def aliases(*names: str) -> AliasChoices:
  choices: list[str] = []
  for name in names:
    for c in (name, to_camel(name)):
      if c not in choices:
        choices.append(c)
  return AliasChoices(*choices)


class FormatOptions(BaseModel):
  model_config = ConfigDict(extra='ignore', frozen=True, populate_by_name=True)

  @field_validator('*', mode='before')
  @classmethod
  def strip_strings(cls, v: Any) -> Any:
    return v.strip().lower() if isinstance(v, str) else v

  @field_validator('*', mode='after')
  @classmethod
  def round_floats(cls, v: Any) -> Any:
    if isinstance(v, float):
      return round(v, FLOAT_PRECISION)
    return v


ChromaSubsampling = Literal['4:2:0', '4:4:4']


class JpegOptions(FormatOptions):
  progressive: Optional[bool] = Field(None, validation_alias=aliases('progressive'))
  chroma_subsampling: Optional[ChromaSubsampling] = Field(
      None, validation_alias=aliases('chroma_subsampling'))
  optimise_coding: Optional[bool] = Field(
      None, validation_alias=aliases('optimise_coding', 'optimize_coding'))
  mozjpeg: Optional[bool] = Field(None, validation_alias=aliases('mozjpeg'))
  trellis_quantisation: Optional[bool] = Field(
      None, validation_alias=aliases('trellis_quantisation', 'trellis_quantization'))
  overshoot_deringing: Optional[bool] = Field(
      None, validation_alias=aliases('overshoot_deringing'))
  optimise_scans: Optional[bool] = Field(
      None, validation_alias=aliases('optimise_scans', 'optimize_scans'))
  quantisation_table: Optional[int] = Field(
      None, ge=0, le=8, validation_alias=aliases('quantisation_table', 'quantization_table'))


class PngOptions(FormatOptions):
  progressive: Optional[bool] = Field(None, validation_alias=aliases('progressive'))
  compression_level: Optional[int] = Field(
      None, ge=0, le=9, validation_alias=aliases('compression_level'))
  adaptive_filtering: Optional[bool] = Field(
      None, validation_alias=aliases('adaptive_filtering'))
  palette: Optional[bool] = Field(None, validation_alias=aliases('palette'))
  effort: Optional[int] = Field(None, ge=1, le=10, validation_alias=aliases('effort'))
  colours: Optional[int] = Field(None, ge=2, le=256, validation_alias=aliases('colours', 'colors'))
  dither: Optional[float] = Field(None, ge=0.0, le=1.0, validation_alias=aliases('dither'))


class WebpOptions(FormatOptions):
  alpha_quality: Optional[int] = Field(
      None, ge=1, le=100, validation_alias=aliases('alpha_quality'))
  lossless: Optional[bool] = Field(None, validation_alias=aliases('lossless'))
  near_lossless: Optional[bool] = Field(None, validation_alias=aliases('near_lossless'))
  smart_subsample: Optional[bool] = Field(None, validation_alias=aliases('smart_subsample'))
  effort: Optional[int] = Field(None, ge=0, le=6, validation_alias=aliases('effort'))


TiffCompression = Literal['none', 'jpeg', 'lzw', 'deflate', 'packbits', 'ccittfax4', 'webp', 'zstd',
                          'jp2k']


class TiffOptions(FormatOptions):
  compression: Optional[TiffCompression] = Field(None, validation_alias=aliases('compression'))
  predictor: Optional[Literal['none', 'horizontal', 'float']] = Field(
      None, validation_alias=aliases('predictor'))
  pyramid: Optional[bool] = Field(None, validation_alias=aliases('pyramid'))
  tile: Optional[bool] = Field(None, validation_alias=aliases('tile'))
  tile_width: Optional[int] = Field(
      None, ge=16, le=32768, multiple_of=16, validation_alias=aliases('tile_width'))
  tile_height: Optional[int] = Field(
      None, ge=16, le=32768, multiple_of=16, validation_alias=aliases('tile_height'))
  xres: Optional[float] = Field(None, ge=0.0001, validation_alias=aliases('xres'))
  yres: Optional[float] = Field(None, ge=0.0001, validation_alias=aliases('yres'))
  resolution_unit: Optional[Literal['inch', 'cm']] = Field(
      None, validation_alias=aliases('resolution_unit'))
  bit_depth: Optional[int] = Field(None, validation_alias=aliases('bit_depth'))

  @field_validator('bit_depth')
  @classmethod
  def check_bit_depth(cls, v: Optional[int]) -> Optional[int]:
    if v is not None and v not in (1, 2, 4, 8):
      raise ValueError('bit depth must be one of 1, 2, 4, 8')
    return v


class AvifOptions(FormatOptions):
  lossless: Optional[bool] = Field(None, validation_alias=aliases('lossless'))
  effort: Optional[int] = Field(None, ge=0, le=9, validation_alias=aliases('effort'))
  chroma_subsampling: Optional[ChromaSubsampling] = Field(
      None, validation_alias=aliases('chroma_subsampling'))


EncoderOptions = JpegOptions | PngOptions | WebpOptions | TiffOptions | AvifOptions


class CommonParams(BaseModel):
  model_config = ConfigDict(
      extra='ignore', frozen=True, populate_by_name=True, arbitrary_types_allowed=True)

  width: Optional[int] = Field(None, ge=1, validation_alias=AliasChoices('width', 'w'))
  height: Optional[int] = Field(None, ge=1, validation_alias=AliasChoices('height', 'h'))
  quality: int = Field(
      DEFAULT_QUALITY, ge=1, le=100, validation_alias=AliasChoices('quality', 'q'))
  fit: Fit = Field(Fit.COVER, validation_alias=AliasChoices('fit'))
  position: Position = Field(
      Position.CENTER,
      validation_alias=AliasChoices('pos', 'position'),
      serialization_alias='pos')
  background: Background = Field(
      DEFAULT_BACKGROUND,
      validation_alias=AliasChoices('bg', 'background'),
      serialization_alias='bg')
  kernel: Kernel = Field(Kernel.LANCZOS3, validation_alias=AliasChoices('kernel'))

  @field_validator('fit', 'kernel', mode='before')
  @classmethod
  def lower_enum(cls, v: Any) -> Any:
    return v.strip().lower() if isinstance(v, str) else v

  @field_validator('position', mode='before')
  @classmethod
  def parse_position(cls, v: Any) -> Any:
    if isinstance(v, str):
      return Position.from_str(v)
    return v

  @field_validator('background', mode='before')
  @classmethod
  def parse_background(cls, v: Any) -> Any:
    if isinstance(v, str):
      return Background.parse(v)
    return v


@dataclasses.dataclass(eq=True, frozen=True)
class RenditionParams:
  format: OutputFormat
  width: Optional[int] = None
  height: Optional[int] = None
  quality: int = DEFAULT_QUALITY
  fit: Fit = Fit.COVER
  position: Position = Position.CENTER
  background: Background = DEFAULT_BACKGROUND
  kernel: Kernel = Kernel.LANCZOS3
  options: Optional[EncoderOptions] = None

  def __post_init__(self) -> None:
    model = self.format.options_model()
    if self.options is None:
      object.__setattr__(self, 'options', model())
    elif type(self.options) is not model:
      raise ValueError(f'{type(self.options).__name__} cannot be used for {self.format.value}')

    # Settings without effect on the output bytes stay at their defaults so
    # that one rendition has one key.
    if self.fit not in (Fit.COVER, Fit.CONTAIN):
      object.__setattr__(self, 'position', Position.CENTER)
    if self.fit != Fit.CONTAIN and self.format != OutputFormat.JPEG:
      object.__setattr__(self, 'background', DEFAULT_BACKGROUND)

  @property
  def encoder_options(self) -> EncoderOptions:
    if self.options is None:
      raise Exception('system error')
    return self.options

  @property
  def pixels(self) -> int:
    if self.width is None or self.height is None:
      return 0
    return self.width * self.height

  def with_size(self, width: int, height: int) -> Self:
    return dataclasses.replace(self, width=width, height=height)

  def with_format(self, format: OutputFormat) -> Self:
    # Options of another format are meaningless for the new one.
    return dataclasses.replace(self, format=format, options=format.options_model()())

  def key_items(self) -> dict[str, str]:
    items: dict[str, Any] = {
        'width': self.width,
        'height': self.height,
        'quality': self.quality,
        'fit': self.fit,
        'pos': self.position,
        'bg': self.background,
        'kernel': self.kernel,
    }
    items.update(self.encoder_options.model_dump(exclude_none=True))
    return {k: render_value(v) for k, v in items.items() if v is not None}


def render_value(v: Any) -> str:
  if isinstance(v, bool):
    return 'true' if v else 'false'
  if isinstance(v, int):
    return str(v)
  if isinstance(v, float):
    return format_number(v)
  if isinstance(v, Enum):
    return str(v.value)
  return str(v)


def flatten_raw(raw: RawParams) -> dict[str, Any]:
  # parse_qs() style values arrive as lists; the first value wins.
  flat: dict[str, Any] = {}
  for k, v in raw.items():
    if isinstance(v, (list, tuple)):
      if len(v) == 0:
        continue
      v = v[0]
    flat[k] = v
  return flat


def field_names() -> dict[str, str]:
  names: dict[str, str] = {}
  models: list[type[BaseModel]] = [CommonParams, *(f.options_model() for f in OutputFormat)]
  for model in models:
    for name, info in model.model_fields.items():
      key_name = info.serialization_alias or name
      names[name] = key_name
      if isinstance(info.validation_alias, AliasChoices):
        for choice in info.validation_alias.choices:
          if isinstance(choice, str):
            names[choice] = key_name
  return names


FIELD_NAMES = field_names()


def to_field_errors(e: PydanticValidationError) -> list[FieldError]:
  errors = []
  for err in e.errors():
    loc = err['loc']
    name = str(loc[0]) if len(loc) > 0 else 'params'
    errors.append(FieldError(FIELD_NAMES.get(name, name), err['msg']))
  return errors


def resolve_format(
    raw: dict[str, Any],
    default_format: Optional[OutputFormat],
) -> OutputFormat | FieldError:
  for name in FORMAT_FIELDS:
    if name in raw and raw[name] not in (None, ''):
      value = str(raw[name])
      fmt = OutputFormat.maybe_from_extension(value)
      if fmt is None:
        return FieldError('format', f'unsupported format: {value}')
      return fmt

  if default_format is None:
    return FieldError('format', 'Field required')
  return default_format


def canonicalize(
    raw: RawParams,
    default_format: Optional[OutputFormat] = None,
) -> RenditionParams:
  flat = flatten_raw(raw)
  errors: list[FieldError] = []

  fmt = resolve_format(flat, default_format)
  if isinstance(fmt, FieldError):
    errors.append(fmt)

  common: Optional[CommonParams] = None
  try:
    common = CommonParams.model_validate(flat)
  except PydanticValidationError as e:
    errors.extend(to_field_errors(e))

  options: Optional[FormatOptions] = None
  if isinstance(fmt, OutputFormat):
    try:
      options = fmt.options_model().model_validate(flat)
    except PydanticValidationError as e:
      errors.extend(to_field_errors(e))

  if errors:
    raise ValidationError(errors)

  if (not isinstance(fmt, OutputFormat) or common is None or
      not isinstance(options, (JpegOptions, PngOptions, WebpOptions, TiffOptions, AvifOptions))):
    raise Exception('system error')

  return RenditionParams(
      format=fmt,
      width=common.width,
      height=common.height,
      quality=common.quality,
      fit=common.fit,
      position=common.position,
      background=common.background,
      kernel=common.kernel,
      options=options)
