import dataclasses
import logging
import time
from typing import Any, Optional

import pyvips  # type: ignore
from pyvips import Image  # type: ignore

from imgcache.errors import InvalidImageError
from imgcache.geometry import Size, calc_contain_size, calc_cover_size, calc_target_size
from imgcache.params import (
    AvifOptions,
    Fit,
    JpegOptions,
    OutputFormat,
    PngOptions,
    RenditionParams,
    TiffOptions,
    WebpOptions
)

# VipsForeignPngFilter flags
PNG_FILTER_NONE = 0x08
PNG_FILTER_ALL = 0xF8

LOADER_FORMATS = {
    'jpegload': 'jpeg',
    'pngload': 'png',
    'webpload': 'webp',
    'tiffload': 'tiff',
    'heifload': 'heif',
    'gifload': 'gif',
    'svgload': 'svg',
    'jp2kload': 'jp2k',
    'jxlload': 'jxl',
    'magickload': 'magick',
}


@dataclasses.dataclass(eq=True, frozen=True)
class ImageInfo:
  size: Size
  format: str
  has_alpha: bool

  @property
  def output_format(self) -> Optional[OutputFormat]:
    return OutputFormat.maybe_from_extension(self.format)


@dataclasses.dataclass(frozen=True)
class Derived:
  data: bytes
  params: RenditionParams
  changed: bool
  vips_us: int


def loader_format(image: Image) -> Optional[str]:
  loader: str = image.get('vips-loader')
  name = loader.removesuffix('_buffer').removesuffix('_source')
  fmt = LOADER_FORMATS.get(name)
  if fmt == 'heif' and image.get_typeof('heif-compression') != 0:
    if image.get('heif-compression') == 'av1':
      return 'avif'
  return fmt


def saver_options(params: RenditionParams) -> dict[str, Any]:
  q = params.quality

  match params.encoder_options:
    case JpegOptions() as o:
      kw: dict[str, Any] = {'Q': q}
      if o.mozjpeg:
        kw.update(trellis_quant=True, overshoot_deringing=True, optimize_scans=True, quant_table=3)
      if o.progressive is not None:
        kw['interlace'] = o.progressive
      if o.chroma_subsampling is not None:
        kw['subsample_mode'] = 'off' if o.chroma_subsampling == '4:4:4' else 'on'
      if o.optimise_coding is not None:
        kw['optimize_coding'] = o.optimise_coding
      if o.trellis_quantisation is not None:
        kw['trellis_quant'] = o.trellis_quantisation
      if o.overshoot_deringing is not None:
        kw['overshoot_deringing'] = o.overshoot_deringing
      if o.optimise_scans is not None:
        kw['optimize_scans'] = o.optimise_scans
      if o.quantisation_table is not None:
        kw['quant_table'] = o.quantisation_table
      return kw
    case PngOptions() as o:
      kw = {}
      if o.progressive is not None:
        kw['interlace'] = o.progressive
      if o.compression_level is not None:
        kw['compression'] = o.compression_level
      if o.adaptive_filtering is not None:
        kw['filter'] = PNG_FILTER_ALL if o.adaptive_filtering else PNG_FILTER_NONE
      # effort, colours and dither only make sense for a palette image
      quantise = o.effort is not None or o.colours is not None or o.dither is not None
      if o.palette or (o.palette is None and quantise):
        kw['palette'] = True
        kw['Q'] = q
        if o.effort is not None:
          kw['effort'] = o.effort
        if o.colours is not None:
          kw['bitdepth'] = next(b for b in (1, 2, 4, 8) if (1 << b) >= o.colours)
        if o.dither is not None:
          kw['dither'] = o.dither
      return kw
    case WebpOptions() as o:
      kw = {'Q': q}
      if o.alpha_quality is not None:
        kw['alpha_q'] = o.alpha_quality
      if o.lossless is not None:
        kw['lossless'] = o.lossless
      if o.near_lossless is not None:
        kw['near_lossless'] = o.near_lossless
      if o.smart_subsample is not None:
        kw['smart_subsample'] = o.smart_subsample
      if o.effort is not None:
        kw['effort'] = o.effort
      return kw
    case TiffOptions() as o:
      kw = {'Q': q}
      if o.compression is not None:
        kw['compression'] = o.compression
      if o.predictor is not None:
        kw['predictor'] = o.predictor
      if o.pyramid is not None:
        kw['pyramid'] = o.pyramid
      if o.tile is not None:
        kw['tile'] = o.tile
      if o.tile_width is not None:
        kw['tile_width'] = o.tile_width
      if o.tile_height is not None:
        kw['tile_height'] = o.tile_height
      if o.xres is not None:
        kw['xres'] = o.xres
      if o.yres is not None:
        kw['yres'] = o.yres
      if o.resolution_unit is not None:
        kw['resunit'] = o.resolution_unit
      if o.bit_depth is not None:
        kw['bitdepth'] = o.bit_depth
      return kw
    case AvifOptions() as o:
      kw = {'Q': q, 'compression': 'av1'}
      if o.lossless is not None:
        kw['lossless'] = o.lossless
      if o.effort is not None:
        kw['effort'] = o.effort
      if o.chroma_subsampling is not None:
        kw['subsample_mode'] = 'off' if o.chroma_subsampling == '4:4:4' else 'on'
      return kw
    case _:
      raise Exception('system error')


class TransformEngine:

  def __init__(self, log: logging.Logger):
    self.log = log

  def load(self, data: bytes) -> tuple[Image, ImageInfo]:
    try:
      image: Image = Image.new_from_buffer(data, '', fail_on='truncated')
      fmt = loader_format(image)
      width = image.width
      height = image.height
    except pyvips.Error as e:
      raise InvalidImageError(f'failed to decode image: {e.message}') from e

    if fmt is None or not width or not height:
      raise InvalidImageError(f'cannot determine size or format: {fmt} {width}x{height}')

    return image, ImageInfo(size=Size(width, height), format=fmt, has_alpha=image.hasalpha())

  def inspect(self, data: bytes) -> ImageInfo:
    image, info = self.load(data)
    try:
      # Headers alone do not reveal truncated pixel data.
      image.avg()
    except pyvips.Error as e:
      raise InvalidImageError(f'failed to decode image: {e.message}') from e
    return info

  def scale(self, image: Image, source: Size, target: Size, kernel: str) -> Image:
    if source == target:
      return image

    image = image.resize(
        target.width / source.width, vscale=target.height / source.height, kernel=kernel)
    if image.width != target.width or image.height != target.height:
      image = image.gravity('centre', target.width, target.height, extend='copy')
    return image

  def resize(self, image: Image, source: Size, target: Size, params: RenditionParams) -> Image:
    kernel = params.kernel.value

    match params.fit:
      case Fit.COVER:
        image = self.scale(image, source, calc_cover_size(source, target), kernel)
        if image.width == target.width and image.height == target.height:
          return image
        if params.position.is_smart():
          return image.smartcrop(target.width, target.height, interesting=params.position.value)
        return image.gravity(params.position.gravity(), target.width, target.height, extend='copy')
      case Fit.CONTAIN:
        image = self.scale(image, source, calc_contain_size(source, target), kernel)
        if image.width == target.width and image.height == target.height:
          return image
        background = params.background
        if image.bands < 3 or image.format != 'uchar':
          image = image.colourspace('srgb')
        if not background.opaque and not image.hasalpha():
          image = image.addalpha()
        return image.gravity(
            params.position.gravity(),
            target.width,
            target.height,
            extend='background',
            background=background.to_vips(image.bands))
      case Fit.FILL | Fit.INSIDE | Fit.OUTSIDE:
        return self.scale(image, source, target, kernel)
      case _:
        raise Exception('system error')

  def encode(self, image: Image, params: RenditionParams) -> bytes:
    if params.format == OutputFormat.JPEG and image.hasalpha():
      image = image.flatten(background=params.background.to_vips(3))

    try:
      data: bytes = image.write_to_buffer(params.format.extension(), **saver_options(params))
    except pyvips.Error as e:
      raise InvalidImageError(f'failed to encode {params.format.value}: {e.message}') from e
    return data

  def transcode(self, data: bytes, params: RenditionParams) -> bytes:
    image, _ = self.load(data)
    return self.encode(image, params)

  def derive(
      self,
      source: bytes,
      source_params: RenditionParams,
      target: RenditionParams,
  ) -> Derived:
    start_ns = time.time_ns()

    image, info = self.load(source)
    size = calc_target_size(info.size, target.width, target.height, target.fit)

    resized = size != info.size
    reencode = (
        resized or info.format != target.format.value or target.quality < source_params.quality)

    if not reencode:
      return Derived(
          data=source,
          params=source_params,
          changed=False,
          vips_us=(time.time_ns() - start_ns) // 1000)

    if resized:
      image = self.resize(image, info.size, size, target)

    params = target.with_size(size.width, size.height)
    data = self.encode(image, params)

    vips_us = (time.time_ns() - start_ns) // 1000
    self.log.debug({
        'message': 'derived',
        'source': f'{info.size.width}x{info.size.height}',
        'source_format': info.format,
        'target': f'{size.width}x{size.height}',
        'format': params.format.value,
        'quality': params.quality,
        'resized': resized,
        'vips_us': vips_us,
        'img_size': len(data),
    })

    return Derived(data=data, params=params, changed=True, vips_us=vips_us)
