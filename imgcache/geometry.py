import dataclasses
from typing import Optional

from imgcache.params import Fit


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def maybe_from_params(cls, width: Optional[int], height: Optional[int]) -> Optional['Size']:
    if width is None or height is None:
      return None
    return cls(width, height)

  @property
  def pixels(self) -> int:
    return self.width * self.height

  def contains(self, other: 'Size') -> bool:
    return other.width <= self.width and other.height <= self.height


def ceildiv(a: int, b: int) -> int:
  return -(a // -b)


def rounddiv(a: int, b: int) -> int:
  # Round half up, never below one pixel.
  return max(1, (2 * a + b) // (2 * b))


def scale_to_width(source: Size, width: int) -> Size:
  return Size(width, rounddiv(source.height * width, source.width))


def scale_to_height(source: Size, height: int) -> Size:
  return Size(rounddiv(source.width * height, source.height), height)


def width_is_binding(source: Size, target: Size) -> bool:
  # True when target.width / source.width <= target.height / source.height
  return target.width * source.height <= target.height * source.width


def matches_aspect(source: Size, target: Size) -> bool:
  # Equal to an aspect-preserving scale of source, up to rounding.
  return (scale_to_width(source, target.width) == target or
          scale_to_height(source, target.height) == target)


def calc_target_size(
    source: Size,
    width: Optional[int],
    height: Optional[int],
    fit: Fit,
) -> Size:
  """Compute the output size of a rendition.

  Never returns a size larger than ``source`` in either dimension: requests
  beyond the source are served at native size in that dimension.
  """
  match (width, height):
    case (None, None):
      return source
    case (int() as w, None):
      if source.width <= w:
        return source
      return scale_to_width(source, w)
    case (None, int() as h):
      if source.height <= h:
        return source
      return scale_to_height(source, h)
    case (int() as w, int() as h):
      if source.width <= w and source.height <= h:
        return source

      match fit:
        case Fit.COVER | Fit.CONTAIN | Fit.FILL:
          return Size(min(w, source.width), min(h, source.height))
        case Fit.INSIDE | Fit.OUTSIDE if matches_aspect(source, Size(w, h)):
          return Size(w, h)
        case Fit.INSIDE:
          if width_is_binding(source, Size(w, h)):
            return scale_to_width(source, w)
          return scale_to_height(source, h)
        case Fit.OUTSIDE:
          if width_is_binding(source, Size(w, h)):
            size = scale_to_height(source, h)
          else:
            size = scale_to_width(source, w)
          if source.contains(size):
            return size
          return source
        case _:
          raise Exception('system error')
    case _:
      raise Exception('system error')


def calc_cover_size(source: Size, target: Size) -> Size:
  """Smallest aspect-preserving size of ``source`` covering ``target``."""
  if width_is_binding(source, target):
    return Size(ceildiv(source.width * target.height, source.height), target.height)
  return Size(target.width, ceildiv(source.height * target.width, source.width))


def calc_contain_size(source: Size, target: Size) -> Size:
  """Largest aspect-preserving size of ``source`` contained in ``target``."""
  if width_is_binding(source, target):
    return Size(target.width, min(target.height, rounddiv(source.height * target.width,
                                                         source.width)))
  return Size(min(target.width, rounddiv(source.width * target.height, source.height)),
              target.height)
