"""Bayer pattern layout and mosaic packing helpers."""

from enum import Enum, IntEnum
from pathlib import Path

from beartype import beartype
import cv2
import numpy as np
import torch


class BayerPattern(Enum):
  RGGB = 0
  GRBG = 1
  GBRG = 2
  BGGR = 3


class RawChannel(IntEnum):
  """Order of the colour planes in a packed raw quad."""

  red = 0
  green = 1
  blue = 2
  green2 = 3


# (x, y) offsets of red, green, blue, green2 inside the 2x2 quad
_bayer_offsets: dict[BayerPattern, tuple[tuple[int, int], ...]] = {
  BayerPattern.RGGB: ((0, 0), (1, 0), (1, 1), (0, 1)),
  BayerPattern.GRBG: ((1, 0), (0, 0), (0, 1), (1, 1)),
  BayerPattern.GBRG: ((0, 1), (0, 0), (1, 0), (1, 1)),
  BayerPattern.BGGR: ((1, 1), (1, 0), (0, 0), (0, 1)),
}

# RGB channel index of each raw channel
_rgb_index = {RawChannel.red: 0, RawChannel.green: 1, RawChannel.blue: 2, RawChannel.green2: 1}


def bayer_offsets(pattern: BayerPattern) -> tuple[tuple[int, int], ...]:
  return _bayer_offsets[pattern]


def rgb_channel_map(pattern: BayerPattern) -> list[list[int]]:
  """RGB channel index at each (y, x) position of the 2x2 quad."""
  quad = [[0, 0], [0, 0]]
  for raw_channel, (x, y) in zip(RawChannel, bayer_offsets(pattern), strict=True):
    quad[y][x] = _rgb_index[raw_channel]
  return quad


@beartype
def rgb_masks(pattern: BayerPattern, image_size: tuple[int, int], device: torch.device) -> torch.Tensor:
  """Boolean (H, W, 3) masks of the sites carrying red, green and blue samples."""
  width, height = image_size
  masks = torch.zeros((height, width, 3), dtype=torch.bool, device=device)
  for raw_channel, (x, y) in zip(RawChannel, bayer_offsets(pattern), strict=True):
    masks[y::2, x::2, _rgb_index[raw_channel]] = True
  return masks


def pack_bayer(mosaic: torch.Tensor, pattern: BayerPattern) -> torch.Tensor:
  """(H, W) mosaic to (H/2, W/2, 4) quads ordered red, green, blue, green2."""
  return torch.stack([mosaic[y::2, x::2] for x, y in bayer_offsets(pattern)], dim=-1)


def unpack_bayer(packed: torch.Tensor, pattern: BayerPattern) -> torch.Tensor:
  """Inverse of pack_bayer."""
  h, w = packed.shape[0], packed.shape[1]
  result = torch.zeros(h * 2, w * 2, device=packed.device, dtype=packed.dtype)
  for raw_channel, (x, y) in zip(RawChannel, bayer_offsets(pattern), strict=True):
    result[y::2, x::2] = packed[..., raw_channel]
  return result


@beartype
def rgb_to_bayer(rgb_tensor: torch.Tensor, pattern: BayerPattern = BayerPattern.RGGB) -> torch.Tensor:
  """Convert RGB tensor to Bayer pattern.

  Args:
      rgb_tensor: RGB tensor of shape (H, W, 3), even dimensions
      pattern: Bayer pattern

  Returns:
      Bayer tensor of shape (H, W, 1)
  """
  assert rgb_tensor.shape[0] % 2 == 0 and rgb_tensor.shape[1] % 2 == 0, 'Image dimensions must be even'
  offsets = zip(RawChannel, bayer_offsets(pattern), strict=True)
  packed = torch.stack([rgb_tensor[y::2, x::2, _rgb_index[c]] for c, (x, y) in offsets], dim=-1)
  return unpack_bayer(packed, pattern).unsqueeze(-1)


@beartype
def load_as_bayer(
  image_path: Path,
  pattern: BayerPattern = BayerPattern.RGGB,
  device: torch.device = torch.device('cpu'),
) -> torch.Tensor:
  """Load an 8 or 16 bit RGB image and sample it as a Bayer mosaic.

  Returns:
      Bayer tensor of shape (H, W, 1) with values in [0, 1], cropped to even size
  """
  if not image_path.exists():
    raise FileNotFoundError(f'Image not found: {image_path}')

  image = cv2.imread(str(image_path), cv2.IMREAD_ANYDEPTH | cv2.IMREAD_COLOR)
  if image is None:
    raise ValueError(f'Could not decode image: {image_path}')
  scale = 65535.0 if image.dtype == np.uint16 else 255.0
  image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB).astype(np.float32) / scale

  height, width = image.shape[0] & ~1, image.shape[1] & ~1
  rgb = torch.from_numpy(np.ascontiguousarray(image[:height, :width])).to(device)
  return rgb_to_bayer(rgb, pattern)


__all__ = [
  'BayerPattern',
  'RawChannel',
  'bayer_offsets',
  'load_as_bayer',
  'pack_bayer',
  'rgb_channel_map',
  'rgb_masks',
  'rgb_to_bayer',
  'unpack_bayer',
]
