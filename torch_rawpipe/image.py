"""Image buffer formats, allocation and shape contracts."""

from enum import Enum

from beartype import beartype
import torch
import torch.nn.functional as F


class PixelFormat(Enum):
  luma16 = (1, torch.uint16)
  luma = (1, torch.float32)
  luma_alpha = (2, torch.float32)
  rgba = (4, torch.float32)

  @property
  def channels(self) -> int:
    return self.value[0]

  @property
  def dtype(self) -> torch.dtype:
    return self.value[1]


@beartype
def new_image(device: torch.device, image_size: tuple[int, int], fmt: PixelFormat) -> torch.Tensor:
  """Allocate a zeroed (height, width, channels) buffer.

  Args:
      device: Device holding the buffer
      image_size: (width, height) of the image
      fmt: Pixel format

  Returns:
      Zero filled image tensor
  """
  width, height = image_size
  if width <= 0 or height <= 0:
    raise ValueError(f'Image dimensions must be positive, got {width}x{height}')
  return torch.zeros((height, width, fmt.channels), dtype=fmt.dtype, device=device)


def image_size(image: torch.Tensor) -> tuple[int, int]:
  return (image.shape[1], image.shape[0])


def check_format(image: torch.Tensor, fmt: PixelFormat, name: str = 'image') -> None:
  assert image.dim() == 3, f'{name} must be (H, W, C), got {tuple(image.shape)}'
  assert image.shape[2] == fmt.channels, f'{name} must have {fmt.channels} channels ({fmt.name}), got {image.shape[2]}'
  assert image.dtype == fmt.dtype, f'{name} must be {fmt.dtype} ({fmt.name}), got {image.dtype}'


def check_size(image: torch.Tensor, size: tuple[int, int], name: str = 'image') -> None:
  assert image_size(image) == size, f'{name} size {image_size(image)} != expected {size}'


def check_same_size(first: torch.Tensor, second: torch.Tensor) -> None:
  check_size(second, image_size(first))


def check_half_size(full: torch.Tensor, half: torch.Tensor) -> None:
  width, height = image_size(full)
  assert width == 2 * half.shape[1] and height == 2 * half.shape[0], (
    f'Expected {image_size(full)} to be exactly twice {image_size(half)}'
  )


def check_distinct(input_image: torch.Tensor, output_image: torch.Tensor) -> None:
  assert input_image.data_ptr() != output_image.data_ptr(), 'Input and output buffers must not alias'


def pad_image(image: torch.Tensor, radius: int, mode: str = 'replicate') -> torch.Tensor:
  """Pad (H, W, C) by radius on every side.

  'replicate' is clamp-to-edge addressing, 'reflect' mirrors around the border
  pixel which keeps the Bayer phase of a mosaic.
  """
  if radius == 0:
    return image
  chw = image.permute(2, 0, 1).unsqueeze(0)
  padded = F.pad(chw, (radius, radius, radius, radius), mode=mode)
  return padded.squeeze(0).permute(1, 2, 0)


def shifted(padded: torch.Tensor, radius: int, dx: int, dy: int, size: tuple[int, int]) -> torch.Tensor:
  """View of a padded image so that result[y, x] == image[y + dy, x + dx]."""
  width, height = size
  return padded[radius + dy : radius + dy + height, radius + dx : radius + dx + width]


def box_mean(image: torch.Tensor, radius: int) -> torch.Tensor:
  """Mean over a (2 radius + 1)^2 window with clamp-to-edge borders."""
  chw = pad_image(image, radius).permute(2, 0, 1).unsqueeze(0)
  mean = F.avg_pool2d(chw, kernel_size=2 * radius + 1, stride=1)
  return mean.squeeze(0).permute(1, 2, 0)


__all__ = [
  'PixelFormat',
  'box_mean',
  'check_distinct',
  'check_format',
  'check_half_size',
  'check_same_size',
  'check_size',
  'image_size',
  'new_image',
  'pad_image',
  'shifted',
]
