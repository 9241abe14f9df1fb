"""Dithering and highlight roll-off."""

from beartype import beartype
import cv2
import numpy as np
import torch

from .context import AddressMode, ComputeContext, EnqueueArgs, FilterMode, Kernel, Sampler, kernel, pixel_grid
from .image import PixelFormat, check_format, check_same_size, image_size


def smoothstep(edge0: float, edge1: float, x: torch.Tensor) -> torch.Tensor:
  t = ((x - edge0) / (edge1 - edge0)).clamp(0, 1)
  return t * t * (3 - 2 * t)


@beartype
def blue_noise_tile(size: int = 64, seed: int = 0, sigma: float = 1.0) -> torch.Tensor:
  """
  Generate a tileable 16 bit blue noise dither texture.

  White noise is high passed with a periodic Gaussian and the result is
  ranked, so the values are uniformly spread over the 16 bit range.

  Args:
      size: Tile width and height
      seed: Random seed
      sigma: Gaussian sigma of the low pass that is removed

  Returns:
      (size, size, 1) uint16 tile
  """
  if size < 4:
    raise ValueError(f'size must be at least 4, got {size}')

  rng = np.random.default_rng(seed)
  noise = rng.random((size, size), dtype=np.float32)

  # Blur a 3x3 tiling and keep the centre so the low pass wraps around
  tiled = np.tile(noise, (3, 3))
  low = cv2.GaussianBlur(tiled, (0, 0), sigmaX=sigma, borderType=cv2.BORDER_REFLECT)[size : 2 * size, size : 2 * size]
  high = (noise - low).ravel()

  ranks = np.empty(high.size, dtype=np.int64)
  ranks[np.argsort(high, kind='stable')] = np.arange(high.size)
  values = np.round(ranks * (65535 / (high.size - 1))).astype(np.uint16)
  return torch.from_numpy(values.reshape(size, size, 1))


@kernel(Kernel.blue_noise)
def _blue_noise(
  extent: EnqueueArgs, image: torch.Tensor, blue_noise: torch.Tensor, luma_variance: tuple[float, float], sampler: Sampler
) -> torch.Tensor:
  x, y = pixel_grid(image_size(image), image.device)
  dither = sampler.sample(blue_noise.to(image.device), x, y) / 65535 - 0.5

  luma = image[..., :1]
  sigma = (luma_variance[0] + luma_variance[1] * luma).clamp_min(0).sqrt()
  return torch.cat([luma + sigma * dither, image[..., 1:]], dim=-1)


@kernel(Kernel.blend_highlights)
def _blend_highlights(extent: EnqueueArgs, image: torch.Tensor, clip: float) -> torch.Tensor:
  rgb = image[..., :3]
  brightest = rgb.amax(dim=-1, keepdim=True)
  w = smoothstep(clip, 1.0, brightest)
  return torch.cat([torch.lerp(rgb, brightest.expand_as(rgb), w), image[..., 3:]], dim=-1)


@beartype
def blue_noise_image(
  ctx: ComputeContext,
  image: torch.Tensor,
  blue_noise: torch.Tensor,
  luma_variance: tuple[float, float],
  output_image: torch.Tensor,
) -> torch.Tensor:
  """
  Dither the luma of a YCbCr image with blue noise scaled by the luma noise sigma.

  Args:
      image: YCbCr image (H, W, 4)
      blue_noise: 16 bit dither tile (h, w, 1), repeated over the image
      luma_variance: Luma noise model (a, b)
      output_image: Output (H, W, 4)

  Returns:
      output_image
  """
  check_format(image, PixelFormat.rgba, 'image')
  check_format(blue_noise, PixelFormat.luma16, 'blue_noise')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image, output_image)

  ctx.run(
    Kernel.blue_noise,
    ctx.enqueue_args(*image_size(output_image)),
    output_image,
    image,
    blue_noise,
    luma_variance,
    ctx.create_sampler(AddressMode.repeat, FilterMode.nearest),
  )
  return output_image


@beartype
def blend_highlights_image(
  ctx: ComputeContext, image: torch.Tensor, clip: float, output_image: torch.Tensor
) -> torch.Tensor:
  """Roll highlights above clip off toward the brightest channel, reaching white at 1."""
  check_format(image, PixelFormat.rgba, 'image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image, output_image)
  if not 0 <= clip < 1:
    raise ValueError(f'clip must be in [0, 1), got {clip}')

  ctx.run(Kernel.blend_highlights, ctx.enqueue_args(*image_size(output_image)), output_image, image, clip)
  return output_image


__all__ = ['blend_highlights_image', 'blue_noise_image', 'blue_noise_tile', 'smoothstep']
