"""Gaussian blur through bilinearly optimized sampled convolution."""

from dataclasses import dataclass
from enum import Enum
import math

from beartype import beartype
import numpy as np
import torch
import torch.nn.functional as F

from .context import ComputeContext, EnqueueArgs, Kernel, Sampler, kernel, pixel_grid
from .image import PixelFormat, check_format, check_same_size, image_size, pad_image


class BlurStrategy(Enum):
  sampled = 0
  ordinary = 1


@dataclass(frozen=True)
class SampledKernel:
  """Gaussian taps as (weight, dx, dy), each tap one bilinear fetch."""

  radius: float
  taps: tuple[tuple[float, float, float], ...]

  def __len__(self) -> int:
    return len(self.taps)

  @property
  def total_weight(self) -> float:
    return sum(weight for weight, _, _ in self.taps)


def gaussian_kernel_size(radius: float) -> int:
  size = math.ceil(2 * radius)
  return size + 1 if size % 2 == 0 else size


def gaussian_weights(radius: float) -> np.ndarray:
  """Unnormalized k x k Gaussian, k = gaussian_kernel_size(radius)."""
  n = gaussian_kernel_size(radius) // 2
  x = np.arange(-n, n + 1, dtype=np.float64)
  return np.exp(-(x[None, :] ** 2 + x[:, None] ** 2) / (2 * radius * radius))


def kernel_optimize_bilinear_2d(weights: np.ndarray) -> list[tuple[float, float, float]]:
  """
  Merge every 2x2 block of a centred kernel into a single bilinear tap.

  Blocks start at the top left corner, so for odd sizes the last row and
  column form blocks of one sample in that direction. A block is replaced by
  its total weight fetched at its weighted centroid, exact for separable
  kernels.

  Args:
      weights: Square kernel of odd size k, centred on (k // 2, k // 2)

  Returns:
      Taps (weight, dx, dy), (k // 2 + 1)^2 of them
  """
  size = weights.shape[0]
  assert weights.shape == (size, size) and size % 2 == 1, f'Expected an odd square kernel, got {weights.shape}'
  n = size // 2

  taps = []
  for y in range(0, size, 2):
    for x in range(0, size, 2):
      block = weights[y : y + 2, x : x + 2]
      total = float(block.sum())
      if total <= 0:
        continue
      ys, xs = np.mgrid[y : y + block.shape[0], x : x + block.shape[1]]
      dx = float((block * xs).sum()) / total - n
      dy = float((block * ys).sum()) / total - n
      taps.append((total, dx, dy))
  return taps


@beartype
def gaussian_kernel_bilinear_weights(radius: float) -> SampledKernel:
  """
  Build the sampled Gaussian kernel of a radius, weights normalized to one.

  Args:
      radius: Gaussian standard deviation in pixels

  Returns:
      SampledKernel with (ceil(k / 2))^2 taps for a k x k kernel
  """
  if radius <= 0:
    raise ValueError(f'radius must be positive, got {radius}')

  taps = kernel_optimize_bilinear_2d(gaussian_weights(radius))
  total = sum(weight for weight, _, _ in taps)
  return SampledKernel(radius, tuple((weight / total, dx, dy) for weight, dx, dy in taps))


def _sampled_convolution(image: torch.Tensor, taps: SampledKernel, sampler: Sampler) -> torch.Tensor:
  x, y = pixel_grid(image_size(image), image.device)
  result = torch.zeros(image.shape, dtype=torch.float32, device=image.device)
  for weight, dx, dy in taps.taps:
    result += weight * sampler.sample(image, x + dx, y + dy)
  return result


def _ordinary_convolution(image: torch.Tensor, radius: float) -> torch.Tensor:
  weights = torch.from_numpy(gaussian_weights(radius)).to(device=image.device, dtype=image.dtype)
  weights = weights / weights.sum()
  n = weights.shape[0] // 2
  channels = image.shape[2]

  chw = pad_image(image, n).permute(2, 0, 1).unsqueeze(0)
  filters = weights.expand(channels, 1, *weights.shape).contiguous()
  return F.conv2d(chw, filters, groups=channels).squeeze(0).permute(1, 2, 0)


@kernel(Kernel.gaussian_blur)
def _gaussian_blur(extent: EnqueueArgs, image: torch.Tensor, radius: float) -> torch.Tensor:
  return _ordinary_convolution(image, radius)


@kernel(Kernel.sampled_convolution)
def _sampled_convolution_kernel(
  extent: EnqueueArgs, image: torch.Tensor, taps: SampledKernel, sampler: Sampler
) -> torch.Tensor:
  return _sampled_convolution(image, taps, sampler)


@kernel(Kernel.sampled_convolution_sobel)
def _sampled_convolution_sobel(
  extent: EnqueueArgs,
  raw: torch.Tensor,
  sobel: torch.Tensor,
  noise_model: tuple[float, float],
  taps1: SampledKernel,
  taps2: SampledKernel,
  sampler: Sampler,
) -> torch.Tensor:
  magnitude = sobel[..., 2:3]
  g1 = _sampled_convolution(magnitude, taps1, sampler)
  g2 = _sampled_convolution(magnitude, taps2, sampler)

  sigma2 = (noise_model[0] + noise_model[1] * raw).clamp_min(1e-12)
  w = g1 * g1 / (g1 * g1 + sigma2)
  return torch.cat([torch.lerp(g2, g1, w), g2], dim=-1)


@beartype
def gaussian_blur_image(
  ctx: ComputeContext,
  image: torch.Tensor,
  radius: float,
  output_image: torch.Tensor,
  strategy: BlurStrategy = BlurStrategy.sampled,
) -> torch.Tensor:
  """
  Gaussian blur with clamp-to-edge borders.

  Args:
      image: Input image (H, W, C)
      radius: Gaussian standard deviation in pixels
      output_image: Output image, same shape as image
      strategy: sampled (bilinear taps) or ordinary (full kernel), same result

  Returns:
      output_image
  """
  assert image.shape == output_image.shape, f'Shape mismatch {tuple(image.shape)} != {tuple(output_image.shape)}'
  assert output_image.dtype == torch.float32, f'output_image must be float32, got {output_image.dtype}'
  if radius <= 0:
    raise ValueError(f'radius must be positive, got {radius}')

  extent = ctx.enqueue_args(*image_size(output_image))
  match strategy:
    case BlurStrategy.sampled:
      taps = gaussian_kernel_bilinear_weights(radius)
      ctx.run(Kernel.sampled_convolution, extent, output_image, image, taps, ctx.create_sampler())
    case BlurStrategy.ordinary:
      ctx.run(Kernel.gaussian_blur, extent, output_image, image, radius)
  return output_image


@beartype
def gaussian_blur_sobel_image(
  ctx: ComputeContext,
  raw_image: torch.Tensor,
  sobel_image: torch.Tensor,
  raw_noise_model: tuple[float, float],
  radius1: float,
  radius2: float,
  output_image: torch.Tensor,
) -> torch.Tensor:
  """
  Noise aware edge strength from the Sobel magnitude.

  The magnitude is blurred with a small (radius1) and a wide (radius2)
  Gaussian; the small response is trusted where it is well above the raw
  noise sigma. Output is (blended, wide).
  """
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(sobel_image, PixelFormat.rgba, 'sobel_image')
  check_format(output_image, PixelFormat.luma_alpha, 'output_image')
  check_same_size(raw_image, sobel_image)
  check_same_size(raw_image, output_image)

  ctx.run(
    Kernel.sampled_convolution_sobel,
    ctx.enqueue_args(*image_size(output_image)),
    output_image,
    raw_image,
    sobel_image,
    raw_noise_model,
    gaussian_kernel_bilinear_weights(radius1),
    gaussian_kernel_bilinear_weights(radius2),
    ctx.create_sampler(),
  )
  return output_image


__all__ = [
  'BlurStrategy',
  'SampledKernel',
  'gaussian_blur_image',
  'gaussian_blur_sobel_image',
  'gaussian_kernel_bilinear_weights',
  'gaussian_kernel_size',
  'gaussian_weights',
  'kernel_optimize_bilinear_2d',
]
