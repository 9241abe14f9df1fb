"""Edge aware denoise, despeckle and local noise statistics stages."""

import math

from beartype import beartype
import torch

from .bayer import BayerPattern, pack_bayer
from .context import ComputeContext, EnqueueArgs, Kernel, kernel
from .image import (
  PixelFormat,
  box_mean,
  check_distinct,
  check_format,
  check_half_size,
  check_same_size,
  image_size,
  pad_image,
  shifted,
)

Vector3 = tuple[float, float, float]
Vector4 = tuple[float, float, float, float]

# Relative to the local signal, below it a gradient counts as zero
EDGE_TOLERANCE = 1e-6


def _offsets(radius: int) -> list[tuple[int, int]]:
  return [(dx, dy) for dy in range(-radius, radius + 1) for dx in range(-radius, radius + 1)]


def _vector(values: tuple[float, ...], like: torch.Tensor) -> torch.Tensor:
  return torch.tensor(values, dtype=like.dtype, device=like.device)


def _median3x3(image: torch.Tensor) -> torch.Tensor:
  size = image_size(image)
  p = pad_image(image, 1)
  window = torch.stack([shifted(p, 1, dx, dy, size) for dx, dy in _offsets(1)], dim=-1)
  return window.median(dim=-1).values


def _window_moments(image: torch.Tensor, radius: int) -> tuple[torch.Tensor, ...]:
  """Local mean, unbiased variance and excess kurtosis in float64."""
  x = image.to(torch.float64)
  n = (2 * radius + 1) ** 2
  mean = box_mean(x, radius)
  m2 = box_mean(x * x, radius) - mean * mean
  # Below the float32 resolution of the mean the window is constant
  m2 = torch.where(m2 > 1e-12 * mean * mean, m2, torch.zeros_like(m2))
  m3 = box_mean(x**3, radius)
  m4 = box_mean(x**4, radius) - 4 * mean * m3 + 6 * mean * mean * box_mean(x * x, radius) - 3 * mean**4
  variance = m2 * n / (n - 1)
  kurtosis = torch.where(m2 > 0, m4 / (m2 * m2) - 3, torch.full_like(m2, float('nan')))
  return mean, variance, kurtosis


@kernel(Kernel.ycbcr_noise_statistics)
def _ycbcr_noise_statistics(extent: EnqueueArgs, image: torch.Tensor, gradient: torch.Tensor) -> torch.Tensor:
  mean, variance, _ = _window_moments(image[..., :3], 2)
  stats = torch.cat([mean[..., :1], variance], dim=-1)

  tolerance = EDGE_TOLERANCE * mean[..., 0].abs()
  edges = gradient[..., 0].to(torch.float64) > 2 * variance[..., 0].sqrt() + tolerance
  stats[edges] = float('nan')
  return stats.to(image.dtype)


@kernel(Kernel.raw_noise_statistics)
def _raw_noise_statistics(
  extent: EnqueueArgs, raw: torch.Tensor, pattern: BayerPattern, sobel: torch.Tensor
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
  packed = pack_bayer(raw[..., 0], pattern)
  mean, variance, kurtosis = _window_moments(packed, 4)

  magnitude = sobel[0::2, 0::2, 2].to(torch.float64)
  # Sobel of a flat field is float32 rounding, not an edge
  tolerance = EDGE_TOLERANCE * mean.abs().mean(dim=-1)
  edges = magnitude > 2 * variance.mean(dim=-1).sqrt() + tolerance
  for stat in (mean, variance, kurtosis):
    stat[edges] = float('nan')
  return mean.to(raw.dtype), variance.to(raw.dtype), kurtosis.to(raw.dtype)


@kernel(Kernel.denoise_image)
def _denoise_image(
  extent: EnqueueArgs,
  image: torch.Tensor,
  gradient: torch.Tensor,
  var_a: Vector3,
  var_b: Vector3,
  threshold_multipliers: Vector3,
  chroma_boost: float,
  gradient_boost: float,
  gradient_threshold: float,
) -> torch.Tensor:
  size = image_size(image)
  ycc = image[..., :3]
  luma = ycc[..., :1]

  noise_variance = (_vector(var_a, ycc) + _vector(var_b, ycc) * luma).clamp_min(1e-12)
  threshold2 = _vector(threshold_multipliers, ycc) * noise_variance
  threshold2[..., 1:] *= chroma_boost * chroma_boost

  # Tighten the luma threshold on edges so that detail survives
  edge = (gradient[..., :1] - gradient_threshold).clamp_min(0)
  threshold2[..., :1] /= 1 + gradient_boost * edge / noise_variance[..., :1].sqrt()
  threshold2 = threshold2.clamp_min(1e-12)

  p = pad_image(ycc, 2)
  total = torch.zeros_like(ycc)
  weights = torch.zeros_like(ycc)
  for dx, dy in _offsets(2):
    sample = shifted(p, 2, dx, dy, size)
    distance = (sample - ycc) ** 2 / threshold2
    spatial = math.exp(-(dx * dx + dy * dy) / 8.0)
    w_luma = spatial * torch.exp(-0.5 * distance[..., :1])
    w_chroma = spatial * torch.exp(-0.5 * distance[..., 1:].sum(dim=-1, keepdim=True))
    w = torch.cat([w_luma, w_chroma, w_chroma], dim=-1)
    total += w * sample
    weights += w

  return torch.cat([total / weights, image[..., 3:]], dim=-1)


@kernel(Kernel.denoise_image_guided)
def _denoise_image_guided(extent: EnqueueArgs, image: torch.Tensor, var_a: Vector3, var_b: Vector3) -> torch.Tensor:
  ycc = image[..., :3]
  guide = ycc[..., :1]

  mean_i = box_mean(guide, 2)
  mean_p = box_mean(ycc, 2)
  cov_ip = box_mean(guide * ycc, 2) - mean_i * mean_p
  var_i = (box_mean(guide * guide, 2) - mean_i * mean_i).clamp_min(0)

  eps = (_vector(var_a, ycc) + _vector(var_b, ycc) * mean_i).clamp_min(1e-12)
  a = cov_ip / (var_i + eps)
  b = mean_p - a * mean_i
  result = box_mean(a, 2) * guide + box_mean(b, 2)
  return torch.cat([result, image[..., 3:]], dim=-1)


@kernel(Kernel.despeckle_image)
def _despeckle_image(extent: EnqueueArgs, image: torch.Tensor, var_a: Vector3, var_b: Vector3) -> torch.Tensor:
  median = _median3x3(image[..., :3])
  luma = image[..., :1]
  sigma = (var_a[0] + var_b[0] * median[..., :1]).clamp_min(1e-12).sqrt()
  despeckled = torch.where((luma - median[..., :1]).abs() > 3 * sigma, median[..., :1], luma)
  return torch.cat([despeckled, median[..., 1:], image[..., 3:]], dim=-1)


@kernel(Kernel.denoise_raw_rgba)
def _denoise_raw_rgba(extent: EnqueueArgs, image: torch.Tensor, raw_variance: Vector4) -> torch.Tensor:
  size = image_size(image)
  threshold2 = _vector(raw_variance, image).clamp_min(1e-12)
  p = pad_image(image, 1)
  total = torch.zeros_like(image)
  weights = torch.zeros_like(image)
  for dx, dy in _offsets(1):
    sample = shifted(p, 1, dx, dy, size)
    w = torch.exp(-0.5 * (sample - image) ** 2 / threshold2)
    total += w * sample
    weights += w
  return total / weights


@kernel(Kernel.despeckle_raw_rgba)
def _despeckle_raw_rgba(extent: EnqueueArgs, image: torch.Tensor, raw_variance: Vector4) -> torch.Tensor:
  size = image_size(image)
  p = pad_image(image, 1)
  neighbours = torch.stack([shifted(p, 1, dx, dy, size) for dx, dy in _offsets(1) if (dx, dy) != (0, 0)], dim=-1)
  margin = 3 * _vector(raw_variance, image).clamp_min(0).sqrt()
  low = neighbours.amin(dim=-1) - margin
  high = neighbours.amax(dim=-1) + margin
  return torch.minimum(torch.maximum(image, low), high)


@kernel(Kernel.despeckle_raw_black)
def _despeckle_raw_black(extent: EnqueueArgs, raw: torch.Tensor, pattern: BayerPattern) -> torch.Tensor:
  # TODO: clamp isolated pixels below the black level against same-colour neighbours
  return raw.clone()


@beartype
def ycbcr_noise_statistics(
  ctx: ComputeContext, image: torch.Tensor, gradient_image: torch.Tensor, statistics_image: torch.Tensor
) -> torch.Tensor:
  """
  Local noise statistics of a YCbCr image over a 5x5 window.

  Args:
      image: YCbCr image (H, W, 4)
      gradient_image: Edge strength (H, W, 2), channel 0 is used
      statistics_image: Output (mean Y, var Y, var Cb, var Cr), NaN on edges

  Returns:
      statistics_image
  """
  check_format(image, PixelFormat.rgba, 'image')
  check_format(gradient_image, PixelFormat.luma_alpha, 'gradient_image')
  check_format(statistics_image, PixelFormat.rgba, 'statistics_image')
  check_same_size(image, gradient_image)
  check_same_size(image, statistics_image)

  ctx.run(
    Kernel.ycbcr_noise_statistics,
    ctx.enqueue_args(*image_size(statistics_image)),
    statistics_image,
    image,
    gradient_image,
  )
  return statistics_image


@beartype
def raw_noise_statistics(
  ctx: ComputeContext,
  raw_image: torch.Tensor,
  bayer_pattern: BayerPattern,
  sobel_image: torch.Tensor,
  mean_image: torch.Tensor,
  var_image: torch.Tensor,
  kurtosis_image: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
  """
  Per channel local mean, variance and excess kurtosis of the packed mosaic.

  Statistics use a 9x9 window of quads; pixels on edges (Sobel magnitude above
  twice the local sigma) are NaN in all three outputs.

  Args:
      raw_image: Scaled mosaic (H, W, 1)
      bayer_pattern: Bayer pattern of the mosaic
      sobel_image: Output of raw_image_sobel (H, W, 4)
      mean_image: Output mean (H/2, W/2, 4) in (R, G, B, G2) order
      var_image: Output variance (H/2, W/2, 4)
      kurtosis_image: Output excess kurtosis (H/2, W/2, 4)

  Returns:
      (mean_image, var_image, kurtosis_image)
  """
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(sobel_image, PixelFormat.rgba, 'sobel_image')
  check_same_size(raw_image, sobel_image)
  for name, image in (('mean_image', mean_image), ('var_image', var_image), ('kurtosis_image', kurtosis_image)):
    check_format(image, PixelFormat.rgba, name)
    check_half_size(raw_image, image)

  ctx.run(
    Kernel.raw_noise_statistics,
    ctx.enqueue_args(*image_size(mean_image)),
    (mean_image, var_image, kurtosis_image),
    raw_image,
    bayer_pattern,
    sobel_image,
  )
  return mean_image, var_image, kurtosis_image


@beartype
def denoise_image(
  ctx: ComputeContext,
  image: torch.Tensor,
  gradient_image: torch.Tensor,
  var_a: Vector3,
  var_b: Vector3,
  threshold_multipliers: Vector3,
  chroma_boost: float,
  gradient_boost: float,
  gradient_threshold: float,
  output_image: torch.Tensor,
) -> torch.Tensor:
  """
  Edge aware 5x5 range filter of a YCbCr image.

  The squared range threshold of each channel is
  threshold_multipliers[c] * (var_a[c] + var_b[c] * Y). Chroma thresholds are
  scaled by chroma_boost, the luma threshold shrinks where the gradient rises
  above gradient_threshold, faster for larger gradient_boost.
  """
  check_format(image, PixelFormat.rgba, 'image')
  check_format(gradient_image, PixelFormat.luma_alpha, 'gradient_image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image, gradient_image)
  check_same_size(image, output_image)
  check_distinct(image, output_image)

  ctx.run(
    Kernel.denoise_image,
    ctx.enqueue_args(*image_size(output_image)),
    output_image,
    image,
    gradient_image,
    var_a,
    var_b,
    threshold_multipliers,
    chroma_boost,
    gradient_boost,
    gradient_threshold,
  )
  return output_image


@beartype
def denoise_image_guided(
  ctx: ComputeContext, image: torch.Tensor, var_a: Vector3, var_b: Vector3, output_image: torch.Tensor
) -> torch.Tensor:
  """Guided filter of a YCbCr image steered by its own luma, eps from the noise model."""
  check_format(image, PixelFormat.rgba, 'image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image, output_image)
  check_distinct(image, output_image)

  ctx.run(Kernel.denoise_image_guided, ctx.enqueue_args(*image_size(output_image)), output_image, image, var_a, var_b)
  return output_image


@beartype
def despeckle_image(
  ctx: ComputeContext, image: torch.Tensor, var_a: Vector3, var_b: Vector3, output_image: torch.Tensor
) -> torch.Tensor:
  """Replace luma outliers beyond 3 sigma by the 3x3 median, median filter chroma."""
  check_format(image, PixelFormat.rgba, 'image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image, output_image)
  check_distinct(image, output_image)

  ctx.run(Kernel.despeckle_image, ctx.enqueue_args(*image_size(output_image)), output_image, image, var_a, var_b)
  return output_image


@beartype
def denoise_raw_rgba(
  ctx: ComputeContext, image: torch.Tensor, raw_variance: Vector4, output_image: torch.Tensor
) -> torch.Tensor:
  """3x3 range filter of packed raw quads with a fixed per channel variance."""
  check_format(image, PixelFormat.rgba, 'image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image, output_image)
  check_distinct(image, output_image)

  ctx.run(Kernel.denoise_raw_rgba, ctx.enqueue_args(*image_size(output_image)), output_image, image, raw_variance)
  return output_image


@beartype
def despeckle_raw_rgba(
  ctx: ComputeContext, image: torch.Tensor, raw_variance: Vector4, output_image: torch.Tensor
) -> torch.Tensor:
  """Clamp hot and cold pixels to the range of their 8 neighbours widened by 3 sigma."""
  check_format(image, PixelFormat.rgba, 'image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image, output_image)
  check_distinct(image, output_image)

  ctx.run(Kernel.despeckle_raw_rgba, ctx.enqueue_args(*image_size(output_image)), output_image, image, raw_variance)
  return output_image


@beartype
def despeckle_raw_black_image(
  ctx: ComputeContext, raw_image: torch.Tensor, bayer_pattern: BayerPattern, output_image: torch.Tensor
) -> torch.Tensor:
  """Black level despeckle of the mosaic, currently an identity pass."""
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(output_image, PixelFormat.luma, 'output_image')
  check_same_size(raw_image, output_image)

  ctx.run(
    Kernel.despeckle_raw_black, ctx.enqueue_args(*image_size(output_image)), output_image, raw_image, bayer_pattern
  )
  return output_image


__all__ = [
  'denoise_image',
  'denoise_image_guided',
  'denoise_raw_rgba',
  'despeckle_image',
  'despeckle_raw_black_image',
  'despeckle_raw_rgba',
  'raw_noise_statistics',
  'ycbcr_noise_statistics',
]
