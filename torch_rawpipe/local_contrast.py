"""Guided filter local tone mapping over a three octave pyramid."""

from beartype import beartype
import torch

from .context import ComputeContext, EnqueueArgs, Kernel, Sampler, kernel, pixel_grid
from .image import PixelFormat, check_format, check_same_size, image_size


def _bilinear_mean(image: torch.Tensor, sampler: Sampler) -> torch.Tensor:
  """3x3 binomial mean from four bilinear fetches between pixel centres."""
  x, y = pixel_grid(image_size(image), image.device)
  total = sampler.sample(image, x - 0.5, y - 0.5)
  total = total + sampler.sample(image, x + 0.5, y - 0.5)
  total = total + sampler.sample(image, x - 0.5, y + 0.5)
  total = total + sampler.sample(image, x + 0.5, y + 0.5)
  return total / 4


def _mapped_grid(size: tuple[int, int], source_size: tuple[int, int], device: torch.device):
  x, y = pixel_grid(size, device)
  width, height = size
  source_width, source_height = source_size
  return (x + 0.5) * (source_width / width) - 0.5, (y + 0.5) * (source_height / height) - 0.5


@kernel(Kernel.guided_filter_ab)
def _guided_filter_ab(extent: EnqueueArgs, guide: torch.Tensor, eps: float, sampler: Sampler) -> torch.Tensor:
  luma = guide[..., :1]
  mean = _bilinear_mean(luma, sampler)
  mean2 = _bilinear_mean(luma * luma, sampler)
  variance = (mean2 - mean * mean).clamp_min(0)

  a = variance / (variance + eps)
  b = mean * (1 - a)
  return torch.cat([a, b], dim=-1)


@kernel(Kernel.box_filter_ab)
def _box_filter_ab(extent: EnqueueArgs, ab: torch.Tensor, sampler: Sampler) -> torch.Tensor:
  return _bilinear_mean(ab, sampler)


@kernel(Kernel.local_tone_mapping_mask)
def _local_tone_mapping_mask(
  extent: EnqueueArgs,
  image: torch.Tensor,
  ab_means: tuple[torch.Tensor | None, ...],
  detail: tuple[float, float, float],
  shadows: float,
  highlights: float,
  ycbcr_srgb: torch.Tensor,
  nlf: tuple[float, float],
  sampler: Sampler,
) -> torch.Tensor:
  size = image_size(image)
  luma = image[..., :1]

  smooth = []
  for ab in ab_means:
    if ab is None:
      smooth.append(None)
      continue
    x, y = _mapped_grid(size, image_size(ab), image.device)
    coefficients = sampler.sample(ab, x, y)
    smooth.append(coefficients[..., :1] * luma + coefficients[..., 1:])

  # Shadows and highlights act on the low frequency base, keyed by its brightest channel
  base = smooth[0]
  base_ycc = torch.cat([base, image[..., 1:3]], dim=-1)
  rgb = torch.einsum('ij,hwj->hwi', ycbcr_srgb.to(device=image.device, dtype=image.dtype), base_ycc)
  brightness = rgb.amax(dim=-1, keepdim=True).clamp(0, 1)
  gain = torch.lerp(torch.full_like(brightness, shadows), torch.full_like(brightness, highlights), brightness)
  result = luma + (gain - 1) * base

  sigma2 = (nlf[0] + nlf[1] * luma).clamp_min(1e-12)
  for weight, octave in zip(detail, smooth, strict=True):
    if octave is None or weight == 1:
      continue
    difference = luma - octave
    d2 = difference * difference
    result = result + difference * (weight - 1) * d2 / (d2 + sigma2)

  valid = luma > 1e-6
  return torch.where(valid, result / torch.where(valid, luma, torch.ones_like(luma)), torch.ones_like(luma))


@beartype
def guided_filter_ab(
  ctx: ComputeContext, guide_image: torch.Tensor, ab_image: torch.Tensor, eps: float
) -> torch.Tensor:
  """
  Self guided filter coefficients of the guide luma.

  Args:
      guide_image: YCbCr image (H, W, 4), channel 0 is the guide
      ab_image: Output (a, b) with a = var / (var + eps), b = mean (1 - a)
      eps: Regularization, larger values smooth across stronger edges

  Returns:
      ab_image
  """
  check_format(guide_image, PixelFormat.rgba, 'guide_image')
  check_format(ab_image, PixelFormat.luma_alpha, 'ab_image')
  check_same_size(guide_image, ab_image)
  if eps <= 0:
    raise ValueError(f'eps must be positive, got {eps}')

  ctx.run(
    Kernel.guided_filter_ab, ctx.enqueue_args(*image_size(ab_image)), ab_image, guide_image, eps, ctx.create_sampler()
  )
  return ab_image


@beartype
def box_filter_ab(ctx: ComputeContext, ab_image: torch.Tensor, ab_mean_image: torch.Tensor) -> torch.Tensor:
  """Local mean of the guided filter coefficients."""
  check_format(ab_image, PixelFormat.luma_alpha, 'ab_image')
  check_format(ab_mean_image, PixelFormat.luma_alpha, 'ab_mean_image')
  check_same_size(ab_image, ab_mean_image)

  ctx.run(
    Kernel.box_filter_ab, ctx.enqueue_args(*image_size(ab_mean_image)), ab_mean_image, ab_image, ctx.create_sampler()
  )
  return ab_mean_image


@beartype
def local_tone_mapping_mask(
  ctx: ComputeContext,
  image: torch.Tensor,
  guide_images: tuple[torch.Tensor, torch.Tensor, torch.Tensor],
  ab_images: tuple[torch.Tensor, torch.Tensor, torch.Tensor],
  ab_mean_images: tuple[torch.Tensor, torch.Tensor, torch.Tensor],
  *,
  eps: float,
  shadows: float,
  highlights: float,
  detail: tuple[float, float, float],
  ycbcr_srgb: torch.Tensor,
  nlf: tuple[float, float],
  output_image: torch.Tensor,
) -> torch.Tensor:
  """
  Luma gain mask for local tone mapping.

  Octaves are ordered LF, MF, HF. The LF octave is always filtered since it
  carries the shadows/highlights base; MF and HF are only filtered when their
  detail weight differs from 1. Detail is boosted by (detail - 1) times the
  difference to the octave's smooth luma, faded out where that difference is
  within the noise (nlf) of the image.

  Args:
      image: Full resolution YCbCr image (H, W, 4)
      guide_images: YCbCr octave images, any size
      ab_images: Guided filter coefficient buffers, same size as their guide
      ab_mean_images: Filtered coefficients, same size as their guide
      eps: Guided filter regularization
      shadows: Gain of the dark end of the base layer
      highlights: Gain of the bright end of the base layer
      detail: Detail weights of (LF, MF, HF), 1 is identity
      ycbcr_srgb: 3x3 matrix from YCbCr to linear sRGB
      nlf: Luma noise model (a, b)
      output_image: Gain mask (H, W, 1), ones for identity parameters

  Returns:
      output_image
  """
  check_format(image, PixelFormat.rgba, 'image')
  check_format(output_image, PixelFormat.luma, 'output_image')
  check_same_size(image, output_image)
  assert ycbcr_srgb.shape == (3, 3), f'Expected a 3x3 matrix, got {tuple(ycbcr_srgb.shape)}'

  ab_means: list[torch.Tensor | None] = []
  for i, (guide, ab, ab_mean) in enumerate(zip(guide_images, ab_images, ab_mean_images, strict=True)):
    if i == 0 or detail[i] != 1:
      guided_filter_ab(ctx, guide, ab, eps)
      box_filter_ab(ctx, ab, ab_mean)
      ab_means.append(ab_mean)
    else:
      ab_means.append(None)

  ctx.run(
    Kernel.local_tone_mapping_mask,
    ctx.enqueue_args(*image_size(output_image)),
    output_image,
    image,
    tuple(ab_means),
    detail,
    shadows,
    highlights,
    ycbcr_srgb,
    nlf,
    ctx.create_sampler(),
  )
  return output_image


__all__ = ['box_filter_ab', 'guided_filter_ab', 'local_tone_mapping_mask']
