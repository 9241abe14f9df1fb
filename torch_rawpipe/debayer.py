"""Raw scaling, gradients and Bayer demosaicing stages."""

from enum import Enum

from beartype import beartype
import torch
import torch.nn.functional as F

from .bayer import BayerPattern, bayer_offsets, pack_bayer, rgb_channel_map, rgb_masks, unpack_bayer
from .context import ComputeContext, EnqueueArgs, Kernel, kernel
from .image import (
  PixelFormat,
  check_distinct,
  check_format,
  check_half_size,
  check_same_size,
  image_size,
  new_image,
  pad_image,
  shifted,
)


class Demosaic(Enum):
  adaptive = 0
  malvar = 1
  fast = 2


# Malvar-He-Cutler 5x5 stencils
# https://www.ipol.im/pub/art/2011/g_mhcd/article.pdf
_g_at_rb = [
  [0, 0, -1, 0, 0],
  [0, 0, 2, 0, 0],
  [-1, 2, 4, 2, -1],
  [0, 0, 2, 0, 0],
  [0, 0, -1, 0, 0],
]
_rb_at_g_horizontal = [
  [0, 0, 0.5, 0, 0],
  [0, -1, 0, -1, 0],
  [-1, 4, 5, 4, -1],
  [0, -1, 0, -1, 0],
  [0, 0, 0.5, 0, 0],
]
_rb_at_br = [
  [0, 0, -1.5, 0, 0],
  [0, 2, 0, 2, 0],
  [-1.5, 0, 6, 0, -1.5],
  [0, 2, 0, 2, 0],
  [0, 0, -1.5, 0, 0],
]


def _check_even(image: torch.Tensor) -> None:
  width, height = image_size(image)
  assert width % 2 == 0 and height % 2 == 0, f'Bayer image dimensions must be even, got {width}x{height}'


def _check_stencil_size(image: torch.Tensor) -> None:
  width, height = image_size(image)
  assert width >= 4 and height >= 4, f'5x5 Bayer stencils need at least 4x4 pixels, got {width}x{height}'


def _raw_variance(variance: tuple[float, float], value: torch.Tensor) -> torch.Tensor:
  return (variance[0] + variance[1] * value).clamp_min(1e-8)


def _directional(gradient: torch.Tensor, size: tuple[int, int]) -> tuple[torch.Tensor, torch.Tensor]:
  """Horizontal and vertical gradients smoothed along their own direction."""
  g = pad_image(gradient, 1)
  dh = (shifted(g, 1, -1, 0, size)[..., 0] + 2 * gradient[..., 0] + shifted(g, 1, 1, 0, size)[..., 0]) / 4
  dv = (shifted(g, 1, 0, -1, size)[..., 1] + 2 * gradient[..., 1] + shifted(g, 1, 0, 1, size)[..., 1]) / 4
  return dh, dv


@kernel(Kernel.scale_raw_data)
def _scale_raw_data(
  extent: EnqueueArgs, raw: torch.Tensor, pattern: BayerPattern, scale_mul: tuple[float, ...], black_level: float
) -> torch.Tensor:
  value = raw[..., 0].to(torch.float32) / 65535
  scale = torch.empty_like(value)
  for c, (x, y) in enumerate(bayer_offsets(pattern)):
    scale[y::2, x::2] = scale_mul[c]
  return (scale * (value - black_level)).clamp_min(0).unsqueeze(-1)


@kernel(Kernel.raw_image_gradient)
def _raw_image_gradient(extent: EnqueueArgs, raw: torch.Tensor) -> torch.Tensor:
  size = image_size(raw)
  p = pad_image(raw, 2, 'reflect')

  def at(dx: int, dy: int) -> torch.Tensor:
    return shifted(p, 2, dx, dy, size)[..., 0]

  c = raw[..., 0]
  dh = (at(-1, 0) - at(1, 0)).abs() + (2 * c - at(-2, 0) - at(2, 0)).abs() / 2
  dv = (at(0, -1) - at(0, 1)).abs() + (2 * c - at(0, -2) - at(0, 2)).abs() / 2
  return torch.stack([dh, dv], dim=-1)


@kernel(Kernel.raw_image_sobel)
def _raw_image_sobel(extent: EnqueueArgs, raw: torch.Tensor) -> torch.Tensor:
  size = image_size(raw)
  # Every 2x2 window holds one full quad, its mean is free of the CFA pattern
  p = pad_image(raw, 1, 'reflect')
  luma = (raw + shifted(p, 1, 1, 0, size) + shifted(p, 1, 0, 1, size) + shifted(p, 1, 1, 1, size)) / 4

  l = pad_image(luma, 1)

  def at(dx: int, dy: int) -> torch.Tensor:
    return shifted(l, 1, dx, dy, size)[..., 0]

  gx = (at(1, -1) + 2 * at(1, 0) + at(1, 1) - at(-1, -1) - 2 * at(-1, 0) - at(-1, 1)) / 8
  gy = (at(-1, 1) + 2 * at(0, 1) + at(1, 1) - at(-1, -1) - 2 * at(0, -1) - at(1, -1)) / 8
  magnitude = torch.sqrt(gx * gx + gy * gy)
  return torch.stack([gx, gy, magnitude, torch.ones_like(gx)], dim=-1)


@kernel(Kernel.interpolate_green)
def _interpolate_green(
  extent: EnqueueArgs,
  raw: torch.Tensor,
  gradient: torch.Tensor,
  pattern: BayerPattern,
  green_variance: tuple[float, float],
) -> torch.Tensor:
  size = image_size(raw)
  p = pad_image(raw, 2, 'reflect')

  def at(dx: int, dy: int) -> torch.Tensor:
    return shifted(p, 2, dx, dy, size)[..., 0]

  c = raw[..., 0]
  # Hamilton-Adams estimates with second order correction from the centre colour
  gh = (at(-1, 0) + at(1, 0)) / 2 + (2 * c - at(-2, 0) - at(2, 0)) / 4
  gv = (at(0, -1) + at(0, 1)) / 2 + (2 * c - at(0, -2) - at(0, 2)) / 4

  dh, dv = _directional(gradient, size)
  sigma2 = _raw_variance(green_variance, c)
  wh = 1 / (dh * dh + sigma2)
  wv = 1 / (dv * dv + sigma2)

  green_sites = rgb_masks(pattern, size, raw.device)[..., 1]
  green = torch.where(green_sites, c, (wh * gh + wv * gv) / (wh + wv))
  return green.clamp_min(0).unsqueeze(-1)


@kernel(Kernel.interpolate_red_blue)
def _interpolate_red_blue(
  extent: EnqueueArgs,
  raw: torch.Tensor,
  green: torch.Tensor,
  gradient: torch.Tensor,
  pattern: BayerPattern,
  red_variance: tuple[float, float],
  blue_variance: tuple[float, float],
) -> torch.Tensor:
  size = image_size(raw)
  c = raw[..., 0]
  g = green[..., 0]
  masks = rgb_masks(pattern, size, raw.device)

  def neighbours(image: torch.Tensor, offsets: list[tuple[int, int]]) -> list[torch.Tensor]:
    p = pad_image(image.unsqueeze(-1), 1, 'reflect')
    return [shifted(p, 1, dx, dy, size)[..., 0] for dx, dy in offsets]

  channels = [None, g, None]
  for channel, variance in ((0, red_variance), (2, blue_variance)):
    opposite = 2 - channel
    sites = masks[..., channel]
    difference = torch.where(sites, c - g, torch.zeros_like(c))

    # At sites of the opposite colour all four diagonals carry this colour
    nw, se, ne, sw = neighbours(difference, [(-1, -1), (1, 1), (1, -1), (-1, 1)])
    d1 = (nw - se).abs()
    d2 = (ne - sw).abs()
    sigma2 = _raw_variance(variance, g)
    w1 = 1 / (d1 * d1 + sigma2)
    w2 = 1 / (d2 * d2 + sigma2)
    diagonal = (w1 * (nw + se) / 2 + w2 * (ne + sw) / 2) / (w1 + w2)

    # At green sites two of the four direct neighbours carry this colour
    cross = sum(neighbours(difference, [(-1, 0), (1, 0), (0, -1), (0, 1)]))
    count = sum(neighbours(sites.to(c.dtype), [(-1, 0), (1, 0), (0, -1), (0, 1)]))
    axial = cross / count.clamp_min(1)

    estimate = torch.where(masks[..., opposite], g + diagonal, g + axial)
    channels[channel] = torch.where(sites, c, estimate).clamp_min(0)

  return torch.stack([*channels, torch.zeros_like(c)], dim=-1)


@kernel(Kernel.interpolate_red_blue_at_green)
def _interpolate_red_blue_at_green(
  extent: EnqueueArgs,
  rgb: torch.Tensor,
  gradient: torch.Tensor,
  pattern: BayerPattern,
  red_variance: tuple[float, float],
  blue_variance: tuple[float, float],
) -> torch.Tensor:
  size = image_size(rgb)
  green_sites = rgb_masks(pattern, size, rgb.device)[..., 1]
  g = rgb[..., 1]
  dh, dv = _directional(gradient, size)

  result = rgb.clone()
  for channel, variance in ((0, red_variance), (2, blue_variance)):
    p = pad_image((rgb[..., channel] - g).unsqueeze(-1), 1, 'reflect')

    def at(dx: int, dy: int) -> torch.Tensor:
      return shifted(p, 1, dx, dy, size)[..., 0]

    horizontal = (at(-1, 0) + at(1, 0)) / 2
    vertical = (at(0, -1) + at(0, 1)) / 2
    sigma2 = _raw_variance(variance, g)
    wh = 1 / (dh * dh + sigma2)
    wv = 1 / (dv * dv + sigma2)
    estimate = (g + (wh * horizontal + wv * vertical) / (wh + wv)).clamp_min(0)
    result[..., channel] = torch.where(green_sites, estimate, rgb[..., channel])

  return result


def _malvar_filters(device: torch.device) -> torch.Tensor:
  g = torch.tensor(_g_at_rb, dtype=torch.float32)
  horizontal = torch.tensor(_rb_at_g_horizontal, dtype=torch.float32)
  diagonal = torch.tensor(_rb_at_br, dtype=torch.float32)
  return (torch.stack([g, horizontal, horizontal.T, diagonal]) / 8).unsqueeze(1).to(device)


@kernel(Kernel.malvar)
def _malvar(extent: EnqueueArgs, raw: torch.Tensor, pattern: BayerPattern) -> torch.Tensor:
  height, width = raw.shape[:2]
  chw = pad_image(raw, 2, 'reflect').permute(2, 0, 1).unsqueeze(0)
  g_at_rb, along_row, along_column, diagonal = F.conv2d(chw, _malvar_filters(raw.device))[0]
  c = raw[..., 0]

  result = torch.zeros((height, width, 4), dtype=raw.dtype, device=raw.device)
  quad = rgb_channel_map(pattern)
  for y in range(2):
    for x in range(2):
      site = quad[y][x]
      out = result[y::2, x::2]
      out[..., site] = c[y::2, x::2]
      if site == 1:
        out[..., quad[y][1 - x]] = along_row[y::2, x::2]
        out[..., quad[1 - y][x]] = along_column[y::2, x::2]
      else:
        out[..., 1] = g_at_rb[y::2, x::2]
        out[..., 2 - site] = diagonal[y::2, x::2]

  result[..., :3] = result[..., :3].clamp_min(0)
  return result


@kernel(Kernel.fast_debayer)
def _fast_debayer(extent: EnqueueArgs, raw: torch.Tensor, pattern: BayerPattern) -> torch.Tensor:
  red, green, blue, green2 = pack_bayer(raw[..., 0], pattern).unbind(-1)
  return torch.stack([red, (green + green2) / 2, blue, torch.zeros_like(red)], dim=-1)


@kernel(Kernel.bayer_to_raw_rgba)
def _bayer_to_raw_rgba(extent: EnqueueArgs, raw: torch.Tensor, pattern: BayerPattern) -> torch.Tensor:
  return pack_bayer(raw[..., 0], pattern)


@kernel(Kernel.raw_rgba_to_bayer)
def _raw_rgba_to_bayer(extent: EnqueueArgs, rgba: torch.Tensor, pattern: BayerPattern) -> torch.Tensor:
  return unpack_bayer(rgba, pattern).unsqueeze(-1)


@beartype
def scale_raw_data(
  ctx: ComputeContext,
  raw_image: torch.Tensor,
  scaled_raw_image: torch.Tensor,
  bayer_pattern: BayerPattern,
  scale_mul: tuple[float, float, float, float],
  black_level: float,
) -> torch.Tensor:
  """
  Subtract the black level and apply per channel gains to 16 bit sensor data.

  Args:
      raw_image: Sensor data (H, W, 1) uint16
      scaled_raw_image: Output (H, W, 1) float32
      bayer_pattern: Bayer pattern of the sensor
      scale_mul: Gains for the red, green, blue, green2 channels
      black_level: Black level normalized to [0, 1] (black / 65535)

  Returns:
      scaled_raw_image
  """
  check_format(raw_image, PixelFormat.luma16, 'raw_image')
  check_format(scaled_raw_image, PixelFormat.luma, 'scaled_raw_image')
  check_same_size(raw_image, scaled_raw_image)
  _check_even(raw_image)

  width, height = image_size(scaled_raw_image)
  ctx.run(
    Kernel.scale_raw_data,
    ctx.enqueue_args(width // 2, height // 2),
    scaled_raw_image,
    raw_image,
    bayer_pattern,
    scale_mul,
    black_level,
  )
  return scaled_raw_image


@beartype
def raw_image_gradient(ctx: ComputeContext, raw_image: torch.Tensor, gradient_image: torch.Tensor) -> torch.Tensor:
  """Horizontal and vertical same colour gradients (H, W, 2) of a scaled mosaic."""
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(gradient_image, PixelFormat.luma_alpha, 'gradient_image')
  _check_stencil_size(raw_image)
  check_same_size(raw_image, gradient_image)

  ctx.run(Kernel.raw_image_gradient, ctx.enqueue_args(*image_size(gradient_image)), gradient_image, raw_image)
  return gradient_image


@beartype
def raw_image_sobel(ctx: ComputeContext, raw_image: torch.Tensor, sobel_image: torch.Tensor) -> torch.Tensor:
  """Sobel (gx, gy, magnitude, 1) of the CFA-neutral luma of a scaled mosaic."""
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(sobel_image, PixelFormat.rgba, 'sobel_image')
  check_same_size(raw_image, sobel_image)

  ctx.run(Kernel.raw_image_sobel, ctx.enqueue_args(*image_size(sobel_image)), sobel_image, raw_image)
  return sobel_image


@beartype
def interpolate_green(
  ctx: ComputeContext,
  raw_image: torch.Tensor,
  gradient_image: torch.Tensor,
  green_image: torch.Tensor,
  bayer_pattern: BayerPattern,
  green_variance: tuple[float, float],
) -> torch.Tensor:
  """
  Gradient weighted green interpolation.

  Horizontal and vertical estimates are blended with weights 1 / (d^2 + var),
  var being the green noise model evaluated at the pixel, so flat noisy areas
  average both directions and edges follow the smoother one.
  """
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(gradient_image, PixelFormat.luma_alpha, 'gradient_image')
  check_format(green_image, PixelFormat.luma, 'green_image')
  check_same_size(raw_image, gradient_image)
  check_same_size(raw_image, green_image)
  _check_even(raw_image)
  _check_stencil_size(raw_image)

  ctx.run(
    Kernel.interpolate_green,
    ctx.enqueue_args(*image_size(green_image)),
    green_image,
    raw_image,
    gradient_image,
    bayer_pattern,
    green_variance,
  )
  return green_image


@beartype
def interpolate_red_blue(
  ctx: ComputeContext,
  raw_image: torch.Tensor,
  green_image: torch.Tensor,
  gradient_image: torch.Tensor,
  rgb_image: torch.Tensor,
  bayer_pattern: BayerPattern,
  red_variance: tuple[float, float],
  blue_variance: tuple[float, float],
) -> torch.Tensor:
  """Colour difference interpolation of red and blue, one quad per work item."""
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(green_image, PixelFormat.luma, 'green_image')
  check_format(gradient_image, PixelFormat.luma_alpha, 'gradient_image')
  check_format(rgb_image, PixelFormat.rgba, 'rgb_image')
  for image in (green_image, gradient_image, rgb_image):
    check_same_size(raw_image, image)
  _check_even(raw_image)
  _check_stencil_size(raw_image)

  width, height = image_size(rgb_image)
  ctx.run(
    Kernel.interpolate_red_blue,
    ctx.enqueue_args(width // 2, height // 2),
    rgb_image,
    raw_image,
    green_image,
    gradient_image,
    bayer_pattern,
    red_variance,
    blue_variance,
  )
  return rgb_image


@beartype
def interpolate_red_blue_at_green(
  ctx: ComputeContext,
  rgb_image_in: torch.Tensor,
  gradient_image: torch.Tensor,
  rgb_image_out: torch.Tensor,
  bayer_pattern: BayerPattern,
  red_variance: tuple[float, float],
  blue_variance: tuple[float, float],
) -> torch.Tensor:
  """Refine red and blue at green sites from the completed neighbouring pixels."""
  check_format(rgb_image_in, PixelFormat.rgba, 'rgb_image_in')
  check_format(gradient_image, PixelFormat.luma_alpha, 'gradient_image')
  check_format(rgb_image_out, PixelFormat.rgba, 'rgb_image_out')
  check_same_size(rgb_image_in, gradient_image)
  check_same_size(rgb_image_in, rgb_image_out)
  check_distinct(rgb_image_in, rgb_image_out)
  _check_even(rgb_image_in)
  _check_stencil_size(rgb_image_in)

  width, height = image_size(rgb_image_out)
  ctx.run(
    Kernel.interpolate_red_blue_at_green,
    ctx.enqueue_args(width // 2, height // 2),
    rgb_image_out,
    rgb_image_in,
    gradient_image,
    bayer_pattern,
    red_variance,
    blue_variance,
  )
  return rgb_image_out


@beartype
def malvar(
  ctx: ComputeContext, raw_image: torch.Tensor, rgb_image: torch.Tensor, bayer_pattern: BayerPattern
) -> torch.Tensor:
  """Malvar-He-Cutler fixed stencil demosaic."""
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(rgb_image, PixelFormat.rgba, 'rgb_image')
  check_same_size(raw_image, rgb_image)
  _check_even(raw_image)
  _check_stencil_size(raw_image)

  ctx.run(Kernel.malvar, ctx.enqueue_args(*image_size(rgb_image)), rgb_image, raw_image, bayer_pattern)
  return rgb_image


@beartype
def fast_debayer(
  ctx: ComputeContext, raw_image: torch.Tensor, rgb_image: torch.Tensor, bayer_pattern: BayerPattern
) -> torch.Tensor:
  """Half resolution preview debayer, one output pixel per quad."""
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(rgb_image, PixelFormat.rgba, 'rgb_image')
  check_half_size(raw_image, rgb_image)

  ctx.run(Kernel.fast_debayer, ctx.enqueue_args(*image_size(rgb_image)), rgb_image, raw_image, bayer_pattern)
  return rgb_image


@beartype
def bayer_to_raw_rgba(
  ctx: ComputeContext, raw_image: torch.Tensor, rgba_image: torch.Tensor, bayer_pattern: BayerPattern
) -> torch.Tensor:
  """Pack a mosaic into half resolution (red, green, blue, green2) quads."""
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_format(rgba_image, PixelFormat.rgba, 'rgba_image')
  check_half_size(raw_image, rgba_image)

  ctx.run(Kernel.bayer_to_raw_rgba, ctx.enqueue_args(*image_size(rgba_image)), rgba_image, raw_image, bayer_pattern)
  return rgba_image


@beartype
def raw_rgba_to_bayer(
  ctx: ComputeContext, rgba_image: torch.Tensor, raw_image: torch.Tensor, bayer_pattern: BayerPattern
) -> torch.Tensor:
  """Unpack (red, green, blue, green2) quads back into a mosaic."""
  check_format(rgba_image, PixelFormat.rgba, 'rgba_image')
  check_format(raw_image, PixelFormat.luma, 'raw_image')
  check_half_size(raw_image, rgba_image)

  ctx.run(Kernel.raw_rgba_to_bayer, ctx.enqueue_args(*image_size(rgba_image)), raw_image, rgba_image, bayer_pattern)
  return raw_image


class Demosaicer:
  """Demosaic workspace owning the intermediate buffers of one image size."""

  @beartype
  def __init__(
    self,
    ctx: ComputeContext,
    image_size: tuple[int, int],
    bayer_pattern: BayerPattern,
    strategy: Demosaic = Demosaic.adaptive,
  ):
    width, height = image_size
    if width % 2 or height % 2:
      raise ValueError(f'Bayer image dimensions must be even, got {width}x{height}')
    if strategy is not Demosaic.fast and (width < 4 or height < 4):
      raise ValueError(f'{strategy.name} demosaic needs at least 4x4 pixels, got {width}x{height}')

    self.ctx = ctx
    self.image_size = image_size
    self.bayer_pattern = bayer_pattern
    self.strategy = strategy

    self.gradient = new_image(ctx.device, image_size, PixelFormat.luma_alpha)
    self.green = new_image(ctx.device, image_size, PixelFormat.luma)
    self.rgb_first_pass = new_image(ctx.device, image_size, PixelFormat.rgba)

  def __repr__(self) -> str:
    width, height = self.image_size
    return f'Demosaicer({width}x{height}, pattern={self.bayer_pattern.name}, strategy={self.strategy.name})'

  @property
  def output_size(self) -> tuple[int, int]:
    if self.strategy is Demosaic.fast:
      return (self.image_size[0] // 2, self.image_size[1] // 2)
    return self.image_size

  def process(
    self,
    raw_image: torch.Tensor,
    *,
    red_variance: tuple[float, float] = (1e-8, 1e-8),
    green_variance: tuple[float, float] = (1e-8, 1e-8),
    blue_variance: tuple[float, float] = (1e-8, 1e-8),
  ) -> torch.Tensor:
    """Demosaic a scaled (H, W, 1) mosaic into a new rgba image."""
    expected_shape = (self.image_size[1], self.image_size[0], 1)
    if raw_image.shape != expected_shape:
      raise RuntimeError(f'Demosaic input shape {tuple(raw_image.shape)} != expected {expected_shape}')

    rgb_image = new_image(self.ctx.device, self.output_size, PixelFormat.rgba)
    match self.strategy:
      case Demosaic.fast:
        return fast_debayer(self.ctx, raw_image, rgb_image, self.bayer_pattern)
      case Demosaic.malvar:
        return malvar(self.ctx, raw_image, rgb_image, self.bayer_pattern)
      case Demosaic.adaptive:
        raw_image_gradient(self.ctx, raw_image, self.gradient)
        interpolate_green(self.ctx, raw_image, self.gradient, self.green, self.bayer_pattern, green_variance)
        interpolate_red_blue(
          self.ctx,
          raw_image,
          self.green,
          self.gradient,
          self.rgb_first_pass,
          self.bayer_pattern,
          red_variance,
          blue_variance,
        )
        return interpolate_red_blue_at_green(
          self.ctx, self.rgb_first_pass, self.gradient, rgb_image, self.bayer_pattern, red_variance, blue_variance
        )


__all__ = [
  'Demosaic',
  'Demosaicer',
  'bayer_to_raw_rgba',
  'fast_debayer',
  'interpolate_green',
  'interpolate_red_blue',
  'interpolate_red_blue_at_green',
  'malvar',
  'raw_image_gradient',
  'raw_image_sobel',
  'raw_rgba_to_bayer',
  'scale_raw_data',
]
