"""Raw scaling and demosaic stages on synthetic mosaics."""

import pytest
import torch

from torch_rawpipe.bayer import BayerPattern, rgb_to_bayer
from torch_rawpipe.debayer import (
  Demosaic,
  Demosaicer,
  bayer_to_raw_rgba,
  fast_debayer,
  interpolate_green,
  interpolate_red_blue_at_green,
  malvar,
  raw_image_gradient,
  raw_image_sobel,
  raw_rgba_to_bayer,
  scale_raw_data,
)
from torch_rawpipe.image import PixelFormat, new_image

from .conftest import to_raw16

COLOUR = (0.5, 0.3, 0.2)


def flat_mosaic(size: tuple[int, int], pattern: BayerPattern) -> torch.Tensor:
  width, height = size
  return rgb_to_bayer(torch.tensor(COLOUR).expand(height, width, 3).contiguous(), pattern)


def test_scale_raw_data(ctx):
  raw = torch.full((4, 4, 1), 16384, dtype=torch.int32).to(torch.uint16)
  scaled = new_image(ctx.device, (4, 4), PixelFormat.luma)
  scale_raw_data(ctx, raw, scaled, BayerPattern.RGGB, (2.0, 1.0, 1.5, 1.0), 4096 / 65535)

  value = (16384 - 4096) / 65535
  assert float(scaled[0, 0, 0]) == pytest.approx(2.0 * value, rel=1e-5)
  assert float(scaled[0, 1, 0]) == pytest.approx(value, rel=1e-5)
  assert float(scaled[1, 1, 0]) == pytest.approx(1.5 * value, rel=1e-5)


def test_scale_raw_data_clamps_below_black(ctx):
  raw = torch.full((2, 2, 1), 100, dtype=torch.int32).to(torch.uint16)
  scaled = new_image(ctx.device, (2, 2), PixelFormat.luma)
  scale_raw_data(ctx, raw, scaled, BayerPattern.RGGB, (1.0, 1.0, 1.0, 1.0), 0.01)
  assert torch.all(scaled == 0)


@pytest.mark.parametrize('pattern', list(BayerPattern))
@pytest.mark.parametrize('strategy', [Demosaic.adaptive, Demosaic.malvar])
def test_flat_colour_is_exact(ctx, pattern, strategy):
  """A uniformly coloured scene demosaics back to its colour, borders included."""
  demosaicer = Demosaicer(ctx, (8, 6), pattern, strategy)
  rgb = demosaicer.process(flat_mosaic((8, 6), pattern))

  assert rgb.shape == (6, 8, 4)
  expected = torch.tensor(COLOUR).expand(6, 8, 3)
  assert torch.allclose(rgb[..., :3], expected, atol=1e-6)


def test_fast_debayer_half_size(ctx):
  raw = flat_mosaic((8, 6), BayerPattern.GRBG)
  rgb = new_image(ctx.device, (4, 3), PixelFormat.rgba)
  fast_debayer(ctx, raw, rgb, BayerPattern.GRBG)
  assert torch.allclose(rgb[..., :3], torch.tensor(COLOUR).expand(3, 4, 3))

  with pytest.raises(AssertionError):
    fast_debayer(ctx, raw, new_image(ctx.device, (8, 6), PixelFormat.rgba), BayerPattern.GRBG)


def test_demosaicer_fast_output_size(ctx):
  demosaicer = Demosaicer(ctx, (8, 6), BayerPattern.RGGB, Demosaic.fast)
  assert demosaicer.output_size == (4, 3)
  assert demosaicer.process(flat_mosaic((8, 6), BayerPattern.RGGB)).shape == (3, 4, 4)


def test_demosaicer_rejects_odd_size(ctx):
  with pytest.raises(ValueError):
    Demosaicer(ctx, (7, 6), BayerPattern.RGGB)


def test_stencils_need_four_pixels(ctx):
  with pytest.raises(ValueError):
    Demosaicer(ctx, (2, 2), BayerPattern.RGGB, Demosaic.malvar)
  assert Demosaicer(ctx, (2, 2), BayerPattern.RGGB, Demosaic.fast).output_size == (1, 1)

  raw = flat_mosaic((2, 2), BayerPattern.RGGB)
  with pytest.raises(AssertionError):
    malvar(ctx, raw, new_image(ctx.device, (2, 2), PixelFormat.rgba), BayerPattern.RGGB)
  with pytest.raises(AssertionError):
    raw_image_gradient(ctx, raw, new_image(ctx.device, (2, 2), PixelFormat.luma_alpha))


def test_demosaicer_rejects_wrong_input(ctx):
  demosaicer = Demosaicer(ctx, (8, 6), BayerPattern.RGGB)
  with pytest.raises(RuntimeError):
    demosaicer.process(torch.zeros(8, 8, 1))


def test_gradient_of_flat_colour_is_zero(ctx):
  raw = flat_mosaic((8, 8), BayerPattern.RGGB)
  gradient = new_image(ctx.device, (8, 8), PixelFormat.luma_alpha)
  raw_image_gradient(ctx, raw, gradient)
  assert torch.allclose(gradient, torch.zeros_like(gradient), atol=1e-7)


def test_sobel_of_flat_colour(ctx):
  """The quad luma removes the CFA pattern, so a flat scene has no edges."""
  raw = flat_mosaic((8, 8), BayerPattern.BGGR)
  sobel = new_image(ctx.device, (8, 8), PixelFormat.rgba)
  raw_image_sobel(ctx, raw, sobel)
  assert torch.allclose(sobel[..., :3], torch.zeros(8, 8, 3), atol=1e-7)
  assert torch.all(sobel[..., 3] == 1)


def test_sobel_finds_vertical_edge(ctx):
  raw = torch.zeros(8, 8, 1)
  raw[:, 4:] = 0.5
  sobel = new_image(ctx.device, (8, 8), PixelFormat.rgba)
  raw_image_sobel(ctx, raw, sobel)
  assert sobel[4, 3, 2] > 0
  assert torch.allclose(sobel[..., 1], torch.zeros(8, 8), atol=1e-7)


def test_raw_rgba_round_trip(ctx, generator):
  raw = torch.rand(6, 8, 1, generator=generator)
  packed = new_image(ctx.device, (4, 3), PixelFormat.rgba)
  restored = new_image(ctx.device, (8, 6), PixelFormat.luma)
  bayer_to_raw_rgba(ctx, raw, packed, BayerPattern.GBRG)
  raw_rgba_to_bayer(ctx, packed, restored, BayerPattern.GBRG)
  assert torch.equal(restored, raw)


def test_raw16_conversion_is_scaled(ctx):
  raw = to_raw16(flat_mosaic((4, 4), BayerPattern.RGGB))
  scaled = new_image(ctx.device, (4, 4), PixelFormat.luma)
  scale_raw_data(ctx, raw, scaled, BayerPattern.RGGB, (1.0, 1.0, 1.0, 1.0), 0.0)
  assert float(scaled[0, 0, 0]) == pytest.approx(COLOUR[0], abs=1e-4)


def test_interpolate_green_flat(ctx):
  raw = flat_mosaic((8, 8), BayerPattern.GRBG)
  gradient = raw_image_gradient(ctx, raw, new_image(ctx.device, (8, 8), PixelFormat.luma_alpha))
  green = new_image(ctx.device, (8, 8), PixelFormat.luma)
  interpolate_green(ctx, raw, gradient, green, BayerPattern.GRBG, (1e-4, 1e-4))
  torch.testing.assert_close(green, torch.full_like(green, COLOUR[1]), atol=1e-5, rtol=0)


def test_red_blue_at_green_rejects_aliasing(ctx):
  rgb = new_image(ctx.device, (4, 4), PixelFormat.rgba)
  gradient = new_image(ctx.device, (4, 4), PixelFormat.luma_alpha)
  with pytest.raises(AssertionError):
    interpolate_red_blue_at_green(ctx, rgb, gradient, rgb, BayerPattern.RGGB, (1e-4, 1e-4), (1e-4, 1e-4))


@pytest.mark.parametrize('strategy', list(Demosaic))
def test_scale_and_demosaic_known_rgb(ctx, strategy):
  """A 4x4 RGGB mosaic with a black level and channel gains develops to its scene colour."""
  black_level = 0.05
  gains = (2.0, 1.0, 1.5, 1.0)
  sensor = (COLOUR[0] / gains[0], COLOUR[1] / gains[1], COLOUR[2] / gains[2])
  mosaic = rgb_to_bayer(torch.tensor(sensor).expand(4, 4, 3).contiguous(), BayerPattern.RGGB)
  raw = to_raw16(mosaic + black_level)

  scaled = new_image(ctx.device, (4, 4), PixelFormat.luma)
  scale_raw_data(ctx, raw, scaled, BayerPattern.RGGB, gains, black_level)
  demosaicer = Demosaicer(ctx, (4, 4), BayerPattern.RGGB, strategy)
  rgb = demosaicer.process(scaled)

  width, height = demosaicer.output_size
  expected = torch.tensor(COLOUR).expand(height, width, 3)
  # Quantisation to 16 bits, amplified by the largest gain
  torch.testing.assert_close(rgb[..., :3], expected, atol=2 * 2.0 / 65535, rtol=0)
