"""Noise level function fitting."""

import logging

import pytest
import torch

from torch_rawpipe.bayer import BayerPattern
from torch_rawpipe.debayer import raw_image_sobel
from torch_rawpipe.image import PixelFormat, new_image
from torch_rawpipe.noise_model import (
  COEFFICIENT_FLOOR,
  NLFStrategy,
  NoiseLevelFunction,
  RefitPolicy,
  fit_noise_model,
  measure_raw_nlf,
  measure_raw_nlf_fit,
  measure_ycbcr_nlf,
)

A = 1e-5
B = 1e-3


def synthetic_statistics(generator: torch.Generator, n: int = 20000, channels: int = 3, relative_noise: float = 0.01):
  mean = 0.01 + 0.39 * torch.rand(n, 1, generator=generator, dtype=torch.float64)
  variance = (A + B * mean).expand(n, channels).clone()
  variance *= 1 + relative_noise * torch.randn(n, channels, generator=generator, dtype=torch.float64)
  return mean, variance


def test_noise_level_function():
  nlf = NoiseLevelFunction((1e-4, 2e-4), (1e-3, 2e-3))
  assert nlf.channels == 2
  assert nlf.variance(0.5) == pytest.approx((6e-4, 1.2e-3))
  assert nlf.channel(1) == (2e-4, 2e-3)
  assert nlf.scaled(2.0).a == pytest.approx((4e-4, 8e-4))

  with pytest.raises(ValueError):
    NoiseLevelFunction((1e-4,), (1e-3, 2e-3))


def test_recovers_linear_model(generator):
  mean, variance = synthetic_statistics(generator)
  fit = fit_noise_model(mean, variance)

  assert fit.nlf.channels == 3
  assert fit.nlf.a == pytest.approx((A,) * 3, rel=0.05)
  assert fit.nlf.b == pytest.approx((B,) * 3, rel=0.01)
  assert 0 < fit.samples < fit.initial_samples <= fit.total_samples
  assert not fit.degraded


def test_refit_rejects_outliers(generator):
  """Outliers bias the first fit, the gated second fit recovers the model."""
  mean, variance = synthetic_statistics(generator)
  outliers = torch.rand(mean.shape[0], generator=generator) < 0.1
  variance[outliers] += 2e-4

  fit = fit_noise_model(mean, variance)
  assert abs(fit.initial.a[0] - A) / A > 0.1
  assert fit.nlf.a == pytest.approx((A,) * 3, rel=0.05)
  assert fit.nlf.b == pytest.approx((B,) * 3, rel=0.02)
  assert max(fit.mse) < min(fit.initial_mse)


def test_exposure_multiplier_scales_model(generator):
  mean, variance = synthetic_statistics(generator)
  base = fit_noise_model(mean, variance)
  scaled = fit_noise_model(mean, variance, exposure_multiplier=4.0)

  assert scaled.nlf.a == pytest.approx(tuple(16 * a for a in base.nlf.a))
  assert scaled.nlf.b == pytest.approx(tuple(16 * b for b in base.nlf.b))


def test_flat_field_floors_slope(generator, caplog):
  """Without a spread of signal levels the slope cannot be estimated."""
  mean = torch.full((1000, 1), 0.2, dtype=torch.float64)
  variance = 1e-4 * (1 + 0.01 * torch.randn(1000, 3, generator=generator, dtype=torch.float64))

  with caplog.at_level(logging.WARNING):
    fit = fit_noise_model(mean, variance)

  assert fit.nlf.b == (COEFFICIENT_FLOOR,) * 3
  assert fit.nlf.a == pytest.approx((1e-4,) * 3, rel=0.01)
  assert fit.degraded
  assert caplog.records


def test_no_valid_pixels():
  mean = torch.full((100, 1), 0.9, dtype=torch.float64)
  variance = torch.full((100, 3), 1e-4, dtype=torch.float64)
  fit = fit_noise_model(mean, variance)

  assert fit.nlf == NoiseLevelFunction.constant(3)
  assert fit.initial_samples == 0
  assert fit.degraded


def test_kurtosis_mask(generator):
  mean, variance = synthetic_statistics(generator, n=2000, channels=4)
  kurtosis = torch.zeros_like(variance)
  kurtosis[:1000] = 5.0

  fit = fit_noise_model(mean, variance, kurtosis)
  assert fit.initial_samples == 1000


def test_refit_policies_agree_on_clean_data(generator):
  mean, variance = synthetic_statistics(generator)
  always = fit_noise_model(mean, variance, policy=RefitPolicy.always)
  if_better = fit_noise_model(mean, variance, policy=RefitPolicy.if_better)
  assert always.nlf == if_better.nlf


def test_lmeds_exact_data():
  mean = torch.linspace(0.01, 0.4, 500, dtype=torch.float64).unsqueeze(-1)
  variance = (A + B * mean).expand(500, 3)
  fit = fit_noise_model(mean, variance, strategy=NLFStrategy.lmeds)

  assert fit.nlf.a == pytest.approx((A,) * 3, rel=1e-6)
  assert fit.nlf.b == pytest.approx((B,) * 3, rel=1e-6)


def test_lmeds_is_seeded(generator):
  mean, variance = synthetic_statistics(generator, n=2000)
  variance[:200] += 2e-4

  first = fit_noise_model(mean, variance, strategy=NLFStrategy.lmeds, seed=3)
  second = fit_noise_model(mean, variance, strategy=NLFStrategy.lmeds, seed=3)
  assert first.nlf == second.nlf
  assert first.nlf.b == pytest.approx((B,) * 3, rel=0.1)


def test_measure_ycbcr_nlf(ctx, generator):
  """The slope of a brightness ramp only adds a constant to the local variance, B is unaffected."""
  height, width = 64, 64
  level = torch.linspace(0.05, 0.4, width).reshape(1, width, 1).expand(height, width, 1)
  sigma = (A + B * level).sqrt()

  image = torch.zeros(height, width, 4)
  image[..., :1] = level + sigma * torch.randn(height, width, 1, generator=generator)
  image[..., 1:3] = sigma * torch.randn(height, width, 2, generator=generator)
  gradient = new_image(ctx.device, (width, height), PixelFormat.luma_alpha)

  nlf = measure_ycbcr_nlf(ctx, image, gradient)
  assert nlf.channels == 3
  assert nlf.b[0] == pytest.approx(B, rel=0.5)
  assert all(value >= COEFFICIENT_FLOOR for value in nlf.a + nlf.b)


def test_measure_raw_nlf(ctx, generator):
  raw = 0.2 + 0.01 * torch.randn(32, 32, 1, generator=generator)
  sobel = raw_image_sobel(ctx, raw, new_image(ctx.device, (32, 32), PixelFormat.rgba))
  nlf = measure_raw_nlf(ctx, raw, sobel, 1.0, BayerPattern.RGGB)
  assert nlf.channels == 4


def test_measure_raw_nlf_of_constant_mosaic(ctx):
  raw = torch.full((16, 16, 1), 0.2)
  sobel = raw_image_sobel(ctx, raw, new_image(ctx.device, (16, 16), PixelFormat.rgba))
  fit = measure_raw_nlf_fit(ctx, raw, sobel, 1.0, BayerPattern.GRBG)

  assert fit.nlf == NoiseLevelFunction.constant(4)
  assert fit.degraded


def tile_levels(tiles: int) -> torch.Tensor:
  """Checkerboard of dark and bright levels, neighbouring tiles differ by at least 0.2."""
  count = tiles * tiles // 2
  dark = torch.linspace(0.03, 0.12, count)
  bright = torch.linspace(0.32, 0.45, count)
  levels = torch.zeros(tiles, tiles)
  checker = (torch.arange(tiles).unsqueeze(1) + torch.arange(tiles)) % 2 == 1
  levels[~checker] = dark
  levels[checker] = bright
  return levels


def tiled_signal(tiles: int, tile_size: int) -> torch.Tensor:
  levels = tile_levels(tiles)
  return levels.repeat_interleave(tile_size, dim=0).repeat_interleave(tile_size, dim=1).unsqueeze(-1)


def test_measure_raw_nlf_recovers_model(ctx, generator):
  """Flat tiles far larger than the statistics window give back the injected noise model."""
  level = tiled_signal(6, 256)
  raw = level + (A + B * level).sqrt() * torch.randn(level.shape, generator=generator)
  sobel = raw_image_sobel(ctx, raw, new_image(ctx.device, (1536, 1536), PixelFormat.rgba))

  nlf = measure_raw_nlf(ctx, raw, sobel, 1.0, BayerPattern.RGGB)
  assert nlf.b == pytest.approx((B,) * 4, rel=0.05)
  assert all(a == pytest.approx(A, abs=4e-5) for a in nlf.a)

  doubled = measure_raw_nlf(ctx, raw, sobel, 2.0, BayerPattern.RGGB)
  assert doubled.a == pytest.approx(tuple(4 * a for a in nlf.a), rel=1e-9)
  assert doubled.b == pytest.approx(tuple(4 * b for b in nlf.b), rel=1e-9)


def test_measure_ycbcr_nlf_recovers_model(ctx, generator):
  level = tiled_signal(8, 64)
  height, width = level.shape[:2]
  sigma = (A + B * level).sqrt()

  image = torch.ones(height, width, 4)
  image[..., :1] = level + sigma * torch.randn(height, width, 1, generator=generator)
  image[..., 1:3] = sigma * torch.randn(height, width, 2, generator=generator)
  gradient = new_image(ctx.device, (width, height), PixelFormat.luma_alpha)

  nlf = measure_ycbcr_nlf(ctx, image, gradient)
  assert nlf.b == pytest.approx((B,) * 3, rel=0.06)

  doubled = measure_ycbcr_nlf(ctx, image, gradient, 2.0)
  assert doubled.a == pytest.approx(tuple(4 * a for a in nlf.a), rel=1e-9)
  assert doubled.b == pytest.approx(tuple(4 * b for b in nlf.b), rel=1e-9)


@pytest.mark.parametrize('strategy', list(NLFStrategy))
def test_initial_fit_is_before_exposure(generator, strategy):
  mean, variance = synthetic_statistics(generator, n=2000)
  fit = fit_noise_model(mean, variance, exposure_multiplier=3.0, strategy=strategy)
  assert fit.nlf.b == pytest.approx(tuple(9 * b for b in fit.initial.b), rel=0.05)
  assert fit.initial.b == pytest.approx((B,) * 3, rel=0.05)
