"""
Noise level function estimation.

The noise of a linear image is modelled per channel as
variance(signal) = A + B * signal. Local statistics are collected on the
device, mapped to the host, and fitted in float64 with a two pass least
squares regression that rejects pixels which do not follow the first model.
"""

from dataclasses import dataclass
from enum import Enum
import logging

from beartype import beartype
import torch

from .bayer import BayerPattern
from .context import ComputeContext
from .denoise import raw_noise_statistics, ycbcr_noise_statistics
from .image import PixelFormat, image_size, new_image

logger = logging.getLogger(__name__)

# Quasi-linear response zone of the sensor
MIN_VALUE = 0.001
MAX_VALUE = 0.5

# Only pixels with less variance than this take part in the first fit
INITIAL_VARIANCE_CEILING = 0.001

# Near-Gaussian noise only, for raw statistics
MIN_KURTOSIS = -1.0
MAX_KURTOSIS = 1.0

COEFFICIENT_FLOOR = 1e-8
RESIDUAL_GATE = 0.5

LMEDS_ITERATIONS = 100
LMEDS_THRESHOLD = 1e-6


class NLFStrategy(Enum):
  least_squares = 0
  lmeds = 1


class RefitPolicy(Enum):
  always = 0
  if_better = 1


@dataclass(frozen=True)
class NoiseLevelFunction:
  """Per channel noise model, variance = a + b * signal."""

  a: tuple[float, ...]
  b: tuple[float, ...]

  def __post_init__(self):
    if len(self.a) != len(self.b):
      raise ValueError(f'a and b must have the same length, got {len(self.a)} and {len(self.b)}')

  @property
  def channels(self) -> int:
    return len(self.a)

  def variance(self, signal: float) -> tuple[float, ...]:
    return tuple(a + b * signal for a, b in zip(self.a, self.b, strict=True))

  def channel(self, index: int) -> tuple[float, float]:
    return (self.a[index], self.b[index])

  def scaled(self, multiplier: float) -> 'NoiseLevelFunction':
    """Noise model after a linear gain, variance scales with its square."""
    m2 = multiplier * multiplier
    return NoiseLevelFunction(tuple(a * m2 for a in self.a), tuple(b * m2 for b in self.b))

  @classmethod
  def constant(cls, channels: int, a: float = COEFFICIENT_FLOOR, b: float = COEFFICIENT_FLOOR) -> 'NoiseLevelFunction':
    return cls((a,) * channels, (b,) * channels)


@dataclass(frozen=True)
class NoiseFit:
  """Result of a noise model fit with its diagnostics."""

  nlf: NoiseLevelFunction
  initial: NoiseLevelFunction
  initial_mse: tuple[float, ...]
  mse: tuple[float, ...]
  initial_samples: int
  samples: int
  total_samples: int
  degraded: bool = False

  @property
  def sample_fraction(self) -> float:
    return self.samples / self.total_samples if self.total_samples else 0.0


def _to_tuple(t: torch.Tensor) -> tuple[float, ...]:
  return tuple(float(v) for v in t)


def _format(values: torch.Tensor) -> str:
  return '[' + ', '.join(f'{float(v):.4e}' for v in values) + ']'


def _valid_mask(mean: torch.Tensor, variance: torch.Tensor, kurtosis: torch.Tensor | None) -> torch.Tensor:
  """Pixels with finite statistics inside the linear range, all channels."""
  valid = ~(mean.isnan().any(dim=1) | variance.isnan().any(dim=1))
  valid &= ((mean >= MIN_VALUE) & (mean <= MAX_VALUE)).all(dim=1)
  if kurtosis is not None:
    valid &= ~kurtosis.isnan().any(dim=1)
    valid &= ((kurtosis > MIN_KURTOSIS) & (kurtosis < MAX_KURTOSIS)).all(dim=1)
  return valid


def _regress(x: torch.Tensor, y: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor, bool]:
  """Closed form least squares per channel, floored coefficients and a degenerate flag."""
  channels = y.shape[1]
  n = x.shape[0]
  floor = torch.full((channels,), COEFFICIENT_FLOOR, dtype=torch.float64)
  if n == 0:
    return floor, floor.clone(), True

  s_x = x.sum(dim=0)
  s_y = y.sum(dim=0)
  s_xx = (x * x).sum(dim=0)
  s_xy = (x * y).sum(dim=0)

  denominator = n * s_xx - s_x * s_x
  degenerate = denominator <= 1e-12 * n * s_xx
  b = torch.where(degenerate, floor, (n * s_xy - s_x * s_y) / torch.where(degenerate, 1.0, denominator))
  b = b.clamp_min(COEFFICIENT_FLOOR)
  a = ((s_y - b * s_x) / n).clamp_min(COEFFICIENT_FLOOR)
  return a, b, bool(degenerate.any())


def _lmeds(x: torch.Tensor, y: torch.Tensor, generator: torch.Generator) -> tuple[torch.Tensor, torch.Tensor]:
  """Least median of squares line per channel from randomly sampled pairs."""
  n, channels = y.shape
  a = torch.full((channels,), COEFFICIENT_FLOOR, dtype=torch.float64)
  b = a.clone()
  if n < 2:
    return a, b

  for c in range(channels):
    xc, yc = x[:, c], y[:, c]
    scale = float(yc.median()) ** 2
    best = float('inf')
    for _ in range(LMEDS_ITERATIONS):
      i, j = torch.randint(n, (2,), generator=generator).tolist()
      dx = float(xc[j] - xc[i])
      if dx == 0:
        continue
      slope = float(yc[j] - yc[i]) / dx
      offset = float(yc[i]) - slope * float(xc[i])
      loss = float(((yc - offset - slope * xc) ** 2).median())
      if loss < best:
        best = loss
        a[c], b[c] = offset, slope
      # Converged once the median residual is negligible relative to the signal variance
      if best <= LMEDS_THRESHOLD * scale:
        break

  return a.clamp_min(COEFFICIENT_FLOOR), b.clamp_min(COEFFICIENT_FLOOR)


@beartype
def fit_noise_model(
  mean: torch.Tensor,
  variance: torch.Tensor,
  kurtosis: torch.Tensor | None = None,
  *,
  exposure_multiplier: float = 1.0,
  strategy: NLFStrategy = NLFStrategy.least_squares,
  policy: RefitPolicy = RefitPolicy.always,
  seed: int = 0,
  label: str = 'NLF',
) -> NoiseFit:
  """
  Fit variance = A + B * mean per channel from host side pixel statistics.

  Args:
      mean: Local means (N, C), or (N, 1) shared by all channels
      variance: Local variances (N, C)
      kurtosis: Optional excess kurtosis (N, C), restricts to near-Gaussian pixels
      exposure_multiplier: Linear gain applied to the image, A and B scale with its square
      strategy: least_squares (two pass) or lmeds
      policy: Whether the second least squares pass is always taken, or only when not worse
      seed: Seed of the lmeds pair sampling
      label: Name used in log messages

  Returns:
      NoiseFit with the exposure adjusted model
  """
  variance = variance.detach().to(device='cpu', dtype=torch.float64).reshape(-1, variance.shape[-1])
  mean = mean.detach().to(device='cpu', dtype=torch.float64).reshape(-1, mean.shape[-1]).expand_as(variance)
  if kurtosis is not None:
    kurtosis = kurtosis.detach().to(device='cpu', dtype=torch.float64).reshape(variance.shape)

  total = variance.shape[0]
  valid = _valid_mask(mean, variance, kurtosis)

  first = valid & (variance <= INITIAL_VARIANCE_CEILING).all(dim=1)
  x1, y1 = mean[first], variance[first]
  n1 = int(first.sum())

  if strategy is NLFStrategy.lmeds:
    generator = torch.Generator().manual_seed(seed)
    a, b = _lmeds(x1, y1, generator)
    mse = ((y1 - (a + b * x1)) ** 2).mean(dim=0) if n1 else torch.zeros_like(a)
    initial = NoiseLevelFunction(_to_tuple(a), _to_tuple(b))
    logger.info('%s (lmeds) A: %s, B: %s on %d pixels', label, _format(a), _format(b), n1)
    nlf = initial.scaled(exposure_multiplier)
    return NoiseFit(nlf, initial, _to_tuple(mse), _to_tuple(mse), n1, n1, total, degraded=n1 < 2)

  a1, b1, degenerate = _regress(x1, y1)
  residual1 = y1 - (a1 + b1 * x1)
  err2 = (residual1 * residual1).mean(dim=0) if n1 else torch.zeros_like(a1)
  degraded = degenerate
  logger.info(
    '%s A: %s, B: %s, MSE: %s on %.1f%% pixels',
    label,
    _format(a1),
    _format(b1),
    _format(err2.sqrt()),
    100 * n1 / max(total, 1),
  )

  # Second pass: the fitted slope becomes the variance ceiling, and only
  # pixels close to the first model in every channel are kept
  second = valid & (variance <= b1).all(dim=1)
  diff2 = (variance - (a1 + b1 * mean)) ** 2
  second &= (diff2 <= RESIDUAL_GATE * err2).all(dim=1)
  n2 = int(second.sum())

  if n2 == 0:
    logger.warning('%s refit found no pixels within the residual gate, keeping the first fit', label)
    initial = NoiseLevelFunction(_to_tuple(a1), _to_tuple(b1))
    return NoiseFit(initial.scaled(exposure_multiplier), initial, _to_tuple(err2), _to_tuple(err2), n1, n1, total, True)

  a2, b2, degenerate = _regress(mean[second], variance[second])
  new_err2 = diff2[second].mean(dim=0)
  degraded |= degenerate
  logger.info(
    '%s A: %s, B: %s, MSE: %s on %.1f%% pixels',
    label,
    _format(a2),
    _format(b2),
    _format(new_err2.sqrt()),
    100 * n2 / max(total, 1),
  )

  better = bool((new_err2 <= err2).all())
  if not better:
    logger.warning(
      '%s refit error %s is larger than the initial %s', label, _format(new_err2.sqrt()), _format(err2.sqrt())
    )
    degraded = True
  if degenerate:
    logger.warning('%s regression is degenerate, slope floored to %g', label, COEFFICIENT_FLOOR)

  if policy is RefitPolicy.if_better and not better:
    a, b, mse, samples = a1, b1, err2, n1
  else:
    a, b, mse, samples = a2, b2, new_err2, n2

  initial = NoiseLevelFunction(_to_tuple(a1), _to_tuple(b1))
  nlf = NoiseLevelFunction(_to_tuple(a), _to_tuple(b)).scaled(exposure_multiplier)
  return NoiseFit(nlf, initial, _to_tuple(err2), _to_tuple(mse), n1, samples, total, degraded)


@beartype
def measure_ycbcr_nlf_fit(
  ctx: ComputeContext,
  image: torch.Tensor,
  gradient_image: torch.Tensor,
  exposure_multiplier: float = 1.0,
  *,
  strategy: NLFStrategy = NLFStrategy.least_squares,
  policy: RefitPolicy = RefitPolicy.if_better,
) -> NoiseFit:
  """Noise model of a YCbCr image as (Y, Cb, Cr) against the local mean luma."""
  statistics = new_image(ctx.device, image_size(image), PixelFormat.rgba)
  ycbcr_noise_statistics(ctx, image, gradient_image, statistics)

  host = ctx.map_image(statistics).reshape(-1, 4)
  return fit_noise_model(
    host[:, :1],
    host[:, 1:],
    exposure_multiplier=exposure_multiplier,
    strategy=strategy,
    policy=policy,
    label='YCbCr NLF',
  )


@beartype
def measure_ycbcr_nlf(
  ctx: ComputeContext,
  image: torch.Tensor,
  gradient_image: torch.Tensor,
  exposure_multiplier: float = 1.0,
  *,
  strategy: NLFStrategy = NLFStrategy.least_squares,
  policy: RefitPolicy = RefitPolicy.if_better,
) -> NoiseLevelFunction:
  """
  Measure the noise model of a YCbCr image.

  Args:
      ctx: Compute context
      image: YCbCr image (H, W, 4)
      gradient_image: Edge strength (H, W, 2), edge pixels are ignored
      exposure_multiplier: Exposure gain applied after measurement
      strategy: Regression strategy
      policy: Acceptance policy of the refit

  Returns:
      3 channel NoiseLevelFunction (Y, Cb, Cr)
  """
  return measure_ycbcr_nlf_fit(ctx, image, gradient_image, exposure_multiplier, strategy=strategy, policy=policy).nlf


@beartype
def measure_raw_nlf_fit(
  ctx: ComputeContext,
  raw_image: torch.Tensor,
  sobel_image: torch.Tensor,
  exposure_multiplier: float,
  bayer_pattern: BayerPattern,
  *,
  strategy: NLFStrategy = NLFStrategy.least_squares,
  policy: RefitPolicy = RefitPolicy.always,
) -> NoiseFit:
  """Noise model of a scaled mosaic per packed raw channel (R, G, B, G2)."""
  width, height = image_size(raw_image)
  half_size = (width // 2, height // 2)
  mean_image = new_image(ctx.device, half_size, PixelFormat.rgba)
  var_image = new_image(ctx.device, half_size, PixelFormat.rgba)
  kurtosis_image = new_image(ctx.device, half_size, PixelFormat.rgba)
  raw_noise_statistics(ctx, raw_image, bayer_pattern, sobel_image, mean_image, var_image, kurtosis_image)

  return fit_noise_model(
    ctx.map_image(mean_image).reshape(-1, 4),
    ctx.map_image(var_image).reshape(-1, 4),
    ctx.map_image(kurtosis_image).reshape(-1, 4),
    exposure_multiplier=exposure_multiplier,
    strategy=strategy,
    policy=policy,
    label='RAW NLF',
  )


@beartype
def measure_raw_nlf(
  ctx: ComputeContext,
  raw_image: torch.Tensor,
  sobel_image: torch.Tensor,
  exposure_multiplier: float,
  bayer_pattern: BayerPattern,
  *,
  strategy: NLFStrategy = NLFStrategy.least_squares,
  policy: RefitPolicy = RefitPolicy.always,
) -> NoiseLevelFunction:
  """
  Measure the noise model of a scaled mosaic.

  Returns:
      4 channel NoiseLevelFunction in packed (R, G, B, G2) order
  """
  return measure_raw_nlf_fit(
    ctx, raw_image, sobel_image, exposure_multiplier, bayer_pattern, strategy=strategy, policy=policy
  ).nlf


__all__ = [
  'COEFFICIENT_FLOOR',
  'NLFStrategy',
  'NoiseFit',
  'NoiseLevelFunction',
  'RefitPolicy',
  'fit_noise_model',
  'measure_raw_nlf',
  'measure_raw_nlf_fit',
  'measure_ycbcr_nlf',
  'measure_ycbcr_nlf_fit',
]
