"""Compute context: kernel programs, samplers and kernel dispatch."""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
import importlib
import logging
import os

from beartype import beartype
import torch

logger = logging.getLogger(__name__)


class Kernel(Enum):
  scale_raw_data = 'scaleRawData'
  raw_image_gradient = 'rawImageGradient'
  raw_image_sobel = 'rawImageSobel'
  interpolate_green = 'interpolateGreen'
  interpolate_red_blue = 'interpolateRedBlue'
  interpolate_red_blue_at_green = 'interpolateRedBlueAtGreen'
  malvar = 'malvar'
  fast_debayer = 'fastDebayer'
  bayer_to_raw_rgba = 'bayerToRawRGBA'
  raw_rgba_to_bayer = 'rawRGBAToBayer'
  transform_image = 'transformImage'
  convert_to_srgb = 'convertTosRGB'
  convert_to_grayscale = 'convertToGrayscale'
  ycbcr_noise_statistics = 'YCbCrNoiseStatistics'
  raw_noise_statistics = 'rawNoiseStatistics'
  despeckle_image = 'despeckleLumaMedianChromaImage'
  denoise_image = 'denoiseImage'
  denoise_image_guided = 'denoiseImageGuided'
  denoise_raw_rgba = 'denoiseRawRGBAImage'
  despeckle_raw_rgba = 'despeckleRawRGBAImage'
  despeckle_raw_black = 'despeckleRawBlackImage'
  guided_filter_ab = 'GuidedFilterABImage'
  box_filter_ab = 'BoxFilterGFImage'
  local_tone_mapping_mask = 'localToneMappingMaskImage'
  gaussian_blur = 'gaussianBlurImage'
  sampled_convolution = 'sampledConvolutionImage'
  sampled_convolution_sobel = 'sampledConvolutionSobel'
  blue_noise = 'blueNoiseImage'
  blend_highlights = 'blendHighlightsImage'
  fuse_frames = 'fuseFrames'
  subtract_noise = 'subtractNoiseImage'
  subtract_noise_fused = 'subtractNoiseFusedImage'
  rescale_image = 'rescaleImage'


# Modules defining the entry points of each program
_program_modules: dict[str, tuple[str, ...]] = {
  'demosaic': (
    'torch_rawpipe.debayer',
    'torch_rawpipe.color_conversion',
    'torch_rawpipe.denoise',
    'torch_rawpipe.local_contrast',
    'torch_rawpipe.convolution',
    'torch_rawpipe.tonemap',
    'torch_rawpipe.fusion',
  ),
}

_entry_points: dict[Kernel, Callable] = {}


def kernel(entry: Kernel):
  """Register the implementation of a kernel entry point."""

  def register(fn: Callable) -> Callable:
    assert entry not in _entry_points, f'Kernel {entry.value} registered twice'
    _entry_points[entry] = fn
    return fn

  return register


@dataclass(frozen=True)
class EnqueueArgs:
  """Global work extent of a kernel launch."""

  width: int
  height: int


class AddressMode(Enum):
  clamp_to_edge = 0
  repeat = 1


class FilterMode(Enum):
  nearest = 0
  linear = 1


@dataclass(frozen=True)
class Sampler:
  """Image sampler reading at pixel coordinates, pixel centres at integers."""

  address: AddressMode = AddressMode.clamp_to_edge
  filter: FilterMode = FilterMode.linear

  def _wrap(self, coord: torch.Tensor, size: int) -> torch.Tensor:
    if self.address is AddressMode.repeat:
      return torch.remainder(coord, size)
    return coord.clamp(0, size - 1)

  def sample(self, image: torch.Tensor, x: torch.Tensor, y: torch.Tensor) -> torch.Tensor:
    """Read image (H, W, C) at coordinate grids x, y of shape (H', W')."""
    if not image.is_floating_point():
      image = image.to(torch.float32)
    height, width = image.shape[:2]

    if self.filter is FilterMode.nearest:
      xi = self._wrap(torch.floor(x + 0.5).long(), width)
      yi = self._wrap(torch.floor(y + 0.5).long(), height)
      return image[yi, xi]

    x0 = torch.floor(x)
    y0 = torch.floor(y)
    fx = (x - x0).unsqueeze(-1)
    fy = (y - y0).unsqueeze(-1)
    x0 = x0.long()
    y0 = y0.long()
    xa, xb = self._wrap(x0, width), self._wrap(x0 + 1, width)
    ya, yb = self._wrap(y0, height), self._wrap(y0 + 1, height)

    top = image[ya, xa] * (1 - fx) + image[ya, xb] * fx
    bottom = image[yb, xa] * (1 - fx) + image[yb, xb] * fx
    return top * (1 - fy) + bottom * fy

  def resample(self, image: torch.Tensor, size: tuple[int, int]) -> torch.Tensor:
    """Resample the whole image to size (width, height), aligning pixel areas."""
    width, height = size
    in_height, in_width = image.shape[:2]
    x, y = pixel_grid(size, image.device)
    return self.sample(image, (x + 0.5) * (in_width / width) - 0.5, (y + 0.5) * (in_height / height) - 0.5)


def pixel_grid(size: tuple[int, int], device: torch.device) -> tuple[torch.Tensor, torch.Tensor]:
  width, height = size
  y, x = torch.meshgrid(
    torch.arange(height, dtype=torch.float32, device=device),
    torch.arange(width, dtype=torch.float32, device=device),
    indexing='ij',
  )
  return x, y


@dataclass
class Program:
  name: str
  entries: dict[Kernel, Callable] = field(default_factory=dict)

  def __getitem__(self, entry: Kernel) -> Callable:
    return self.entries[entry]


def _build_program(name: str, compile: bool) -> Program:
  for module in _program_modules[name]:
    importlib.import_module(module)

  missing = [entry.value for entry in Kernel if entry not in _entry_points]
  if missing:
    raise RuntimeError(f'Program {name} has no implementation for {missing}')

  entries = {entry: torch.compile(fn) if compile else fn for entry, fn in _entry_points.items()}
  return Program(name, entries)


TraceHook = Callable[[Kernel, tuple[torch.Tensor, ...]], None]


class ComputeContext:
  """Owns the program cache and samplers, and launches kernels in program order."""

  @beartype
  def __init__(
    self,
    device: torch.device | None = None,
    *,
    trace: TraceHook | None = None,
    compile: bool | None = None,
  ):
    """Create a compute context.

    Args:
        device: Device to run on (CUDA when available, CPU otherwise)
        trace: Optional hook called with every kernel and its written outputs
        compile: Compile kernels with torch.compile (default from TORCH_RAWPIPE_COMPILE)
    """
    if device is None:
      device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
    if compile is None:
      compile = os.getenv('TORCH_RAWPIPE_COMPILE', '0') == '1'

    self.device = device
    self.trace = trace
    self.compile = compile
    self._programs: dict[str, Program] = {}
    self._samplers: dict[tuple[AddressMode, FilterMode], Sampler] = {}

  def __repr__(self) -> str:
    return f'ComputeContext(device={self.device}, compile={self.compile}, programs={list(self._programs)})'

  def load_program(self, name: str) -> Program:
    if name not in self._programs:
      try:
        self._programs[name] = _build_program(name, self.compile)
      except Exception as e:
        raise RuntimeError(f'Failed to load program {name}: {e}') from e
      logger.debug('Loaded program %s (%d kernels, compile=%s)', name, len(Kernel), self.compile)
    return self._programs[name]

  @staticmethod
  def enqueue_args(width: int, height: int) -> EnqueueArgs:
    return EnqueueArgs(width, height)

  def create_sampler(
    self, address: AddressMode = AddressMode.clamp_to_edge, filter: FilterMode = FilterMode.linear
  ) -> Sampler:
    key = (address, filter)
    if key not in self._samplers:
      self._samplers[key] = Sampler(address, filter)
    return self._samplers[key]

  def run(
    self,
    entry: Kernel,
    extent: EnqueueArgs,
    outputs: torch.Tensor | tuple[torch.Tensor, ...],
    *args,
  ) -> None:
    """Run a kernel over extent and write its results into the output buffers.

    Results are computed completely before any output is written, so an
    output is either fully updated or left untouched.
    """
    program = self.load_program('demosaic')
    outputs = outputs if isinstance(outputs, tuple) else (outputs,)

    with torch.no_grad():
      results = program[entry](extent, *args)
    results = results if isinstance(results, tuple) else (results,)

    assert len(results) == len(outputs), f'{entry.value} produced {len(results)} images for {len(outputs)} outputs'
    for result, output in zip(results, outputs, strict=True):
      assert result.shape == output.shape, (
        f'{entry.value} produced {tuple(result.shape)}, output buffer is {tuple(output.shape)}'
      )

    for result, output in zip(results, outputs, strict=True):
      output.copy_(result)

    if self.trace is not None:
      self.trace(entry, outputs)

  def map_image(self, image: torch.Tensor) -> torch.Tensor:
    """Host-visible float64 copy of a device image for host side reductions."""
    return image.detach().to(device='cpu', dtype=torch.float64)

  def unmap_image(self, image: torch.Tensor, mapped: torch.Tensor) -> None:
    """Write a mapped host copy back into the device image."""
    image.copy_(mapped.to(device=image.device, dtype=image.dtype))


__all__ = [
  'AddressMode',
  'ComputeContext',
  'EnqueueArgs',
  'FilterMode',
  'Kernel',
  'Program',
  'Sampler',
  'TraceHook',
  'kernel',
  'pixel_grid',
]
