"""Raw development pipeline sequencing the stage library."""

import logging

from beartype import beartype
import torch

from torch_rawpipe.bayer import BayerPattern, RawChannel
from torch_rawpipe.color_conversion import SRGB_TO_YCBCR, YCBCR_TO_SRGB, convert_to_srgb, transform_image
from torch_rawpipe.context import ComputeContext
from torch_rawpipe.convolution import gaussian_blur_image, gaussian_blur_sobel_image
from torch_rawpipe.debayer import (
  Demosaic,
  Demosaicer,
  bayer_to_raw_rgba,
  fast_debayer,
  raw_image_sobel,
  raw_rgba_to_bayer,
  scale_raw_data,
)
from torch_rawpipe.denoise import (
  denoise_image,
  denoise_image_guided,
  denoise_raw_rgba,
  despeckle_image,
  despeckle_raw_black_image,
  despeckle_raw_rgba,
)
from torch_rawpipe.fusion import rescale_image, subtract_noise_image
from torch_rawpipe.image import PixelFormat, image_size, new_image
from torch_rawpipe.local_contrast import local_tone_mapping_mask
from torch_rawpipe.noise_model import NoiseLevelFunction, measure_raw_nlf, measure_ycbcr_nlf
from torch_rawpipe.tonemap import blend_highlights_image, blue_noise_image, blue_noise_tile

from .config import DemosaicParameters, DenoiseParameters
from .util import matrix3, mean_signal, pyramid_sizes

logger = logging.getLogger(__name__)

# Pre-blur of an octave before it is halved
PYRAMID_BLUR_RADIUS = 1.0


class ImageSizeMismatchError(Exception):
  """Raised when a raw image does not match the converter's dimensions."""

  def __init__(self, message: str, image_size: tuple[int, int], bayer_pattern: BayerPattern):
    super().__init__(message)
    self.image_size = image_size
    self.bayer_pattern = bayer_pattern


class RawConverter:
  """Develops 16 bit Bayer images of a fixed size, owning all staging buffers."""

  @beartype
  def __init__(self, ctx: ComputeContext, image_size: tuple[int, int], params: DemosaicParameters):
    """Create a converter.

    Args:
        ctx: Compute context to run on
        image_size: (width, height) of the raw images, both even
        params: Processing parameters
    """
    width, height = image_size
    if width < 4 or height < 4 or width % 2 or height % 2:
      raise ValueError(f'Raw image dimensions must be even and at least 4x4, got {width}x{height}')

    self.ctx = ctx
    self.image_size = image_size
    self.params = params

    self.raw_nlf: NoiseLevelFunction = params.noise_model.raw_nlf
    self.ycbcr_nlf: list[NoiseLevelFunction] = list(params.noise_model.ycbcr_nlf[: params.pyramid_levels])

    device = ctx.device
    half_size = (width // 2, height // 2)
    self.scaled = new_image(device, image_size, PixelFormat.luma)
    self.scaled_black = new_image(device, image_size, PixelFormat.luma)
    self.sobel = new_image(device, image_size, PixelFormat.rgba)
    self.gradient = new_image(device, image_size, PixelFormat.luma_alpha)
    self.packed = new_image(device, half_size, PixelFormat.rgba)
    self.packed_despeckled = new_image(device, half_size, PixelFormat.rgba)
    self.ycbcr = new_image(device, image_size, PixelFormat.rgba)
    self.linear = new_image(device, image_size, PixelFormat.rgba)
    self.dithered = new_image(device, image_size, PixelFormat.rgba)
    self.highlights = new_image(device, image_size, PixelFormat.rgba)
    self.ltm_mask = new_image(device, image_size, PixelFormat.luma)

    self.demosaicer = Demosaicer(ctx, image_size, params.bayer_pattern, params.demosaic)
    self._allocate_pyramid()
    self._allocate_blue_noise()

  def __repr__(self) -> str:
    return (
      f'RawConverter('
      f'size={self.image_size}, '
      f'bayer={self.params.bayer_pattern.name}, '
      f'demosaic={self.params.demosaic.name}, '
      f'levels={self.params.pyramid_levels}, '
      f'device={self.ctx.device})'
    )

  def _allocate_pyramid(self):
    device = self.ctx.device
    self.pyramid_sizes = pyramid_sizes(self.image_size, self.params.pyramid_levels)
    self.pyramid = [self.ycbcr] + [new_image(device, size, PixelFormat.rgba) for size in self.pyramid_sizes[1:]]
    self.blurred = [new_image(device, size, PixelFormat.rgba) for size in self.pyramid_sizes[:-1]]
    self.gradients = [self.gradient] + [
      new_image(device, size, PixelFormat.luma_alpha) for size in self.pyramid_sizes[1:]
    ]
    self.despeckled = new_image(device, self.image_size, PixelFormat.rgba)
    self.reconstructed = [new_image(device, size, PixelFormat.rgba) for size in self.pyramid_sizes]
    self.denoised = [new_image(device, size, PixelFormat.rgba) for size in self.pyramid_sizes]

    # Local tone mapping guides are the three finest octaves, LF first
    self.ab = [new_image(device, size, PixelFormat.luma_alpha) for size in self.pyramid_sizes[:3]][::-1]
    self.ab_mean = [new_image(device, size, PixelFormat.luma_alpha) for size in self.pyramid_sizes[:3]][::-1]

  def _allocate_blue_noise(self):
    size = self.params.blue_noise_size
    self.blue_noise = blue_noise_tile(size).to(self.ctx.device) if size > 0 else None

  @beartype
  def update_parameters(self, params: DemosaicParameters):
    old_params = self.params
    self.params = params

    def changed(*attrs: str) -> bool:
      return any(getattr(old_params, attr) != getattr(params, attr) for attr in attrs)

    if changed('bayer_pattern', 'demosaic'):
      self.demosaicer = Demosaicer(self.ctx, self.image_size, params.bayer_pattern, params.demosaic)

    if old_params.pyramid_levels != params.pyramid_levels:
      self._allocate_pyramid()

    if changed('blue_noise_size'):
      self._allocate_blue_noise()

    if changed('noise_model', 'denoise'):
      self.raw_nlf = params.noise_model.raw_nlf
      self.ycbcr_nlf = list(params.noise_model.ycbcr_nlf[: params.pyramid_levels])

  @property
  def output_size(self) -> tuple[int, int]:
    return self.demosaicer.output_size

  def _check_raw(self, raw_image: torch.Tensor):
    width, height = self.image_size
    if raw_image.shape != (height, width, 1) or raw_image.dtype != torch.uint16:
      raise ImageSizeMismatchError(
        f'Raw image mismatch: expected ({height}, {width}, 1) uint16, got {tuple(raw_image.shape)} {raw_image.dtype}',
        image_size=self.image_size,
        bayer_pattern=self.params.bayer_pattern,
      )

  def _camera_matrix(self) -> torch.Tensor:
    return matrix3(self.params.rgb_cam, self.ctx.device)

  def _scale(self, raw_image: torch.Tensor) -> torch.Tensor:
    self._check_raw(raw_image)
    return scale_raw_data(
      self.ctx,
      raw_image,
      self.scaled,
      self.params.bayer_pattern,
      self.params.scaled_mul,
      self.params.normalized_black_level,
    )

  def _denoise_raw(self, mosaic: torch.Tensor) -> torch.Tensor:
    ctx, pattern = self.ctx, self.params.bayer_pattern

    bayer_to_raw_rgba(ctx, mosaic, self.packed, pattern)
    raw_variance = self.raw_nlf.variance(mean_signal(self.packed))
    despeckle_raw_rgba(ctx, self.packed, raw_variance, self.packed_despeckled)
    denoise_raw_rgba(ctx, self.packed_despeckled, raw_variance, self.packed)
    raw_rgba_to_bayer(ctx, self.packed, mosaic, pattern)

    return despeckle_raw_black_image(ctx, mosaic, pattern, self.scaled_black)

  def _denoise_level(self, level: int, image: torch.Tensor, output: torch.Tensor) -> torch.Tensor:
    nlf = self.ycbcr_nlf[level]
    settings: DenoiseParameters = self.params.denoise[level]
    if self.params.guided_denoise:
      return denoise_image_guided(self.ctx, image, nlf.a, nlf.b, output)
    return denoise_image(
      self.ctx,
      image,
      self.gradients[level],
      nlf.a,
      nlf.b,
      settings.threshold_multipliers,
      settings.chroma_boost,
      settings.gradient_boost,
      settings.gradient_threshold,
      output,
    )

  def _build_pyramid(self):
    for i in range(1, self.params.pyramid_levels):
      gaussian_blur_image(
        self.ctx, self.pyramid[i - 1], PYRAMID_BLUR_RADIUS, self.blurred[i - 1], self.params.blur_strategy
      )
      rescale_image(self.ctx, self.blurred[i - 1], self.pyramid[i])
      rescale_image(self.ctx, self.gradient, self.gradients[i])

  def _multiscale_denoise(self) -> torch.Tensor:
    levels = self.params.pyramid_levels
    coarsest = levels - 1
    self._denoise_level(coarsest, self.pyramid[coarsest], self.denoised[coarsest])

    for i in range(coarsest - 1, -1, -1):
      image = self.pyramid[i]
      if i == 0:
        nlf = self.ycbcr_nlf[0]
        image = despeckle_image(self.ctx, image, nlf.a, nlf.b, self.despeckled)

      settings = self.params.denoise[i]
      subtract_noise_image(
        self.ctx,
        image,
        self.pyramid[i + 1],
        self.denoised[i + 1],
        self.gradients[i],
        settings.luma_weight,
        settings.sharpening,
        self.ycbcr_nlf[i].channel(0),
        self.reconstructed[i],
      )
      self._denoise_level(i, self.reconstructed[i], self.denoised[i])

    return self.denoised[0]

  def _tone_mapping_mask(self, image: torch.Tensor) -> torch.Tensor | None:
    conversion, ltm = self.params.rgb_conversion, self.params.ltm
    if not conversion.local_tone_mapping or ltm.is_identity:
      return None
    if self.params.pyramid_levels < 3:
      logger.warning('Local tone mapping needs 3 octaves, got %d', self.params.pyramid_levels)
      return None

    return local_tone_mapping_mask(
      self.ctx,
      image,
      (self.denoised[2], self.denoised[1], self.denoised[0]),
      tuple(self.ab),
      tuple(self.ab_mean),
      eps=ltm.eps,
      shadows=ltm.shadows,
      highlights=ltm.highlights,
      detail=ltm.detail,
      ycbcr_srgb=YCBCR_TO_SRGB,
      nlf=self.ycbcr_nlf[0].channel(0),
      output_image=self.ltm_mask,
    )

  @beartype
  def run_pipeline(self, raw_image: torch.Tensor, calibrate_from_image: bool = False) -> torch.Tensor:
    """
    Develop a raw image into display referred sRGB.

    With the fast demosaic this is the half resolution fast_preview.

    Args:
        raw_image: 16 bit sensor data (H, W, 1)
        calibrate_from_image: Measure the noise models from the image instead
          of using the configured ones

    Returns:
        sRGB rgba image of output_size in [0, 1], a new tensor
    """
    ctx, params = self.ctx, self.params
    if params.demosaic is Demosaic.fast:
      return self.fast_preview(raw_image)

    mosaic = self._scale(raw_image)
    raw_image_sobel(ctx, mosaic, self.sobel)

    if calibrate_from_image:
      self.raw_nlf = measure_raw_nlf(
        ctx, mosaic, self.sobel, 1.0, params.bayer_pattern, strategy=params.nlf_strategy, policy=params.raw_refit_policy
      )

    gaussian_blur_sobel_image(
      ctx,
      mosaic,
      self.sobel,
      self.raw_nlf.channel(RawChannel.green),
      params.gradient_radius,
      params.gradient_wide_radius,
      self.gradient,
    )

    if params.raw_denoise:
      mosaic = self._denoise_raw(mosaic)

    rgb = self.demosaicer.process(
      mosaic,
      red_variance=self.raw_nlf.channel(RawChannel.red),
      green_variance=self.raw_nlf.channel(RawChannel.green),
      blue_variance=self.raw_nlf.channel(RawChannel.blue),
    )

    transform_image(ctx, rgb, self.ycbcr, SRGB_TO_YCBCR.to(ctx.device) @ self._camera_matrix())
    self._build_pyramid()

    if calibrate_from_image:
      self.ycbcr_nlf = [
        measure_ycbcr_nlf(
          ctx, self.pyramid[i], self.gradients[i], strategy=params.nlf_strategy, policy=params.ycbcr_refit_policy
        )
        for i in range(params.pyramid_levels)
      ]

    denoised = self._multiscale_denoise()
    ltm_mask = self._tone_mapping_mask(denoised)

    if self.blue_noise is not None:
      denoised = blue_noise_image(ctx, denoised, self.blue_noise, self.ycbcr_nlf[0].channel(0), self.dithered)

    transform_image(ctx, denoised, self.linear, YCBCR_TO_SRGB)
    blend_highlights_image(ctx, self.linear, params.rgb_conversion.highlight_clip, self.highlights)

    output = new_image(ctx.device, self.output_size, PixelFormat.rgba)
    return convert_to_srgb(
      ctx,
      self.highlights,
      ltm_mask,
      output,
      torch.eye(3),
      exposure=params.rgb_conversion.exposure * params.exposure_multiplier,
      contrast=params.rgb_conversion.contrast,
      saturation=params.rgb_conversion.saturation,
    )

  @beartype
  def fast_preview(self, raw_image: torch.Tensor) -> torch.Tensor:
    """Half resolution sRGB preview, one pixel per Bayer quad."""
    ctx, params = self.ctx, self.params

    mosaic = self._scale(raw_image)
    width, height = image_size(mosaic)
    preview = new_image(ctx.device, (width // 2, height // 2), PixelFormat.rgba)
    fast_debayer(ctx, mosaic, preview, params.bayer_pattern)

    output = new_image(ctx.device, image_size(preview), PixelFormat.rgba)
    return convert_to_srgb(
      ctx,
      preview,
      None,
      output,
      self._camera_matrix(),
      exposure=params.rgb_conversion.exposure * params.exposure_multiplier,
      contrast=params.rgb_conversion.contrast,
      saturation=params.rgb_conversion.saturation,
    )


@beartype
def develop(
  ctx: ComputeContext, raw_image: torch.Tensor, params: DemosaicParameters, calibrate_from_image: bool = True
) -> torch.Tensor:
  """One-shot development of a raw image (H, W, 1) uint16."""
  converter = RawConverter(ctx, image_size(raw_image), params)
  return converter.run_pipeline(raw_image, calibrate_from_image)


__all__ = ['ImageSizeMismatchError', 'RawConverter', 'develop']
