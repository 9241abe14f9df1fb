"""PyTorch raw development stages, noise model estimation and pipeline driver."""

from . import (
  bayer,
  color_conversion,
  context,
  convolution,
  debayer,
  denoise,
  fusion,
  image,
  local_contrast,
  noise_model,
  tonemap,
)
from .bayer import BayerPattern, load_as_bayer, pack_bayer, rgb_to_bayer, unpack_bayer
from .color_conversion import SRGB_TO_YCBCR, YCBCR_TO_SRGB, convert_to_grayscale, convert_to_srgb, transform_image
from .context import ComputeContext, Kernel
from .convolution import BlurStrategy, gaussian_blur_image, gaussian_blur_sobel_image
from .debayer import Demosaic, Demosaicer, fast_debayer, raw_image_sobel, scale_raw_data
from .denoise import denoise_image, denoise_image_guided, despeckle_image
from .fusion import FrameFusion, fuse_frames, rescale_image, subtract_noise_image
from .image import PixelFormat, image_size, new_image
from .local_contrast import local_tone_mapping_mask
from .noise_model import NLFStrategy, NoiseFit, NoiseLevelFunction, RefitPolicy, measure_raw_nlf, measure_ycbcr_nlf
from .tonemap import blend_highlights_image, blue_noise_image, blue_noise_tile

__all__ = [
  # Core classes and enums
  'BayerPattern',
  'BlurStrategy',
  'ComputeContext',
  'Demosaic',
  'Demosaicer',
  'FrameFusion',
  'Kernel',
  'NLFStrategy',
  'NoiseFit',
  'NoiseLevelFunction',
  'PixelFormat',
  'RefitPolicy',
  # Color conversions
  'SRGB_TO_YCBCR',
  'YCBCR_TO_SRGB',
  # Submodules
  'bayer',
  'blend_highlights_image',
  'blue_noise_image',
  'blue_noise_tile',
  'color_conversion',
  'context',
  'convert_to_grayscale',
  'convert_to_srgb',
  'convolution',
  'debayer',
  'denoise',
  'denoise_image',
  'denoise_image_guided',
  'despeckle_image',
  'fast_debayer',
  'fuse_frames',
  'fusion',
  'gaussian_blur_image',
  'gaussian_blur_sobel_image',
  'image',
  'image_size',
  'load_as_bayer',
  'local_contrast',
  'local_tone_mapping_mask',
  # Noise model estimation
  'measure_raw_nlf',
  'measure_ycbcr_nlf',
  'new_image',
  'noise_model',
  'pack_bayer',
  'raw_image_sobel',
  'rescale_image',
  'rgb_to_bayer',
  'scale_raw_data',
  'subtract_noise_image',
  'tonemap',
  'transform_image',
  'unpack_bayer',
]
