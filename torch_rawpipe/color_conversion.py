"""Color space conversion stages."""

from beartype import beartype
import torch

from .context import ComputeContext, EnqueueArgs, Kernel, kernel
from .image import PixelFormat, check_format, check_same_size, image_size

# BT.709 luma coefficients
_kr, _kb = 0.2126, 0.0722
_kg = 1.0 - _kr - _kb

SRGB_TO_YCBCR = torch.tensor(
  [
    [_kr, _kg, _kb],
    [-_kr / (2 * (1 - _kb)), -_kg / (2 * (1 - _kb)), 0.5],
    [0.5, -_kg / (2 * (1 - _kr)), -_kb / (2 * (1 - _kr))],
  ],
  dtype=torch.float32,
)

YCBCR_TO_SRGB = torch.linalg.inv(SRGB_TO_YCBCR.double()).float()

LUMA_ROW = (_kr, _kg, _kb)


def _apply_matrix(matrix: torch.Tensor, rgb: torch.Tensor) -> torch.Tensor:
  return torch.einsum('ij,hwj->hwi', matrix.to(device=rgb.device, dtype=rgb.dtype), rgb)


def srgb_gamma(linear: torch.Tensor) -> torch.Tensor:
  """Encode linear values with the sRGB transfer curve."""
  linear = linear.clamp_min(0)
  return torch.where(linear <= 0.0031308, 12.92 * linear, 1.055 * linear.pow(1 / 2.4) - 0.055)


@kernel(Kernel.transform_image)
def _transform_image(extent: EnqueueArgs, image: torch.Tensor, matrix: torch.Tensor) -> torch.Tensor:
  return torch.cat([_apply_matrix(matrix, image[..., :3]), image[..., 3:]], dim=-1)


@kernel(Kernel.convert_to_srgb)
def _convert_to_srgb(
  extent: EnqueueArgs,
  image: torch.Tensor,
  ltm_mask: torch.Tensor | None,
  matrix: torch.Tensor,
  exposure: float,
  contrast: float,
  saturation: float,
) -> torch.Tensor:
  rgb = _apply_matrix(matrix, image[..., :3]) * exposure
  if ltm_mask is not None:
    rgb = rgb * ltm_mask

  luma = _apply_matrix(torch.tensor([LUMA_ROW]), rgb)
  rgb = luma + saturation * (rgb - luma)

  encoded = srgb_gamma(rgb)
  encoded = 0.5 + contrast * (encoded - 0.5)
  return torch.cat([encoded.clamp(0, 1), image[..., 3:]], dim=-1)


@kernel(Kernel.convert_to_grayscale)
def _convert_to_grayscale(extent: EnqueueArgs, image: torch.Tensor, row: tuple[float, ...]) -> torch.Tensor:
  return _apply_matrix(torch.tensor([row]), image[..., :3])


@beartype
def transform_image(
  ctx: ComputeContext, image: torch.Tensor, output_image: torch.Tensor, matrix: torch.Tensor
) -> torch.Tensor:
  """
  Apply a 3x3 colour matrix to the RGB channels, alpha is passed through.

  Args:
      image: Input rgba image (H, W, 4)
      output_image: Output rgba image (H, W, 4)
      matrix: 3x3 matrix, rgb_out = matrix @ rgb_in

  Returns:
      output_image
  """
  check_format(image, PixelFormat.rgba, 'image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image, output_image)
  assert matrix.shape == (3, 3), f'Expected a 3x3 matrix, got {tuple(matrix.shape)}'

  ctx.run(Kernel.transform_image, ctx.enqueue_args(*image_size(output_image)), output_image, image, matrix)
  return output_image


@beartype
def convert_to_srgb(
  ctx: ComputeContext,
  linear_image: torch.Tensor,
  ltm_mask: torch.Tensor | None,
  output_image: torch.Tensor,
  matrix: torch.Tensor,
  *,
  exposure: float = 1.0,
  contrast: float = 1.0,
  saturation: float = 1.0,
) -> torch.Tensor:
  """
  Final display conversion: colour matrix, exposure, local tone mapping gain,
  saturation, sRGB encoding and contrast around mid grey, clamped to [0, 1].

  Args:
      linear_image: Linear rgba image (H, W, 4)
      ltm_mask: Local tone mapping gain (H, W, 1), None for no local gain
      output_image: Display referred rgba image (H, W, 4)
      matrix: 3x3 matrix into linear sRGB
      exposure: Linear exposure gain
      contrast: Contrast of the encoded image, 1 is identity
      saturation: Saturation relative to BT.709 luma, 1 is identity

  Returns:
      output_image
  """
  check_format(linear_image, PixelFormat.rgba, 'linear_image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(linear_image, output_image)
  if ltm_mask is not None:
    check_format(ltm_mask, PixelFormat.luma, 'ltm_mask')
    check_same_size(linear_image, ltm_mask)
  assert matrix.shape == (3, 3), f'Expected a 3x3 matrix, got {tuple(matrix.shape)}'

  ctx.run(
    Kernel.convert_to_srgb,
    ctx.enqueue_args(*image_size(output_image)),
    output_image,
    linear_image,
    ltm_mask,
    matrix,
    exposure,
    contrast,
    saturation,
  )
  return output_image


@beartype
def convert_to_grayscale(
  ctx: ComputeContext,
  image: torch.Tensor,
  output_image: torch.Tensor,
  row: tuple[float, float, float] = LUMA_ROW,
) -> torch.Tensor:
  """Weighted sum of the RGB channels into a luma image (H, W, 1)."""
  check_format(image, PixelFormat.rgba, 'image')
  check_format(output_image, PixelFormat.luma, 'output_image')
  check_same_size(image, output_image)

  ctx.run(Kernel.convert_to_grayscale, ctx.enqueue_args(*image_size(output_image)), output_image, image, row)
  return output_image


__all__ = [
  'LUMA_ROW',
  'SRGB_TO_YCBCR',
  'YCBCR_TO_SRGB',
  'convert_to_grayscale',
  'convert_to_srgb',
  'srgb_gamma',
  'transform_image',
]
