import pytest
import torch

from torch_rawpipe.color_conversion import (
  SRGB_TO_YCBCR,
  YCBCR_TO_SRGB,
  convert_to_grayscale,
  convert_to_srgb,
  srgb_gamma,
  transform_image,
)
from torch_rawpipe.image import PixelFormat, new_image

from .conftest import flat_rgba


def test_ycbcr_matrices_are_inverse():
  assert torch.allclose(YCBCR_TO_SRGB @ SRGB_TO_YCBCR, torch.eye(3), atol=1e-6)


def test_grey_has_no_chroma(ctx):
  image = flat_rgba((4, 4), (0.4, 0.4, 0.4), alpha=0.7)
  output = new_image(ctx.device, (4, 4), PixelFormat.rgba)
  transform_image(ctx, image, output, SRGB_TO_YCBCR)

  assert torch.allclose(output[..., 0], torch.full((4, 4), 0.4), atol=1e-6)
  assert torch.allclose(output[..., 1:3], torch.zeros(4, 4, 2), atol=1e-6)
  assert torch.all(output[..., 3] == image[..., 3])


def test_srgb_gamma_reference_values():
  encoded = srgb_gamma(torch.tensor([0.0, 0.002, 0.18, 1.0]))
  assert encoded.tolist() == pytest.approx([0.0, 0.02584, 0.46135, 1.0], abs=1e-4)


def test_convert_to_srgb_identity(ctx):
  image = flat_rgba((4, 4), (0.18, 0.18, 0.18))
  output = new_image(ctx.device, (4, 4), PixelFormat.rgba)
  convert_to_srgb(ctx, image, None, output, torch.eye(3))
  assert torch.allclose(output[..., :3], torch.full((4, 4, 3), 0.46135), atol=1e-4)


def test_convert_to_srgb_exposure_and_mask(ctx):
  """Exposure and the tone mapping mask are both linear gains before encoding."""
  image = flat_rgba((4, 4), (0.1, 0.2, 0.05))
  mask = torch.full((4, 4, 1), 2.0)
  with_mask = convert_to_srgb(ctx, image, mask, new_image(ctx.device, (4, 4), PixelFormat.rgba), torch.eye(3))
  with_exposure = convert_to_srgb(
    ctx, image, None, new_image(ctx.device, (4, 4), PixelFormat.rgba), torch.eye(3), exposure=2.0
  )
  assert torch.allclose(with_mask, with_exposure, atol=1e-6)


def test_convert_to_srgb_saturation_and_clamp(ctx):
  image = flat_rgba((2, 2), (0.8, 0.2, 0.1))
  output = new_image(ctx.device, (2, 2), PixelFormat.rgba)

  convert_to_srgb(ctx, image, None, output, torch.eye(3), saturation=0.0)
  assert torch.allclose(output[..., 0], output[..., 1], atol=1e-6)
  assert torch.allclose(output[..., 1], output[..., 2], atol=1e-6)

  convert_to_srgb(ctx, image, None, output, torch.eye(3), exposure=10.0, contrast=2.0)
  assert output.min() >= 0 and output.max() <= 1


def test_convert_to_grayscale(ctx):
  image = flat_rgba((3, 2), (1.0, 0.0, 0.0))
  luma = new_image(ctx.device, (3, 2), PixelFormat.luma)
  convert_to_grayscale(ctx, image, luma)
  assert torch.allclose(luma, torch.full((2, 3, 1), 0.2126))
