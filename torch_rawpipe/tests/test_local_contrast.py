import pytest
import torch

from torch_rawpipe.color_conversion import YCBCR_TO_SRGB
from torch_rawpipe.fusion import rescale_image
from torch_rawpipe.image import PixelFormat, new_image
from torch_rawpipe.local_contrast import box_filter_ab, guided_filter_ab, local_tone_mapping_mask

SIZES = [(8, 8), (16, 16), (32, 32)]


def ycbcr_pyramid(ctx, generator):
  """Finest image and LF, MF, HF guide octaves of a random positive luma image."""
  image = torch.zeros(32, 32, 4)
  image[..., 0] = 0.05 + 0.5 * torch.rand(32, 32, generator=generator)
  image[..., 3] = 1

  guides = []
  for size in SIZES:
    guide = new_image(ctx.device, size, PixelFormat.rgba)
    guides.append(rescale_image(ctx, image, guide))
  return image, tuple(guides)


def buffers(ctx):
  return tuple(new_image(ctx.device, size, PixelFormat.luma_alpha) for size in SIZES)


def tone_map(ctx, image, guides, **kwargs):
  parameters = dict(eps=0.01, shadows=1.0, highlights=1.0, detail=(1.0, 1.0, 1.0))
  parameters.update(kwargs)
  return local_tone_mapping_mask(
    ctx,
    image,
    guides,
    buffers(ctx),
    buffers(ctx),
    ycbcr_srgb=YCBCR_TO_SRGB,
    nlf=(1e-6, 1e-6),
    output_image=new_image(ctx.device, (32, 32), PixelFormat.luma),
    **parameters,
  )


def test_identity_parameters_give_unit_mask(ctx, generator):
  image, guides = ycbcr_pyramid(ctx, generator)
  mask = tone_map(ctx, image, guides)
  assert torch.all(mask == 1)


def test_shadows_gain_brightens_dark_image(ctx, generator):
  image, guides = ycbcr_pyramid(ctx, generator)
  image[..., 0] *= 0.1
  guides = tuple(rescale_image(ctx, image, torch.zeros_like(guide)) for guide in guides)

  mask = tone_map(ctx, image, guides, shadows=2.0)
  assert float(mask.mean()) > 1.5


def test_detail_boost_increases_contrast(ctx, generator):
  image, guides = ycbcr_pyramid(ctx, generator)
  mask = tone_map(ctx, image, guides, detail=(1.0, 1.0, 2.0))
  boosted = mask[..., 0] * image[..., 0]
  assert boosted.std() > image[..., 0].std()


def test_guided_filter_coefficients(ctx):
  """A flat guide has no variance, so a = 0 and b is the mean."""
  guide = torch.zeros(8, 8, 4)
  guide[..., 0] = 0.4
  ab = guided_filter_ab(ctx, guide, new_image(ctx.device, (8, 8), PixelFormat.luma_alpha), 0.01)
  assert torch.allclose(ab[..., 0], torch.zeros(8, 8), atol=1e-5)
  assert torch.allclose(ab[..., 1], torch.full((8, 8), 0.4), atol=1e-5)

  ab_mean = box_filter_ab(ctx, ab, new_image(ctx.device, (8, 8), PixelFormat.luma_alpha))
  assert torch.allclose(ab_mean, ab, atol=1e-5)


def test_guided_filter_rejects_eps(ctx):
  guide = torch.zeros(8, 8, 4)
  with pytest.raises(ValueError):
    guided_filter_ab(ctx, guide, new_image(ctx.device, (8, 8), PixelFormat.luma_alpha), 0.0)
