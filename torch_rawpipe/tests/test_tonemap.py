import pytest
import torch

from torch_rawpipe.image import PixelFormat, new_image
from torch_rawpipe.tonemap import blend_highlights_image, blue_noise_image, blue_noise_tile, smoothstep

from .conftest import flat_rgba


def test_blue_noise_tile():
  tile = blue_noise_tile(16)
  assert tile.shape == (16, 16, 1)
  assert tile.dtype == torch.uint16

  values = tile.to(torch.int32).flatten()
  assert int(values.min()) == 0 and int(values.max()) == 65535
  assert values.unique().numel() == values.numel()
  assert torch.equal(tile, blue_noise_tile(16))


def test_blue_noise_tile_is_high_frequency():
  """Neighbouring dither values are anti-correlated."""
  tile = blue_noise_tile(32).to(torch.float64)[..., 0]
  centred = tile - tile.mean()
  correlation = (centred * torch.roll(centred, 1, dims=1)).mean() / centred.var()
  assert correlation < 0


def test_blue_noise_tile_minimum_size():
  with pytest.raises(ValueError):
    blue_noise_tile(3)


def test_blue_noise_image(ctx):
  image = flat_rgba((20, 12), (0.3, 0.01, 0.02))
  tile = blue_noise_tile(8)

  unchanged = blue_noise_image(ctx, image, tile, (0.0, 0.0), new_image(ctx.device, (20, 12), PixelFormat.rgba))
  assert torch.equal(unchanged, image)

  dithered = blue_noise_image(ctx, image, tile, (1e-4, 0.0), new_image(ctx.device, (20, 12), PixelFormat.rgba))
  assert (dithered[..., 0] - 0.3).abs().max() <= 0.005 + 1e-6
  assert torch.equal(dithered[..., 1:], image[..., 1:])
  # The tile repeats over the image
  assert torch.equal(dithered[:4, :8, 0], dithered[8:12, 8:16, 0])


def test_smoothstep():
  x = torch.tensor([0.0, 0.5, 1.0, 2.0])
  assert smoothstep(0.0, 1.0, x).tolist() == [0.0, 0.5, 1.0, 1.0]


def test_blend_highlights(ctx):
  image = flat_rgba((2, 2), (0.5, 0.2, 0.1))
  image[0, 0, :3] = torch.tensor([1.0, 0.5, 0.5])
  output = blend_highlights_image(ctx, image, 0.9, new_image(ctx.device, (2, 2), PixelFormat.rgba))

  assert torch.allclose(output[0, 0, :3], torch.ones(3))
  assert torch.equal(output[1, 1], image[1, 1])


def test_blend_highlights_rejects_clip(ctx):
  image = flat_rgba((2, 2), (0.5, 0.2, 0.1))
  with pytest.raises(ValueError):
    blend_highlights_image(ctx, image, 1.0, new_image(ctx.device, (2, 2), PixelFormat.rgba))
