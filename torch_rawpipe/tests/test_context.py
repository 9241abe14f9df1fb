"""Kernel program loading and dispatch."""

import pytest
import torch

from torch_rawpipe.context import AddressMode, ComputeContext, FilterMode, Kernel, Program
from torch_rawpipe.fusion import rescale_image
from torch_rawpipe.image import PixelFormat, new_image


def test_load_program_registers_every_kernel(ctx):
  """The demosaic program provides an entry point for every kernel."""
  program = ctx.load_program('demosaic')
  assert isinstance(program, Program)
  assert set(program.entries) == set(Kernel)
  assert ctx.load_program('demosaic') is program


def test_unknown_program_raises(ctx):
  with pytest.raises(RuntimeError, match='Failed to load program'):
    ctx.load_program('missing')


def test_run_checks_output_shape(ctx):
  """A kernel result that does not match its output buffer is rejected before writing."""
  image = torch.rand(8, 8, 4)
  output = new_image(ctx.device, (4, 4), PixelFormat.rgba)
  with pytest.raises(AssertionError):
    ctx.run(Kernel.rescale_image, ctx.enqueue_args(8, 8), output, image, ctx.create_sampler())
  assert torch.all(output == 0)


def test_trace_hook_sees_outputs():
  traced = []
  ctx = ComputeContext(torch.device('cpu'), trace=lambda entry, outputs: traced.append((entry, outputs)))
  image = torch.rand(8, 8, 2)
  output = torch.zeros(4, 4, 2)
  rescale_image(ctx, image, output)

  assert len(traced) == 1
  entry, outputs = traced[0]
  assert entry is Kernel.rescale_image
  assert outputs[0] is output


def test_map_unmap_image(ctx):
  image = torch.rand(4, 6, 4)
  mapped = ctx.map_image(image)
  assert mapped.dtype == torch.float64
  assert mapped.device.type == 'cpu'

  mapped[0, 0] = 0.25
  ctx.unmap_image(image, mapped)
  assert torch.allclose(image[0, 0], torch.full((4,), 0.25))


def test_sampler_address_modes(ctx):
  image = torch.arange(4, dtype=torch.float32).reshape(1, 4, 1)
  x = torch.tensor([[-1.0, 4.0]])
  y = torch.zeros(1, 2)

  clamped = ctx.create_sampler(AddressMode.clamp_to_edge, FilterMode.nearest).sample(image, x, y)
  repeated = ctx.create_sampler(AddressMode.repeat, FilterMode.nearest).sample(image, x, y)
  assert clamped[0, :, 0].tolist() == [0.0, 3.0]
  assert repeated[0, :, 0].tolist() == [3.0, 0.0]


def test_samplers_are_cached(ctx):
  assert ctx.create_sampler() is ctx.create_sampler()
  assert ctx.create_sampler(AddressMode.repeat) is not ctx.create_sampler()


def test_new_image_rejects_empty_size():
  with pytest.raises(ValueError):
    new_image(torch.device('cpu'), (0, 4), PixelFormat.luma)
