"""Multi-frame fusion and multiscale noise subtraction."""

from beartype import beartype
import torch

from .context import ComputeContext, EnqueueArgs, Kernel, Sampler, kernel, pixel_grid
from .image import PixelFormat, check_distinct, check_format, check_same_size, image_size, new_image

Vector3 = tuple[float, float, float]


def _vector(values: tuple[float, ...], like: torch.Tensor) -> torch.Tensor:
  return torch.tensor(values, dtype=like.dtype, device=like.device)


@kernel(Kernel.fuse_frames)
def _fuse_frames(
  extent: EnqueueArgs,
  reference: torch.Tensor,
  gradient: torch.Tensor,
  image: torch.Tensor,
  previous: torch.Tensor,
  homography: torch.Tensor,
  var_a: Vector3,
  var_b: Vector3,
  fused_frames: int,
  sampler: Sampler,
) -> torch.Tensor:
  x, y = pixel_grid(image_size(reference), reference.device)
  h = homography.to(device=reference.device, dtype=torch.float32)
  w = h[2, 0] * x + h[2, 1] * y + h[2, 2]
  warped = sampler.sample(image, (h[0, 0] * x + h[0, 1] * y + h[0, 2]) / w, (h[1, 0] * x + h[1, 1] * y + h[1, 2]) / w)

  ref = reference[..., :3]
  difference = warped[..., :3] - ref
  sigma2 = (_vector(var_a, ref) + _vector(var_b, ref) * ref[..., :1]).clamp_min(1e-12)
  weight = sigma2 / (sigma2 + difference * difference * (1 + gradient[..., :1]))

  fused = previous[..., :3] + weight * (warped[..., :3] - previous[..., :3]) / (fused_frames + 1)
  return torch.cat([fused, reference[..., 3:]], dim=-1)


@kernel(Kernel.subtract_noise)
def _subtract_noise(
  extent: EnqueueArgs,
  image: torch.Tensor,
  image1: torch.Tensor,
  denoised1: torch.Tensor,
  gradient: torch.Tensor,
  luma_weight: float,
  sharpening: float,
  nlf: tuple[float, float],
  sampler: Sampler,
) -> torch.Tensor:
  size = image_size(image)
  upsampled1 = sampler.resample(image1[..., :3], size)
  noise = sampler.resample(image1[..., :3] - denoised1[..., :3], size)
  detail = image[..., :3] - upsampled1

  luma = image[..., :1]
  sigma = (nlf[0] + nlf[1] * luma).clamp_min(1e-12).sqrt()
  g = gradient[..., :1]
  edge = g / (g + sigma)

  luma = luma - luma_weight * noise[..., :1] + (sharpening - 1) * edge * detail[..., :1]
  chroma = image[..., 1:3] - noise[..., 1:3]
  return torch.cat([luma, chroma, image[..., 3:]], dim=-1)


@kernel(Kernel.subtract_noise_fused)
def _subtract_noise_fused(
  extent: EnqueueArgs, image: torch.Tensor, image1: torch.Tensor, denoised1: torch.Tensor, sampler: Sampler
) -> torch.Tensor:
  noise = sampler.resample(image1[..., :3] - denoised1[..., :3], image_size(image))
  return torch.cat([image[..., :3] - noise, image[..., 3:]], dim=-1)


@kernel(Kernel.rescale_image)
def _rescale_image(extent: EnqueueArgs, image: torch.Tensor, sampler: Sampler) -> torch.Tensor:
  return sampler.resample(image, (extent.width, extent.height))


@beartype
def fuse_frames(
  ctx: ComputeContext,
  reference_image: torch.Tensor,
  gradient_image: torch.Tensor,
  image: torch.Tensor,
  previous_fused_image: torch.Tensor,
  homography: torch.Tensor,
  var_a: Vector3,
  var_b: Vector3,
  fused_frames: int,
  output_image: torch.Tensor,
) -> torch.Tensor:
  """
  Add a frame to a running multi-frame average.

  The frame is warped into the reference geometry (homography maps reference
  pixel coordinates to frame coordinates) and blended with weight
  sigma^2 / (sigma^2 + d^2 (1 + g)), d being its difference to the reference,
  as the (fused_frames + 1)th sample of the running mean.

  Args:
      reference_image: Reference frame (H, W, 4)
      gradient_image: Edge strength of the reference (H, W, 2)
      image: New frame, any size
      previous_fused_image: Running estimate over fused_frames frames (H, W, 4)
      homography: 3x3 homography from reference to frame coordinates
      var_a: Per channel noise model offsets
      var_b: Per channel noise model slopes
      fused_frames: Number of frames in previous_fused_image, at least 1
      output_image: New estimate (H, W, 4), alpha from the reference

  Returns:
      output_image
  """
  check_format(reference_image, PixelFormat.rgba, 'reference_image')
  check_format(gradient_image, PixelFormat.luma_alpha, 'gradient_image')
  check_format(image, PixelFormat.rgba, 'image')
  check_format(previous_fused_image, PixelFormat.rgba, 'previous_fused_image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  for other in (gradient_image, previous_fused_image, output_image):
    check_same_size(reference_image, other)
  check_distinct(previous_fused_image, output_image)
  assert homography.shape == (3, 3), f'Expected a 3x3 homography, got {tuple(homography.shape)}'
  if fused_frames < 1:
    raise ValueError(f'fused_frames must be at least 1, got {fused_frames}')

  ctx.run(
    Kernel.fuse_frames,
    ctx.enqueue_args(*image_size(output_image)),
    output_image,
    reference_image,
    gradient_image,
    image,
    previous_fused_image,
    homography,
    var_a,
    var_b,
    fused_frames,
    ctx.create_sampler(),
  )
  return output_image


@beartype
def subtract_noise_image(
  ctx: ComputeContext,
  image: torch.Tensor,
  image1: torch.Tensor,
  denoised_image1: torch.Tensor,
  gradient_image: torch.Tensor,
  luma_weight: float,
  sharpening: float,
  nlf: tuple[float, float],
  output_image: torch.Tensor,
) -> torch.Tensor:
  """
  Remove the noise estimated at the next coarser octave from a finer octave.

  The noise is image1 - denoised_image1 upsampled; luma noise is removed
  scaled by luma_weight, and (sharpening - 1) times the detail the coarser
  octave lacks is added back on edges stronger than the luma noise.

  Args:
      image: YCbCr octave (H, W, 4)
      image1: Next coarser octave before denoising
      denoised_image1: Next coarser octave after denoising, same size as image1
      gradient_image: Edge strength at this octave (H, W, 2)
      luma_weight: Fraction of the luma noise to remove
      sharpening: Detail gain on edges, 1 is identity
      nlf: Luma noise model (a, b)
      output_image: Output (H, W, 4)

  Returns:
      output_image
  """
  check_format(image, PixelFormat.rgba, 'image')
  check_format(image1, PixelFormat.rgba, 'image1')
  check_format(denoised_image1, PixelFormat.rgba, 'denoised_image1')
  check_format(gradient_image, PixelFormat.luma_alpha, 'gradient_image')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image1, denoised_image1)
  check_same_size(image, gradient_image)
  check_same_size(image, output_image)
  check_distinct(image, output_image)

  ctx.run(
    Kernel.subtract_noise,
    ctx.enqueue_args(*image_size(output_image)),
    output_image,
    image,
    image1,
    denoised_image1,
    gradient_image,
    luma_weight,
    sharpening,
    nlf,
    ctx.create_sampler(),
  )
  return output_image


@beartype
def subtract_noise_fused_image(
  ctx: ComputeContext,
  image: torch.Tensor,
  image1: torch.Tensor,
  denoised_image1: torch.Tensor,
  output_image: torch.Tensor,
) -> torch.Tensor:
  """Remove the upsampled coarser octave noise from all channels."""
  check_format(image, PixelFormat.rgba, 'image')
  check_format(image1, PixelFormat.rgba, 'image1')
  check_format(denoised_image1, PixelFormat.rgba, 'denoised_image1')
  check_format(output_image, PixelFormat.rgba, 'output_image')
  check_same_size(image1, denoised_image1)
  check_same_size(image, output_image)
  check_distinct(image, output_image)

  ctx.run(
    Kernel.subtract_noise_fused,
    ctx.enqueue_args(*image_size(output_image)),
    output_image,
    image,
    image1,
    denoised_image1,
    ctx.create_sampler(),
  )
  return output_image


@beartype
def rescale_image(ctx: ComputeContext, image: torch.Tensor, output_image: torch.Tensor) -> torch.Tensor:
  """Bilinear resampling to the size of output_image, pixel areas aligned."""
  assert image.dim() == 3 and output_image.dim() == 3, 'Images must be (H, W, C)'
  assert image.shape[2] == output_image.shape[2], (
    f'Channel mismatch {image.shape[2]} != {output_image.shape[2]}'
  )
  assert output_image.dtype == torch.float32, f'output_image must be float32, got {output_image.dtype}'

  ctx.run(Kernel.rescale_image, ctx.enqueue_args(*image_size(output_image)), output_image, image, ctx.create_sampler())
  return output_image


class FrameFusion:
  """Running multi-frame average aligned to a reference frame."""

  @beartype
  def __init__(
    self,
    ctx: ComputeContext,
    reference_image: torch.Tensor,
    gradient_image: torch.Tensor,
    var_a: Vector3,
    var_b: Vector3,
  ):
    check_format(reference_image, PixelFormat.rgba, 'reference_image')
    check_same_size(reference_image, gradient_image)

    self.ctx = ctx
    self.reference = reference_image
    self.gradient = gradient_image
    self.var_a = var_a
    self.var_b = var_b

    self._fused = reference_image.clone()
    self._scratch = new_image(ctx.device, image_size(reference_image), PixelFormat.rgba)
    self._frame_count = 1

  def __repr__(self) -> str:
    width, height = image_size(self.reference)
    return f'FrameFusion({width}x{height}, frames={self._frame_count})'

  @property
  def frame_count(self) -> int:
    return self._frame_count

  @property
  def fused(self) -> torch.Tensor:
    return self._fused

  @beartype
  def add_frame(self, image: torch.Tensor, homography: torch.Tensor) -> torch.Tensor:
    """Fuse a frame, homography maps reference coordinates into the frame."""
    fuse_frames(
      self.ctx,
      self.reference,
      self.gradient,
      image,
      self._fused,
      homography,
      self.var_a,
      self.var_b,
      self._frame_count,
      self._scratch,
    )
    self._fused, self._scratch = self._scratch, self._fused
    self._frame_count += 1
    return self._fused


__all__ = [
  'FrameFusion',
  'fuse_frames',
  'rescale_image',
  'subtract_noise_fused_image',
  'subtract_noise_image',
]
