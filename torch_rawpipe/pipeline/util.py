import torch


def pyramid_sizes(image_size: tuple[int, int], levels: int) -> list[tuple[int, int]]:
  """Octave sizes, each half the previous one (rounded up), finest first."""
  width, height = image_size
  sizes = []
  for _ in range(levels):
    sizes.append((width, height))
    width, height = max(1, (width + 1) // 2), max(1, (height + 1) // 2)
  return sizes


def matrix3(values, device: torch.device) -> torch.Tensor:
  return torch.tensor(values, dtype=torch.float32, device=device).reshape(3, 3)


def mean_signal(image: torch.Tensor) -> float:
  """Mean of the colour channels, used to pick a representative noise level."""
  return float(image[..., :3].mean().clamp_min(0))
