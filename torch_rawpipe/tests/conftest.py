import pytest
import torch

from torch_rawpipe.context import ComputeContext


@pytest.fixture
def ctx():
  return ComputeContext(torch.device('cpu'), compile=False)


@pytest.fixture
def generator():
  return torch.Generator().manual_seed(0)


def flat_rgba(size: tuple[int, int], rgb: tuple[float, float, float], alpha: float = 1.0) -> torch.Tensor:
  width, height = size
  pixel = torch.tensor([*rgb, alpha], dtype=torch.float32)
  return pixel.expand(height, width, 4).clone()


def to_raw16(mosaic: torch.Tensor) -> torch.Tensor:
  return (mosaic * 65535).round().clamp(0, 65535).to(torch.int32).to(torch.uint16)
