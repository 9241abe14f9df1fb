"""DemosaicParameters validation and serialization."""

import json

from pydantic import ValidationError
import pytest

from torch_rawpipe.bayer import BayerPattern
from torch_rawpipe.debayer import Demosaic
from torch_rawpipe.noise_model import NoiseLevelFunction, RefitPolicy
from torch_rawpipe.pipeline.config import (
  DemosaicParameters,
  DenoiseParameters,
  LTMParameters,
  NoiseModelSettings,
)


def test_parameters_roundtrip(tmp_path):
  """Test that non default parameters survive a JSON round trip."""
  params = DemosaicParameters(
    bayer_pattern=BayerPattern.GBRG,
    black_level=512.0,
    white_level=16383.0,
    scale_mul=(2.0, 1.0, 1.5, 1.0),
    demosaic=Demosaic.malvar,
    ycbcr_refit_policy=RefitPolicy.always,
    denoise=(DenoiseParameters(luma=2.0), DenoiseParameters(), DenoiseParameters()),
    ltm=LTMParameters(shadows=1.5, detail=(1.0, 1.2, 1.1)),
    noise_model=NoiseModelSettings(raw_nlf=NoiseLevelFunction((1e-5,) * 4, (1e-3,) * 4)),
  )
  path = tmp_path / 'params.json'
  params.save_json(path)

  assert DemosaicParameters.load_json(path) == params
  assert json.loads(path.read_text())['bayer_pattern'] == 'GBRG'


def test_enums_parse_by_name():
  params = DemosaicParameters.model_validate({'demosaic': 'fast', 'bayer_pattern': 'BGGR'})
  assert params.demosaic is Demosaic.fast
  assert params.bayer_pattern is BayerPattern.BGGR

  with pytest.raises(ValidationError):
    DemosaicParameters.model_validate({'demosaic': 'bilinear'})


def test_range_validation():
  with pytest.raises(ValidationError):
    DenoiseParameters(luma_weight=2.0)
  with pytest.raises(ValidationError):
    DemosaicParameters(black_level=1000.0, white_level=500.0)
  with pytest.raises(ValidationError):
    DemosaicParameters(denoise=())


def test_noise_model_channels():
  with pytest.raises(ValidationError):
    NoiseModelSettings(raw_nlf=NoiseLevelFunction.constant(3))
  with pytest.raises(ValidationError):
    DemosaicParameters(denoise=(DenoiseParameters(),) * 5)


def test_derived_levels():
  params = DemosaicParameters(black_level=1024.0, white_level=16384.0, scale_mul=(2.0, 1.0, 1.0, 1.0))
  assert params.pyramid_levels == 4
  assert params.normalized_black_level == pytest.approx(1024 / 65535)
  assert params.scaled_mul[0] == pytest.approx(2 * 65535 / 15360)
  assert params.scaled_mul[1] == pytest.approx(65535 / 15360)


def test_threshold_multipliers():
  assert DenoiseParameters(luma=0.5, chroma=3.0).threshold_multipliers == (0.5, 3.0, 3.0)
  assert LTMParameters().is_identity
  assert not LTMParameters(detail=(1.0, 1.0, 2.0)).is_identity
