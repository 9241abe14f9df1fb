from enum import Enum
from pathlib import Path
from typing import Annotated, Generic, Literal, TypeVar

from beartype import beartype
from pydantic import BaseModel, GetCoreSchemaHandler, model_validator
from pydantic_core import core_schema

from torch_rawpipe.bayer import BayerPattern
from torch_rawpipe.convolution import BlurStrategy
from torch_rawpipe.debayer import Demosaic
from torch_rawpipe.noise_model import NLFStrategy, NoiseLevelFunction, RefitPolicy


class Validator:
  """Base class for all field validators."""

  description: str


class Float(Validator):
  def __init__(self, range: tuple[float, float], description: str):
    self.range = range
    self.description = description

  def __get_pydantic_core_schema__(self, _source_type, _handler: GetCoreSchemaHandler):
    def validate(v: float):
      v = float(v)
      if not (self.range[0] <= v <= self.range[1]):
        raise ValueError(f'{v} not in [{self.range[0]}, {self.range[1]}]')
      return v

    return core_schema.no_info_plain_validator_function(validate)


class Int(Validator):
  def __init__(self, range: tuple[int, int], description: str):
    self.range = range
    self.description = description

  def __get_pydantic_core_schema__(self, _source_type, _handler: GetCoreSchemaHandler):
    def validate(v: int):
      v = int(v)
      if not (self.range[0] <= v <= self.range[1]):
        raise ValueError(f'{v} not in [{self.range[0]}, {self.range[1]}]')
      return v

    return core_schema.no_info_plain_validator_function(validate)


class Bool(Validator):
  def __init__(self, description: str):
    self.description = description

  def __get_pydantic_core_schema__(self, _source_type, _handler: GetCoreSchemaHandler):
    def validate(v: bool):
      return bool(v)

    return core_schema.no_info_plain_validator_function(validate)


TEnum = TypeVar('TEnum', bound=Enum)


class EnumValidator(Validator, Generic[TEnum]):
  def __init__(self, enum_type: type[TEnum], description: str):
    self.enum_type = enum_type
    self.description = description

  def __get_pydantic_core_schema__(self, _source_type, _handler: GetCoreSchemaHandler):
    def validate(v):
      if isinstance(v, self.enum_type):
        return v
      if isinstance(v, str) and v in self.enum_type.__members__:
        return self.enum_type[v]
      raise ValueError(f'{v} is not a {self.enum_type.__name__}')

    def serialize(v):
      return v.name

    return core_schema.no_info_plain_validator_function(
      validate, serialization=core_schema.plain_serializer_function_ser_schema(serialize, when_used='always')
    )


Matrix3 = tuple[tuple[float, float, float], tuple[float, float, float], tuple[float, float, float]]

IDENTITY3: Matrix3 = ((1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (0.0, 0.0, 1.0))


class DenoiseParameters(BaseModel, frozen=True):
  """Denoise strength of one pyramid octave."""

  luma: Annotated[float, Float(range=(0.0, 16.0), description='Luma threshold multiplier')] = 1.0
  chroma: Annotated[float, Float(range=(0.0, 64.0), description='Chroma threshold multiplier')] = 4.0
  chroma_boost: Annotated[float, Float(range=(0.0, 16.0), description='Chroma threshold boost')] = 2.0
  gradient_boost: Annotated[float, Float(range=(0.0, 16.0), description='Luma threshold reduction on edges')] = 2.0
  gradient_threshold: Annotated[float, Float(range=(0.0, 1.0), description='Edge strength threshold')] = 0.01
  sharpening: Annotated[float, Float(range=(0.0, 4.0), description='Detail gain on edges')] = 1.0
  luma_weight: Annotated[float, Float(range=(0.0, 1.0), description='Fraction of luma noise removed')] = 1.0

  @property
  def threshold_multipliers(self) -> tuple[float, float, float]:
    return (self.luma, self.chroma, self.chroma)


class LTMParameters(BaseModel, frozen=True):
  """Local tone mapping, detail weights are ordered LF, MF, HF."""

  eps: Annotated[float, Float(range=(1e-6, 1.0), description='Guided filter regularization')] = 0.01
  shadows: Annotated[float, Float(range=(0.1, 4.0), description='Shadows gain')] = 1.0
  highlights: Annotated[float, Float(range=(0.1, 4.0), description='Highlights gain')] = 1.0
  detail: tuple[float, float, float] = (1.0, 1.0, 1.0)

  @property
  def is_identity(self) -> bool:
    return self.shadows == 1 and self.highlights == 1 and all(d == 1 for d in self.detail)


class RGBConversionParameters(BaseModel, frozen=True):
  exposure: Annotated[float, Float(range=(0.0, 64.0), description='Exposure gain')] = 1.0
  contrast: Annotated[float, Float(range=(0.0, 4.0), description='Contrast')] = 1.0
  saturation: Annotated[float, Float(range=(0.0, 4.0), description='Saturation')] = 1.0
  local_tone_mapping: Annotated[bool, Bool(description='Enable local tone mapping')] = False
  highlight_clip: Annotated[float, Float(range=(0.0, 0.99), description='Highlight roll-off start')] = 0.9


class NoiseModelSettings(BaseModel, frozen=True):
  """Noise models used when the image is not calibrated from itself."""

  raw_nlf: NoiseLevelFunction = NoiseLevelFunction.constant(4)
  ycbcr_nlf: tuple[NoiseLevelFunction, ...] = (NoiseLevelFunction.constant(3),) * 4

  @model_validator(mode='after')
  def check_channels(self) -> 'NoiseModelSettings':
    if self.raw_nlf.channels != 4:
      raise ValueError(f'raw_nlf must have 4 channels, got {self.raw_nlf.channels}')
    for nlf in self.ycbcr_nlf:
      if nlf.channels != 3:
        raise ValueError(f'ycbcr_nlf entries must have 3 channels, got {nlf.channels}')
    return self


def _default_denoise() -> tuple[DenoiseParameters, ...]:
  return (
    DenoiseParameters(luma=1.0, chroma=4.0),
    DenoiseParameters(luma=1.0, chroma=2.0),
    DenoiseParameters(luma=0.5, chroma=1.0),
    DenoiseParameters(luma=0.25, chroma=1.0),
  )


class DemosaicParameters(BaseModel, frozen=True):
  type: Literal['demosaic_parameters'] = 'demosaic_parameters'

  bayer_pattern: Annotated[BayerPattern, EnumValidator(BayerPattern, description='Bayer pattern')] = BayerPattern.RGGB
  black_level: Annotated[float, Float(range=(0.0, 65534.0), description='Black level (DN)')] = 0.0
  white_level: Annotated[float, Float(range=(1.0, 65535.0), description='White level (DN)')] = 65535.0
  scale_mul: tuple[float, float, float, float] = (1.0, 1.0, 1.0, 1.0)
  rgb_cam: Matrix3 = IDENTITY3
  exposure_multiplier: Annotated[float, Float(range=(0.01, 100.0), description='Exposure multiplier')] = 1.0

  demosaic: Annotated[Demosaic, EnumValidator(Demosaic, description='Demosaic algorithm')] = Demosaic.adaptive
  blur_strategy: Annotated[BlurStrategy, EnumValidator(BlurStrategy, description='Blur strategy')] = (
    BlurStrategy.sampled
  )
  nlf_strategy: Annotated[NLFStrategy, EnumValidator(NLFStrategy, description='Noise model regression')] = (
    NLFStrategy.least_squares
  )
  raw_refit_policy: Annotated[RefitPolicy, EnumValidator(RefitPolicy, description='Raw noise model refit')] = (
    RefitPolicy.always
  )
  ycbcr_refit_policy: Annotated[RefitPolicy, EnumValidator(RefitPolicy, description='YCbCr noise model refit')] = (
    RefitPolicy.if_better
  )

  gradient_radius: Annotated[float, Float(range=(0.5, 8.0), description='Small gradient blur radius')] = 1.0
  gradient_wide_radius: Annotated[float, Float(range=(0.5, 16.0), description='Wide gradient blur radius')] = 3.0

  raw_denoise: Annotated[bool, Bool(description='Despeckle and denoise the raw mosaic')] = False
  blue_noise_size: Annotated[int, Int(range=(0, 256), description='Blue noise tile size, 0 disables dithering')] = 0
  guided_denoise: Annotated[bool, Bool(description='Use the guided filter denoiser')] = False
  denoise: tuple[DenoiseParameters, ...] = _default_denoise()

  ltm: LTMParameters = LTMParameters()
  rgb_conversion: RGBConversionParameters = RGBConversionParameters()
  noise_model: NoiseModelSettings = NoiseModelSettings()

  @model_validator(mode='after')
  def check_levels(self) -> 'DemosaicParameters':
    if not self.denoise:
      raise ValueError('denoise must have at least one octave')
    if self.white_level <= self.black_level:
      raise ValueError(f'white_level {self.white_level} must be above black_level {self.black_level}')
    if len(self.noise_model.ycbcr_nlf) < len(self.denoise):
      raise ValueError(f'noise_model has {len(self.noise_model.ycbcr_nlf)} octaves, denoise has {len(self.denoise)}')
    return self

  @property
  def pyramid_levels(self) -> int:
    return len(self.denoise)

  @property
  def normalized_black_level(self) -> float:
    return self.black_level / 65535

  @property
  def scaled_mul(self) -> tuple[float, float, float, float]:
    """Channel gains including the stretch of [black, white] to [0, 1]."""
    stretch = 65535 / (self.white_level - self.black_level)
    return tuple(m * stretch for m in self.scale_mul)

  @beartype
  def save_json(self, path: Path) -> None:
    """Save parameters to a JSON file."""
    path.write_text(self.model_dump_json(indent=2))

  @classmethod
  @beartype
  def load_json(cls, path: Path) -> 'DemosaicParameters':
    """Load parameters from a JSON file."""
    return cls.model_validate_json(path.read_text())


__all__ = [
  'IDENTITY3',
  'Bool',
  'DemosaicParameters',
  'DenoiseParameters',
  'EnumValidator',
  'Float',
  'Int',
  'LTMParameters',
  'NoiseModelSettings',
  'RGBConversionParameters',
  'Validator',
]
