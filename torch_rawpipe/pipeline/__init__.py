from .config import DemosaicParameters, DenoiseParameters, LTMParameters, NoiseModelSettings, RGBConversionParameters
from .raw_converter import ImageSizeMismatchError, RawConverter, develop

__all__ = [
  'DemosaicParameters',
  'DenoiseParameters',
  'ImageSizeMismatchError',
  'LTMParameters',
  'NoiseModelSettings',
  'RGBConversionParameters',
  'RawConverter',
  'develop',
]
