"""Develop a single image through the raw pipeline and write an 8 bit PNG."""

import argparse
import logging
from pathlib import Path

import cv2
import numpy as np
import torch

from torch_rawpipe.bayer import BayerPattern, load_as_bayer
from torch_rawpipe.context import ComputeContext
from torch_rawpipe.pipeline.config import DemosaicParameters
from torch_rawpipe.pipeline.raw_converter import RawConverter


def parse_args():
  parser = argparse.ArgumentParser(description='Develop a 16 bit image re-mosaiced to Bayer')
  parser.add_argument('input', type=Path, help='Input 8 or 16 bit RGB image')
  parser.add_argument('output', type=Path, help='Output PNG')
  parser.add_argument('--params', type=Path, default=None, help='DemosaicParameters JSON file')
  parser.add_argument('--pattern', type=str, default=None, choices=BayerPattern.__members__, help='Bayer pattern')
  parser.add_argument('--calibrate', action='store_true', help='Measure noise models from the image')
  parser.add_argument('--preview', action='store_true', help='Half resolution fast preview')
  parser.add_argument('--cpu', action='store_true', help='Run on the CPU')
  parser.add_argument('--verbose', '-v', action='store_true', help='Log noise model fits')
  return parser.parse_args()


def to_raw16(bayer: torch.Tensor) -> torch.Tensor:
  return (bayer * 65535).round().clamp(0, 65535).to(torch.int32).to(torch.uint16)


def main():
  args = parse_args()
  logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

  params = DemosaicParameters.load_json(args.params) if args.params else DemosaicParameters()
  if args.pattern is not None:
    params = params.model_copy(update={'bayer_pattern': BayerPattern[args.pattern]})

  ctx = ComputeContext(torch.device('cpu') if args.cpu else None)
  raw = to_raw16(load_as_bayer(args.input, params.bayer_pattern, ctx.device))

  height, width = raw.shape[:2]
  converter = RawConverter(ctx, (width, height), params)
  print(converter)

  if args.preview:
    srgb = converter.fast_preview(raw)
  else:
    srgb = converter.run_pipeline(raw, calibrate_from_image=args.calibrate)
    if args.calibrate:
      print(f'Raw NLF: a={converter.raw_nlf.a} b={converter.raw_nlf.b}')

  rgb8 = (ctx.map_image(srgb)[..., :3].numpy() * 255).round().astype(np.uint8)
  cv2.imwrite(str(args.output), cv2.cvtColor(rgb8, cv2.COLOR_RGB2BGR))
  print(f'Wrote {args.output}')


if __name__ == '__main__':
  main()
