"""
Bitmap <-> tensor conversion.

Models take float32 tensors in [0, 1] (plain /255 scaling; any mean/std
normalization lives inside the exported model). Outputs come back either as a
single-channel mask or as a channel-first RGB image.
"""
from __future__ import annotations
import enum
import os
from dataclasses import dataclass

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import DecodeError, EncodeError, InvalidImageError, ProcessingError


class Layout(str, enum.Enum):
  NCHW = "NCHW"
  NHWC = "NHWC"


MASK_MODES = ("clip", "soft")


@dataclass
class ImageTensor:
  data: np.ndarray
  shape: tuple[int, ...]
  layout: Layout = Layout.NCHW

  @property
  def rank(self) -> int:
    return len(self.shape)

  def array(self) -> np.ndarray:
    return self.data.reshape(self.shape)


def tensor_from_array(array, layout: Layout | str = Layout.NCHW) -> ImageTensor:
  arr = np.asarray(array, dtype=np.float32)
  return ImageTensor(np.ascontiguousarray(arr).reshape(-1), tuple(int(d) for d in arr.shape), Layout(layout))


def load_image(path: str) -> Image.Image:
  if not path or not os.path.isfile(path):
    raise InvalidImageError(f"Image not found: {path}")
  try:
    with Image.open(path) as im:
      im.load()
      return im.copy()
  except (OSError, UnidentifiedImageError, ValueError) as e:
    raise InvalidImageError(f"Could not decode image: {path}", details=str(e)) from e


def normalize_orientation(image: Image.Image) -> Image.Image:
  """Bake any EXIF orientation into the pixels and drop the tag."""
  try:
    return ImageOps.exif_transpose(image)
  except (OSError, ValueError, SyntaxError) as e:
    raise ProcessingError("Failed to normalize image orientation", details=str(e)) from e


def _spatial_dims(shape, layout: Layout) -> tuple[int, int, int, int]:
  if len(shape) != 4:
    raise EncodeError(f"Target shape must have rank 4, got {tuple(shape)}")
  if any(d is None or int(d) <= 0 for d in shape):
    raise EncodeError(f"Target shape must be fully specified, got {tuple(shape)}")
  if layout is Layout.NCHW:
    n, c, h, w = (int(d) for d in shape)
  else:
    n, h, w, c = (int(d) for d in shape)
  return n, c, h, w


def encode(image: Image.Image, target_shape, layout: Layout | str = Layout.NCHW) -> ImageTensor:
  layout = Layout(layout)
  n, c, h, w = _spatial_dims(target_shape, layout)
  if n != 1 or c != 3:
    raise EncodeError(f"Only single RGB images can be encoded, got shape {tuple(target_shape)}")
  try:
    rgb = image.convert("RGB")
    if rgb.size != (w, h):
      rgb = rgb.resize((w, h), Image.Resampling.BILINEAR)
    arr = np.asarray(rgb, dtype=np.float32) / 255.0
  except (OSError, ValueError) as e:
    raise EncodeError("Could not rasterize image into a pixel buffer", details=str(e)) from e

  if layout is Layout.NCHW:
    arr = arr.transpose(2, 0, 1)
  arr = np.ascontiguousarray(arr[np.newaxis, ...])
  shape = (n, c, h, w) if layout is Layout.NCHW else (n, h, w, c)
  data = arr.reshape(-1)
  if data.size != int(np.prod(shape)):
    raise EncodeError(f"Encoded buffer size {data.size} does not match shape {shape}")
  return ImageTensor(data, shape, layout)


def encode_mask(mask: Image.Image, height: int, width: int, layout: Layout | str = Layout.NCHW) -> ImageTensor:
  layout = Layout(layout)
  try:
    gray = mask.convert("L")
    if gray.size != (width, height):
      gray = gray.resize((width, height), Image.Resampling.BILINEAR)
    arr = np.asarray(gray, dtype=np.float32) / 255.0
  except (OSError, ValueError) as e:
    raise EncodeError("Could not rasterize mask into a pixel buffer", details=str(e)) from e
  shape = (1, 1, height, width) if layout is Layout.NCHW else (1, height, width, 1)
  return ImageTensor(np.ascontiguousarray(arr).reshape(-1), shape, layout)


def concat_channels(first: ImageTensor, second: ImageTensor) -> ImageTensor:
  if first.layout is not second.layout:
    raise EncodeError("Cannot concatenate tensors with different layouts")
  axis = 1 if first.layout is Layout.NCHW else 3
  try:
    arr = np.concatenate([first.array(), second.array()], axis=axis)
  except ValueError as e:
    raise EncodeError("Tensors are not compatible for concatenation", details=str(e)) from e
  return tensor_from_array(arr, first.layout)


def _to_unit_bytes(arr: np.ndarray) -> np.ndarray:
  arr = np.nan_to_num(arr.astype(np.float32), nan=0.0, posinf=1.0, neginf=0.0)
  return np.rint(np.clip(arr, 0.0, 1.0) * 255.0).astype(np.uint8)


def decode_mask(tensor: ImageTensor) -> Image.Image:
  arr = tensor.array()
  if arr.ndim < 2:
    raise DecodeError(f"Mask tensor must have rank >= 2, got {tensor.shape}")
  if tensor.layout is Layout.NHWC and arr.ndim == 4:
    arr = np.moveaxis(arr, -1, 1)
  h, w = arr.shape[-2:]
  if h == 0 or w == 0 or arr.size == 0:
    raise DecodeError(f"Mask tensor has empty spatial size {tensor.shape}")
  plane = arr.reshape(-1, h, w)[0]
  return Image.fromarray(_to_unit_bytes(plane))


def decode_rgb(tensor: ImageTensor) -> Image.Image:
  arr = tensor.array()
  if arr.ndim != 4:
    raise DecodeError(f"RGB tensor must have rank 4, got {tensor.shape}")
  if tensor.layout is Layout.NHWC:
    arr = arr.transpose(0, 3, 1, 2)
  n, c, h, w = arr.shape
  if n != 1:
    raise DecodeError(f"Expected batch size 1, got {n}")
  if c != 3:
    raise DecodeError(f"Expected 3 channels, got {c}")
  if h == 0 or w == 0:
    raise DecodeError(f"RGB tensor has empty spatial size {tensor.shape}")
  rgb = _to_unit_bytes(arr[0]).transpose(1, 2, 0)
  alpha = np.full((h, w, 1), 255, dtype=np.uint8)
  return Image.fromarray(np.ascontiguousarray(np.concatenate([rgb, alpha], axis=2)))


def apply_mask(image: Image.Image, mask: Image.Image, mode: str = "clip") -> Image.Image:
  """
  Cut the image out along the mask.

  "clip" thresholds the mask at 50% so every pixel is either kept or fully
  transparent. "soft" uses the mask as a per-pixel alpha channel.
  """
  if mode not in MASK_MODES:
    raise ProcessingError(f"Unknown mask mode: {mode}")
  try:
    alpha = mask.convert("L")
    if alpha.size != image.size:
      alpha = alpha.resize(image.size, Image.Resampling.BILINEAR)
    if mode == "clip":
      alpha = alpha.point(lambda p: 255 if p >= 128 else 0)
    out = image.convert("RGB").convert("RGBA")
    out.putalpha(alpha)
    return out
  except (OSError, ValueError) as e:
    raise ProcessingError("Failed to composite mask onto image", details=str(e)) from e
