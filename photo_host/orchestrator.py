"""
Per-operation transform pipelines.

Each request is a straight line: normalize orientation -> ensure model ->
load session -> resize+encode -> infer -> decode -> post-resize/composite ->
save. Upscale, auto-enhance and reduce-noise drop to a filter when the model
cannot be obtained or inference fails; background removal and inpainting have
no fallback and surface the error.
"""
from __future__ import annotations
import os
import tempfile
import uuid
from dataclasses import dataclass, field

from PIL import Image

from . import filters
from .config import DEFAULT_CFG, DEFAULT_MODEL_NAME, OUTPUT_DIR, get_descriptor, log
from .errors import (
  HostError, InferenceError, InputError, InvalidScaleError, ModelUnavailableError,
  NotImplementedMethodError, PersistenceError, ProcessingError,
)
from .model_cache import ModelCache, ProgressCallback
from .sessions import InferenceSession, SessionManager
from .tensor_codec import (
  Layout, apply_mask, concat_channels, decode_mask, decode_rgb, encode, encode_mask,
  load_image, normalize_orientation,
)

BACKGROUND_MODEL = "modnet"
UPSCALE_MODEL = "realesrgan_x2"
INPAINT_MODEL = "lama"

OPERATIONS = (
  "removeBackground",
  "portraitMode",
  "autoEnhance",
  "upscale",
  "reduceNoise",
  "applyFilter",
  "applyAdjustments",
  "inpaint",
  "imageToImage",
)


def validate_scale(raw) -> int:
  if isinstance(raw, bool) or raw is None:
    raise InvalidScaleError("Scale must be 2, 3 or 4", details={"scale": raw})
  if isinstance(raw, float) and raw.is_integer():
    raw = int(raw)
  if not isinstance(raw, int) or not 2 <= raw <= 4:
    raise InvalidScaleError("Scale must be 2, 3 or 4", details={"scale": raw})
  return raw


def _required_str(args: dict, *keys: str) -> str:
  for key in keys:
    value = args.get(key)
    if isinstance(value, str) and value:
      return value
  raise InputError(f"{keys[0]} is required")


@dataclass(frozen=True)
class TransformRequest:
  operation: str
  image_path: str
  mask_path: str | None = None
  scale: int | None = None
  filter_name: str | None = None
  adjustments: dict = field(default_factory=dict)

  @classmethod
  def from_args(cls, operation: str, args: dict | None) -> "TransformRequest":
    if operation not in OPERATIONS:
      raise NotImplementedMethodError(f"Method not implemented: {operation}")
    if args is None:
      args = {}
    if not isinstance(args, dict):
      raise InputError("Invalid arguments")

    if operation in ("imageToImage", "inpaint"):
      image_path = _required_str(args, "inputImagePath", "imagePath")
    else:
      image_path = _required_str(args, "imagePath")

    kwargs: dict = {}
    if operation == "upscale":
      kwargs["scale"] = validate_scale(args.get("scale"))
    elif operation == "inpaint":
      kwargs["mask_path"] = _required_str(args, "maskImagePath", "maskPath")
    elif operation == "applyFilter":
      kwargs["filter_name"] = _required_str(args, "filterName")
    elif operation == "applyAdjustments":
      adjustments = args.get("adjustments")
      if not isinstance(adjustments, dict):
        raise InputError("adjustments is required")
      kwargs["adjustments"] = filters.normalize_adjustments(adjustments)
    return cls(operation=operation, image_path=image_path, **kwargs)


class TransformOrchestrator:
  def __init__(self, cache: ModelCache, sessions: SessionManager, cfg: dict | None = None,
               output_dir: str = OUTPUT_DIR, on_progress: ProgressCallback | None = None):
    self.cache = cache
    self.sessions = sessions
    self.cfg = cfg if cfg is not None else dict(DEFAULT_CFG)
    self.output_dir = output_dir
    self.on_progress = on_progress
    self._handlers = {
      "removeBackground": self.remove_background,
      "portraitMode": self.portrait_mode,
      "autoEnhance": self.auto_enhance,
      "upscale": self.upscale,
      "reduceNoise": self.reduce_noise,
      "applyFilter": self.apply_filter,
      "applyAdjustments": self.apply_adjustments,
      "inpaint": self.inpaint,
      "imageToImage": self.image_to_image,
    }

  def run(self, request: TransformRequest) -> str:
    handler = self._handlers.get(request.operation)
    if handler is None:
      raise NotImplementedMethodError(f"Method not implemented: {request.operation}")
    log(f"{request.operation}: start {request.image_path}")
    try:
      out_path = handler(request)
    except HostError as e:
      log(f"{request.operation}: failed {e.code}: {e.message}")
      raise
    except (OSError, ValueError) as e:
      log(f"{request.operation}: failed: {e}")
      raise ProcessingError(f"{request.operation} failed", details=str(e)) from e
    log(f"{request.operation}: done -> {out_path}")
    return out_path

  # Steps

  def _open(self, path: str) -> Image.Image:
    return normalize_orientation(load_image(path))

  def _model_side(self, size: tuple[int, int]) -> int:
    w, h = size
    max_size = int(self.cfg.get("upscale_max_size") or DEFAULT_CFG["upscale_max_size"])
    if w == h and w <= max_size:
      return w
    buckets = self.cfg.get("upscale_buckets") or [max_size]
    longest = max(w, h)
    return min(buckets, key=lambda b: abs(b - longest))

  def _input_shape(self, session: InferenceSession, size: tuple[int, int], layout: Layout) -> tuple:
    shape = session.input_shape
    if shape and len(shape) == 4 and all(d is not None for d in shape):
      return shape
    side = self._model_side(size)
    return (1, 3, side, side) if layout is Layout.NCHW else (1, side, side, 3)

  def _x2_pass(self, session: InferenceSession, img: Image.Image, layout: Layout) -> Image.Image:
    tensor = encode(img, self._input_shape(session, img.size, layout), layout)
    out = self.sessions.run(session, tensor)
    return decode_rgb(out).convert("RGB")

  def _model_upscale(self, img: Image.Image, passes: int) -> Image.Image:
    desc = get_descriptor(UPSCALE_MODEL, self.cfg)
    with self.sessions.use(desc.name, desc, on_progress=self.on_progress) as session:
      for _ in range(passes):
        img = self._x2_pass(session, img, desc.layout)
    return img

  def _save(self, img: Image.Image, label: str) -> str:
    fmt = self.cfg.get("output_format", "png")
    ext = "webp" if fmt == "webp" else "png"
    try:
      os.makedirs(self.output_dir, exist_ok=True)
      fd, tmp = tempfile.mkstemp(prefix=f".{label}_", suffix=f".{ext}.part", dir=self.output_dir)
      os.close(fd)
    except OSError as e:
      raise PersistenceError("Could not prepare output location", details=str(e)) from e
    final = os.path.join(self.output_dir, f"{label}_{uuid.uuid4().hex}.{ext}")
    try:
      if ext == "webp":
        img.save(tmp, format="WEBP", quality=95, method=4)
      else:
        img.save(tmp, format="PNG", compress_level=3)
      os.replace(tmp, final)
    except (OSError, ValueError) as e:
      try:
        os.remove(tmp)
      except OSError:
        pass
      raise PersistenceError("Failed to save output image", details=str(e)) from e
    return final

  @staticmethod
  def _restore_alpha(src: Image.Image, out: Image.Image) -> Image.Image:
    if src.mode == "P" and "transparency" in src.info:
      src = src.convert("RGBA")
    if "A" not in src.getbands():
      return out
    alpha = src.getchannel("A")
    if alpha.size != out.size:
      alpha = alpha.resize(out.size, Image.Resampling.BILINEAR)
    out = out.convert("RGBA")
    out.putalpha(alpha)
    return out

  # Operations

  def remove_background(self, request: TransformRequest) -> str:
    img = self._open(request.image_path)
    desc = get_descriptor(BACKGROUND_MODEL, self.cfg)
    with self.sessions.use(desc.name, desc, on_progress=self.on_progress) as session:
      tensor = encode(img, desc.input_shape, desc.layout)
      out = self.sessions.run(session, tensor)
    mask = decode_mask(out)
    if mask.size != img.size:
      mask = mask.resize(img.size, Image.Resampling.BILINEAR)
    result = apply_mask(img, mask, self.cfg.get("mask_mode", "clip"))
    return self._save(result, "background_removed")

  def portrait_mode(self, request: TransformRequest) -> str:
    img = self._open(request.image_path)
    return self._save(self._restore_alpha(img, filters.portrait_effect(img)), "portrait")

  def upscale(self, request: TransformRequest) -> str:
    img = self._open(request.image_path)
    scale = validate_scale(request.scale)
    w, h = img.size
    target = (w * scale, h * scale)
    if scale == 3:
      # The x2 model has no path to x3.
      log("upscale: x3 has no model path; using filter resize")
      out = filters.upscale_fallback(img.convert("RGB"), scale)
    else:
      passes = 1 if scale == 2 else 2
      try:
        out = self._model_upscale(img, passes)
      except (ModelUnavailableError, InferenceError) as e:
        log(f"upscale: model path unavailable ({e.code}); using filter resize")
        out = filters.upscale_fallback(img.convert("RGB"), scale)
    if out.size != target:
      out = out.resize(target, Image.Resampling.LANCZOS)
    return self._save(self._restore_alpha(img, out), f"upscaled_x{scale}")

  def _enhance_same_size(self, request: TransformRequest, fallback, label: str) -> str:
    img = self._open(request.image_path)
    try:
      out = self._model_upscale(img, 1)
      if out.size != img.size:
        out = out.resize(img.size, Image.Resampling.LANCZOS)
    except (ModelUnavailableError, InferenceError) as e:
      log(f"{request.operation}: model path unavailable ({e.code}); using filter")
      out = fallback(img)
    return self._save(self._restore_alpha(img, out), label)

  def auto_enhance(self, request: TransformRequest) -> str:
    return self._enhance_same_size(request, filters.enhance_fallback, "enhanced")

  def reduce_noise(self, request: TransformRequest) -> str:
    return self._enhance_same_size(request, filters.denoise_fallback, "denoised")

  def apply_filter(self, request: TransformRequest) -> str:
    img = self._open(request.image_path)
    return self._save(filters.apply_filter(img, request.filter_name), "filtered")

  def apply_adjustments(self, request: TransformRequest) -> str:
    img = self._open(request.image_path)
    return self._save(filters.apply_adjustments(img, request.adjustments), "adjusted")

  def inpaint(self, request: TransformRequest) -> str:
    img = self._open(request.image_path)
    mask = self._open(request.mask_path).convert("L")
    if mask.size != img.size:
      mask = mask.resize(img.size, Image.Resampling.BILINEAR)
    desc = get_descriptor(INPAINT_MODEL, self.cfg)
    n, _, h, w = desc.input_shape
    with self.sessions.use(desc.name, desc, on_progress=self.on_progress) as session:
      tensor = concat_channels(
        encode(img, (n, 3, h, w), desc.layout),
        encode_mask(mask, h, w, desc.layout),
      )
      out = self.sessions.run(session, tensor)
    filled = decode_rgb(out).convert("RGB")
    if filled.size != img.size:
      filled = filled.resize(img.size, Image.Resampling.LANCZOS)
    # Only the masked region changes.
    result = Image.composite(filled, img.convert("RGB"), mask)
    return self._save(self._restore_alpha(img, result), "inpainted")

  def image_to_image(self, request: TransformRequest) -> str:
    img = self._open(request.image_path)
    with self.sessions.use_loaded(DEFAULT_MODEL_NAME) as session:
      shape = session.input_shape
      layout = Layout.NHWC if shape and len(shape) == 4 and shape[-1] == 3 and shape[1] != 3 else Layout.NCHW
      tensor = encode(img, self._input_shape(session, img.size, layout), layout)
      out = self.sessions.run(session, tensor)
    arr = out.array()
    channels = 0
    if arr.ndim == 4:
      channels = arr.shape[1] if out.layout is Layout.NCHW else arr.shape[-1]
    if channels == 3:
      result = decode_rgb(out).convert("RGB")
      if result.size != img.size:
        result = result.resize(img.size, Image.Resampling.LANCZOS)
      result = self._restore_alpha(img, result)
    else:
      result = apply_mask(img, decode_mask(out), self.cfg.get("mask_mode", "clip"))
    return self._save(result, "image_to_image")
