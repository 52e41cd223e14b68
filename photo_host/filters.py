"""
Model-free image operations: named filters, slider adjustments, and the
deterministic fallbacks used when a model path is unavailable.
"""
from __future__ import annotations
from typing import Callable

from PIL import Image, ImageDraw, ImageEnhance, ImageFilter, ImageOps

from .errors import InputError

_SEPIA_MATRIX = (
  0.393, 0.769, 0.189, 0,
  0.349, 0.686, 0.168, 0,
  0.272, 0.534, 0.131, 0,
)


def _keep_alpha(img: Image.Image, fn: Callable[[Image.Image], Image.Image]) -> Image.Image:
  if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
    rgba = img.convert("RGBA")
    out = fn(rgba.convert("RGB")).convert("RGBA")
    out.putalpha(rgba.getchannel("A"))
    return out
  return fn(img.convert("RGB"))


def _scale_channels(img: Image.Image, r: float, g: float, b: float) -> Image.Image:
  cr, cg, cb = img.split()
  return Image.merge("RGB", (
    cr.point(lambda v: min(255, int(v * r))),
    cg.point(lambda v: min(255, int(v * g))),
    cb.point(lambda v: min(255, int(v * b))),
  ))


def _grayscale(img):
  return ImageOps.grayscale(img).convert("RGB")

def _sepia(img):
  return img.convert("RGB", _SEPIA_MATRIX)

def _vintage(img):
  faded = Image.blend(img, _sepia(img), 0.6)
  return ImageEnhance.Contrast(faded).enhance(0.9)

def _warm(img):
  return _scale_channels(img, 1.08, 1.0, 0.92)

def _cool(img):
  return _scale_channels(img, 0.92, 1.0, 1.08)

def _vivid(img):
  return ImageEnhance.Contrast(ImageEnhance.Color(img).enhance(1.4)).enhance(1.1)

def _noir(img):
  return ImageEnhance.Contrast(_grayscale(img)).enhance(1.5)


FILTERS: dict[str, Callable[[Image.Image], Image.Image]] = {
  "none": lambda img: img.copy(),
  "grayscale": _grayscale,
  "sepia": _sepia,
  "vintage": _vintage,
  "warm": _warm,
  "cool": _cool,
  "vivid": _vivid,
  "noir": _noir,
  "blur": lambda img: img.filter(ImageFilter.GaussianBlur(radius=2)),
  "sharpen": lambda img: img.filter(ImageFilter.SHARPEN),
}


def apply_filter(img: Image.Image, name: str) -> Image.Image:
  fn = FILTERS.get(str(name or "").strip().lower())
  if fn is None:
    raise InputError(f"Unknown filter: {name}", details={"available": sorted(FILTERS)})
  return _keep_alpha(img, fn)


ADJUSTMENT_RANGES = {
  "brightness": (-1.0, 1.0),
  "contrast": (-1.0, 1.0),
  "saturation": (-1.0, 1.0),
  "blur": (0.0, 10.0),
  "sharpen": (0.0, 1.0),
}


def normalize_adjustments(adjustments: dict) -> dict[str, float]:
  if not isinstance(adjustments, dict):
    raise InputError("Adjustments must be a map")
  unknown = sorted(set(adjustments) - set(ADJUSTMENT_RANGES))
  if unknown:
    raise InputError(f"Unknown adjustments: {', '.join(unknown)}", details={"allowed": sorted(ADJUSTMENT_RANGES)})
  out = {}
  for key, (lo, hi) in ADJUSTMENT_RANGES.items():
    raw = adjustments.get(key, 0.0)
    if raw is None:
      raw = 0.0
    if isinstance(raw, bool):
      raise InputError(f"Adjustment {key} must be a number")
    try:
      value = float(raw)
    except (TypeError, ValueError):
      raise InputError(f"Adjustment {key} must be a number") from None
    out[key] = lo if value < lo else hi if value > hi else value
  return out


def apply_adjustments(img: Image.Image, adjustments: dict) -> Image.Image:
  adj = normalize_adjustments(adjustments)

  def run(rgb: Image.Image) -> Image.Image:
    if adj["brightness"]:
      rgb = ImageEnhance.Brightness(rgb).enhance(1.0 + adj["brightness"])
    if adj["contrast"]:
      rgb = ImageEnhance.Contrast(rgb).enhance(1.0 + adj["contrast"])
    if adj["saturation"]:
      rgb = ImageEnhance.Color(rgb).enhance(1.0 + adj["saturation"])
    if adj["blur"] > 0:
      rgb = rgb.filter(ImageFilter.GaussianBlur(radius=adj["blur"]))
    if adj["sharpen"] > 0:
      rgb = rgb.filter(ImageFilter.UnsharpMask(radius=2, percent=int(adj["sharpen"] * 200), threshold=2))
    return rgb

  return _keep_alpha(img, run)


# Fallbacks

def upscale_fallback(img: Image.Image, scale: int) -> Image.Image:
  w, h = img.size
  return img.resize((w * scale, h * scale), Image.Resampling.LANCZOS)


def denoise_fallback(img: Image.Image) -> Image.Image:
  def run(rgb):
    rgb = rgb.filter(ImageFilter.MedianFilter(size=3))
    return rgb.filter(ImageFilter.UnsharpMask(radius=1.5, percent=50, threshold=2))
  return _keep_alpha(img, run)


def enhance_fallback(img: Image.Image) -> Image.Image:
  def run(rgb):
    rgb = rgb.filter(ImageFilter.GaussianBlur(radius=0.5))
    rgb = rgb.filter(ImageFilter.UnsharpMask(radius=2, percent=120, threshold=3))
    return ImageEnhance.Contrast(rgb).enhance(1.05)
  return _keep_alpha(img, run)


def portrait_effect(img: Image.Image) -> Image.Image:
  """Keep a centered, feathered ellipse sharp and blur everything around it."""
  rgb = img.convert("RGB")
  w, h = rgb.size
  short = min(w, h)
  background = rgb.filter(ImageFilter.GaussianBlur(radius=max(2.0, short / 60.0)))

  mask = Image.new("L", (w, h), 0)
  mx, my = w * 0.2, h * 0.1
  ImageDraw.Draw(mask).ellipse((mx, my, w - mx, h - my * 0.5), fill=255)
  mask = mask.filter(ImageFilter.GaussianBlur(radius=max(1.0, short / 10.0)))
  return Image.composite(rgb, background, mask)
