"""
Paths, persisted settings, the host log and the supported model registry.
"""
from __future__ import annotations
import enum
import json
import os
import sys
import time
from dataclasses import dataclass

from .errors import ModelNotFoundError
from .tensor_codec import Layout


def _get_root_dir() -> str:
  env = os.environ.get("PHOTO_HOST_ROOT")
  if env:
    return os.path.abspath(env)
  if getattr(sys, "frozen", False):
    return os.path.dirname(sys.executable)
  return os.path.dirname(os.path.abspath(__file__))

ROOT = _get_root_dir()
CFG_PATH = os.path.join(ROOT, "config.json")
MODELS_DIR = os.path.join(ROOT, "models")
BUNDLED_MODELS_DIR = os.path.join(ROOT, "bundled_models")
OUTPUT_DIR = os.path.join(ROOT, "output")
LOG_PATH = os.path.join(ROOT, "host.log")

DEFAULT_MODEL_NAME = "default"

DEFAULT_CFG = {
  # Archives are fetched from <model_base_url>/<name>.zip unless a model entry
  # below carries its own "url".
  "model_base_url": "",
  "models": {},
  "mask_mode": "clip",
  "prefer_acceleration": True,
  "cpu_threads": 4,
  "max_workers": 2,
  "upscale_max_size": 512,
  "upscale_buckets": [128, 256, 384, 512],
  "output_format": "png",
  "download_timeout": 120,
  "download_chunk_size": 1024 * 1024,
}


def _normalize_cfg(cfg: dict) -> dict:
  for key, value in DEFAULT_CFG.items():
    cfg.setdefault(key, value if not isinstance(value, (dict, list)) else type(value)(value))
  if cfg.get("mask_mode") not in ("clip", "soft"):
    cfg["mask_mode"] = "clip"
  fmt = str(cfg.get("output_format") or "png").strip().lower()
  cfg["output_format"] = "webp" if fmt == "webp" else "png"
  try:
    cfg["cpu_threads"] = max(1, int(cfg.get("cpu_threads") or 1))
  except (TypeError, ValueError):
    cfg["cpu_threads"] = DEFAULT_CFG["cpu_threads"]
  try:
    cfg["max_workers"] = max(1, int(cfg.get("max_workers") or 1))
  except (TypeError, ValueError):
    cfg["max_workers"] = DEFAULT_CFG["max_workers"]
  max_size = int(cfg.get("upscale_max_size") or DEFAULT_CFG["upscale_max_size"])
  buckets = sorted({int(b) for b in (cfg.get("upscale_buckets") or []) if 0 < int(b) <= max_size})
  cfg["upscale_max_size"] = max_size
  cfg["upscale_buckets"] = buckets or [max_size]
  if not isinstance(cfg.get("models"), dict):
    cfg["models"] = {}
  return cfg


def load_cfg(path: str | None = None) -> dict:
  path = path or CFG_PATH
  if not os.path.exists(path):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
      json.dump(DEFAULT_CFG, f, indent=2)
  with open(path, "r", encoding="utf-8") as f:
    cfg = json.load(f)
  return _normalize_cfg(cfg)

def save_cfg(cfg: dict, path: str | None = None) -> None:
  path = path or CFG_PATH
  with open(path, "w", encoding="utf-8") as f:
    json.dump(cfg, f, indent=2)


def log(msg: str) -> None:
  try:
    ts = time.strftime("%Y-%m-%d %H:%M:%S")
    with open(LOG_PATH, "a", encoding="utf-8") as f:
      f.write(f"[{ts}] {msg}\n")
  except OSError:
    pass


class OutputKind(str, enum.Enum):
  MASK = "mask"
  RGB_IMAGE = "rgb_image"


@dataclass(frozen=True)
class ModelDescriptor:
  name: str
  source_url: str
  # None marks a dynamic dimension.
  input_shape: tuple
  layout: Layout
  output_kind: OutputKind
  # Path of the compiled artifact inside the downloaded archive.
  artifact: str

  def is_dynamic(self) -> bool:
    return any(d is None for d in self.input_shape)


_MODELS = {
  # Portrait matting, fixed 512x512 input, single-channel alpha out.
  "modnet": ((1, 3, 512, 512), Layout.NCHW, OutputKind.MASK, "modnet.onnx"),
  # x2 super-resolution; any square input up to upscale_max_size.
  "realesrgan_x2": ((1, 3, None, None), Layout.NCHW, OutputKind.RGB_IMAGE, "realesrgan_x2.onnx"),
  # RGB + mask channel in, filled RGB out.
  "lama": ((1, 4, 512, 512), Layout.NCHW, OutputKind.RGB_IMAGE, "lama.onnx"),
}


def model_names() -> list[str]:
  return sorted(_MODELS)


def get_descriptor(name: str, cfg: dict | None = None) -> ModelDescriptor:
  entry = _MODELS.get(name)
  if entry is None:
    raise ModelNotFoundError(f"Unknown model: {name}")
  cfg = cfg if cfg is not None else DEFAULT_CFG
  shape, layout, kind, artifact = entry
  override = (cfg.get("models") or {}).get(name) or {}
  url = override.get("url") or ""
  base = (cfg.get("model_base_url") or "").rstrip("/")
  if not url and base:
    url = f"{base}/{name}.zip"
  return ModelDescriptor(
    name=name,
    source_url=url,
    input_shape=shape,
    layout=layout,
    output_kind=kind,
    artifact=override.get("artifact") or artifact,
  )
