"""
Inference runtime adapters.

A runtime knows how to turn an artifact path into a handle, run one forward
pass on a float32 array, and release the handle. The session manager only
talks to this interface; which adapter is used follows from the artifact's
file extension.
"""
from __future__ import annotations
import os
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np
import onnxruntime as ort

from .config import log
from .errors import ModelLoadError


class InferenceRuntime(Protocol):
  name: str

  def load(self, path: str) -> Any: ...

  def run(self, handle: Any, array: np.ndarray) -> np.ndarray: ...

  def unload(self, handle: Any) -> None: ...


@dataclass
class OnnxHandle:
  session: Any
  input_name: str
  input_shape: tuple | None
  provider: str


class OnnxRuntime:
  name = "onnxruntime"

  ACCELERATED_PROVIDERS = (
    "TensorrtExecutionProvider",
    "CUDAExecutionProvider",
    "ROCMExecutionProvider",
    "CoreMLExecutionProvider",
    "DmlExecutionProvider",
  )

  def __init__(self, cpu_threads: int = 4, prefer_acceleration: bool = True):
    self.cpu_threads = cpu_threads
    self.prefer_acceleration = prefer_acceleration

  def _provider_attempts(self) -> list[list[str]]:
    attempts = []
    if self.prefer_acceleration:
      available = ort.get_available_providers()
      accel = [p for p in self.ACCELERATED_PROVIDERS if p in available]
      if accel:
        attempts.append(accel + ["CPUExecutionProvider"])
    attempts.append(["CPUExecutionProvider"])
    return attempts

  def load(self, path: str) -> OnnxHandle:
    last_error = None
    for providers in self._provider_attempts():
      opts = ort.SessionOptions()
      opts.intra_op_num_threads = self.cpu_threads
      opts.inter_op_num_threads = 1
      try:
        session = ort.InferenceSession(path, sess_options=opts, providers=providers)
        break
      except Exception as e:
        last_error = e
        log(f"onnxruntime: session with {providers} failed: {e}")
    else:
      raise ModelLoadError(f"Failed to load ONNX model {os.path.basename(path)}", details=str(last_error)) from last_error

    inp = session.get_inputs()[0]
    shape = tuple(d if isinstance(d, int) and d > 0 else None for d in (inp.shape or ()))
    provider = session.get_providers()[0]
    log(f"onnxruntime: loaded {os.path.basename(path)} provider={provider} input={inp.name}{list(shape)}")
    return OnnxHandle(session=session, input_name=inp.name, input_shape=shape or None, provider=provider)

  def run(self, handle: OnnxHandle, array: np.ndarray) -> np.ndarray:
    outputs = handle.session.run(None, {handle.input_name: np.ascontiguousarray(array, dtype=np.float32)})
    return np.asarray(outputs[0])

  def unload(self, handle: OnnxHandle) -> None:
    handle.session = None


@dataclass
class TorchHandle:
  module: Any
  device: str
  provider: str
  input_shape: tuple | None = field(default=None)


class TorchScriptRuntime:
  name = "torchscript"

  def __init__(self, cpu_threads: int = 4, prefer_acceleration: bool = True):
    self.cpu_threads = cpu_threads
    self.prefer_acceleration = prefer_acceleration

  def load(self, path: str) -> TorchHandle:
    # Import heavy deps only when a TorchScript artifact is actually used
    try:
      import torch
    except ImportError as e:
      raise ModelLoadError("TorchScript models need the 'torch' extra installed", details=str(e)) from e

    torch.set_num_threads(self.cpu_threads)
    device = "cuda" if self.prefer_acceleration and torch.cuda.is_available() else "cpu"
    try:
      module = torch.jit.load(path, map_location=device)
    except Exception as e:
      if device == "cpu":
        raise ModelLoadError(f"Failed to load TorchScript model {os.path.basename(path)}", details=str(e)) from e
      log(f"torchscript: {device} load failed ({e}); falling back to CPU")
      device = "cpu"
      try:
        module = torch.jit.load(path, map_location=device)
      except Exception as e2:
        raise ModelLoadError(f"Failed to load TorchScript model {os.path.basename(path)}", details=str(e2)) from e2
    module.eval()
    log(f"torchscript: loaded {os.path.basename(path)} device={device}")
    return TorchHandle(module=module, device=device, provider=device)

  def run(self, handle: TorchHandle, array: np.ndarray) -> np.ndarray:
    import torch
    with torch.inference_mode():
      x = torch.from_numpy(np.ascontiguousarray(array, dtype=np.float32)).to(handle.device)
      out = handle.module(x)
      if isinstance(out, (tuple, list)):
        out = out[0]
      return out.detach().float().cpu().numpy()

  def unload(self, handle: TorchHandle) -> None:
    handle.module = None
    if handle.device == "cuda":
      import torch
      torch.cuda.empty_cache()


_ONNX_SUFFIXES = (".onnx", ".ort")
_TORCH_SUFFIXES = (".pt", ".pth", ".ts", ".torchscript", ".jit")


def runtime_for_path(path: str, cfg: dict | None = None) -> InferenceRuntime:
  cfg = cfg or {}
  threads = int(cfg.get("cpu_threads") or 4)
  prefer = bool(cfg.get("prefer_acceleration", True))
  suffix = os.path.splitext(path)[1].lower()
  if suffix in _ONNX_SUFFIXES:
    return OnnxRuntime(cpu_threads=threads, prefer_acceleration=prefer)
  if suffix in _TORCH_SUFFIXES:
    return TorchScriptRuntime(cpu_threads=threads, prefer_acceleration=prefer)
  raise ModelLoadError(f"Unsupported model format: {os.path.basename(path)}")
