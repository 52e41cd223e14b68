"""
Shared pytest fixtures: temp host layout, fake runtimes and a fake HTTP layer.
"""
import io
import os
import threading
import time
import zipfile

import numpy as np
import pytest
import requests
from PIL import Image

from photo_host import config
from photo_host.channel import MethodChannel
from photo_host.model_cache import ModelCache
from photo_host.orchestrator import TransformOrchestrator
from photo_host.progress import ProgressStream
from photo_host.sessions import SessionManager


class FakeHandle:
  def __init__(self, path, input_shape=None):
    self.path = path
    self.input_shape = input_shape
    self.provider = "FakeExecutionProvider"


class FakeRuntime:
  """Runtime test double; counts loads, runs and unloads."""

  name = "fake"

  def __init__(self, fn=None, input_shape=None, load_delay=0.0, fail_load=False, fail_run=False):
    self.fn = fn or (lambda arr: arr)
    self.input_shape = input_shape
    self.load_delay = load_delay
    self.fail_load = fail_load
    self.fail_run = fail_run
    self.loads = 0
    self.runs = 0
    self.unloads = 0
    self.seen_shapes = []
    self._lock = threading.Lock()

  def load(self, path):
    if self.load_delay:
      time.sleep(self.load_delay)
    with self._lock:
      self.loads += 1
    if self.fail_load:
      raise RuntimeError("cannot construct session")
    return FakeHandle(path, self.input_shape)

  def run(self, handle, arr):
    with self._lock:
      self.runs += 1
      self.seen_shapes.append(tuple(arr.shape))
    if self.fail_run:
      raise ValueError("Got invalid dimensions for input")
    return self.fn(arr)

  def unload(self, handle):
    with self._lock:
      self.unloads += 1


def upsample_x2(arr):
  return arr.repeat(2, axis=2).repeat(2, axis=3)


def constant_mask(value):
  def fn(arr):
    return np.full((1, 1, arr.shape[2], arr.shape[3]), value, dtype=np.float32)
  return fn


def gray_fill(arr):
  return np.full((1, 3, arr.shape[2], arr.shape[3]), 0.5, dtype=np.float32)


class FakeResponse:
  def __init__(self, body=b"", status_code=200, chunk_size=7):
    self.body = body
    self.status_code = status_code
    self.headers = {"content-length": str(len(body))}
    self._chunk = chunk_size

  def __enter__(self):
    return self

  def __exit__(self, *exc):
    return False

  def raise_for_status(self):
    if self.status_code >= 400:
      raise requests.HTTPError(f"{self.status_code} error")

  def iter_content(self, chunk_size=1):
    for i in range(0, len(self.body), self._chunk):
      yield self.body[i:i + self._chunk]


def make_zip(files: dict) -> bytes:
  buf = io.BytesIO()
  with zipfile.ZipFile(buf, "w") as zf:
    for name, data in files.items():
      zf.writestr(name, data)
  return buf.getvalue()


class FakeHTTP:
  """Stand-in for requests.get; serves archives by URL and records calls."""

  def __init__(self):
    self.routes = {}
    self.calls = []
    self.offline = False
    self.gate = None
    self.started = threading.Event()

  def serve(self, url, body, status_code=200):
    self.routes[url] = (body, status_code)

  def get(self, url, stream=False, timeout=None, **kwargs):
    self.calls.append(url)
    self.started.set()
    if self.gate is not None:
      self.gate.wait(5)
    if self.offline:
      raise requests.ConnectionError("network is unreachable")
    if url not in self.routes:
      return FakeResponse(b"not found", status_code=404)
    body, status = self.routes[url]
    return FakeResponse(body, status_code=status)


BASE_URL = "https://models.test/v1"


@pytest.fixture(autouse=True)
def host_log(tmp_path, monkeypatch):
  path = tmp_path / "host.log"
  monkeypatch.setattr(config, "LOG_PATH", str(path))
  return path


@pytest.fixture
def cfg():
  return config._normalize_cfg({"model_base_url": BASE_URL})


@pytest.fixture
def http(monkeypatch):
  fake = FakeHTTP()
  monkeypatch.setattr(requests, "get", fake.get)
  return fake


@pytest.fixture
def offline(http):
  http.offline = True
  return http


@pytest.fixture
def progress():
  return ProgressStream()


@pytest.fixture
def models_dir(tmp_path):
  return str(tmp_path / "models")


@pytest.fixture
def bundled_dir(tmp_path):
  return str(tmp_path / "bundled")


@pytest.fixture
def output_dir(tmp_path):
  return str(tmp_path / "output")


@pytest.fixture
def cache(models_dir, bundled_dir, cfg, progress):
  return ModelCache(models_dir, bundled_dir, cfg=cfg, progress=progress)


@pytest.fixture
def runtimes():
  return {
    "modnet.onnx": FakeRuntime(constant_mask(1.0)),
    "realesrgan_x2.onnx": FakeRuntime(upsample_x2),
    "lama.onnx": FakeRuntime(gray_fill),
    "default": FakeRuntime(),
  }


@pytest.fixture
def sessions(cache, cfg, runtimes):
  def factory(path, _cfg):
    return runtimes.get(os.path.basename(path), runtimes["default"])
  return SessionManager(cache, cfg=cfg, runtime_factory=factory)


@pytest.fixture
def orchestrator(cache, sessions, cfg, output_dir):
  return TransformOrchestrator(cache, sessions, cfg=cfg, output_dir=output_dir)


@pytest.fixture
def channel(orchestrator, sessions, cache):
  ch = MethodChannel(orchestrator, sessions, cache, max_workers=2)
  yield ch
  ch.shutdown(wait=True)


@pytest.fixture
def install_model(cache):
  """Put a non-empty artifact at the canonical path, as a finished download would."""
  def install(name):
    path = cache.canonical_path(name)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
      f.write(b"compiled-model")
    return path
  return install


@pytest.fixture
def make_image(tmp_path):
  def make(name="photo.png", size=(100, 100), color=(200, 40, 90), mode="RGB", exif=None):
    path = tmp_path / name
    if mode == "RGB":
      w, h = size
      arr = np.zeros((h, w, 3), dtype=np.uint8)
      arr[..., 0] = color[0]
      arr[..., 1] = np.linspace(0, 255, w, dtype=np.uint8)[np.newaxis, :]
      arr[..., 2] = color[2]
      img = Image.fromarray(arr)
    else:
      img = Image.new(mode, size, color)
    if exif is not None:
      img.save(path, exif=exif)
    else:
      img.save(path)
    return str(path)
  return make
