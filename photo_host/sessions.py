"""
In-memory inference sessions, at most one per model name.

The session map is only touched under the manager lock. Concurrent first
requests for a model share a single in-flight load. A session that is unloaded
while an inference holds it is detached from the map right away (status
reports "not loaded") and its runtime handle is released when the last holder
lets go.
"""
from __future__ import annotations
import os
import threading
from concurrent.futures import Future
from contextlib import contextmanager
from typing import Any, Callable

from .config import DEFAULT_CFG, ModelDescriptor, get_descriptor, log
from .errors import InferenceError, ModelLoadError, ModelNotFoundError, ModelUnavailableError, UnloadError
from .model_cache import ModelCache, ProgressCallback
from .runtime import InferenceRuntime, runtime_for_path
from .tensor_codec import ImageTensor, tensor_from_array

RuntimeFactory = Callable[[str, dict], InferenceRuntime]


class InferenceSession:
  def __init__(self, name: str, path: str, runtime: InferenceRuntime, handle: Any):
    self.name = name
    self.path = path
    self.runtime = runtime
    self.handle = handle
    self.refs = 0
    self.detached = False
    self.closed = False
    self.run_lock = threading.Lock()

  @property
  def provider(self) -> str:
    return getattr(self.handle, "provider", None) or self.runtime.name

  @property
  def input_shape(self) -> tuple | None:
    return getattr(self.handle, "input_shape", None)


class SessionManager:
  def __init__(self, cache: ModelCache | None = None, cfg: dict | None = None,
               runtime_factory: RuntimeFactory = runtime_for_path):
    self.cache = cache
    self.cfg = cfg if cfg is not None else dict(DEFAULT_CFG)
    self._runtime_factory = runtime_factory
    self._sessions: dict[str, InferenceSession] = {}
    self._loading: dict[str, Future] = {}
    self._lock = threading.Lock()

  def is_loaded(self, name: str) -> bool:
    with self._lock:
      return name in self._sessions

  def loaded_names(self) -> list[str]:
    with self._lock:
      return sorted(self._sessions)

  def get_or_load(self, name: str, descriptor: ModelDescriptor | None = None, path: str | None = None,
                  on_progress: ProgressCallback | None = None) -> InferenceSession:
    with self._lock:
      session = self._sessions.get(name)
      if session is not None:
        return session
      fut = self._loading.get(name)
      owner = fut is None
      if owner:
        fut = Future()
        self._loading[name] = fut

    if not owner:
      return fut.result()

    try:
      session = self._load(name, descriptor, path, on_progress)
    except Exception as e:
      with self._lock:
        self._loading.pop(name, None)
      fut.set_exception(e)
      raise
    with self._lock:
      self._sessions[name] = session
      self._loading.pop(name, None)
    fut.set_result(session)
    return session

  def load(self, name: str, path: str) -> InferenceSession:
    """Load an explicit artifact into the `name` slot, replacing a different one already there."""
    path = os.path.abspath(path)
    with self._lock:
      existing = self._sessions.get(name)
    if existing is not None:
      if existing.path == path:
        return existing
      self.unload(name)
    return self.get_or_load(name, path=path)

  def _load(self, name: str, descriptor: ModelDescriptor | None, path: str | None,
            on_progress: ProgressCallback | None) -> InferenceSession:
    if path is None:
      if self.cache is None:
        raise ModelUnavailableError(f"Model {name} is not loaded")
      descriptor = descriptor or get_descriptor(name, self.cfg)
      path = self.cache.ensure_available(name, descriptor.source_url, on_progress)
    elif not os.path.exists(path):
      raise ModelNotFoundError(f"Model file not found: {path}")

    try:
      runtime = self._runtime_factory(path, self.cfg)
      handle = runtime.load(path)
    except ModelLoadError:
      raise
    except Exception as e:
      raise ModelLoadError(f"Error loading model {name}", details=str(e)) from e
    session = InferenceSession(name, os.path.abspath(path), runtime, handle)
    log(f"{name}: session ready ({session.provider})")
    return session

  def acquire(self, name: str, descriptor: ModelDescriptor | None = None, path: str | None = None,
              on_progress: ProgressCallback | None = None) -> InferenceSession:
    while True:
      session = self.get_or_load(name, descriptor, path, on_progress)
      with self._lock:
        if not session.detached:
          session.refs += 1
          return session
      # Unloaded between load and use; load it again.

  def acquire_loaded(self, name: str) -> InferenceSession:
    with self._lock:
      session = self._sessions.get(name)
      if session is None:
        raise ModelUnavailableError(f"Model {name} is not loaded")
      session.refs += 1
      return session

  def release(self, session: InferenceSession) -> None:
    with self._lock:
      session.refs = max(0, session.refs - 1)
      close = session.detached and session.refs == 0 and not session.closed
      if close:
        session.closed = True
    if close:
      try:
        self._close(session)
      except UnloadError as e:
        log(f"{session.name}: deferred release failed: {e.details}")

  @contextmanager
  def use(self, name: str, descriptor: ModelDescriptor | None = None, path: str | None = None,
          on_progress: ProgressCallback | None = None):
    session = self.acquire(name, descriptor, path, on_progress)
    try:
      yield session
    finally:
      self.release(session)

  @contextmanager
  def use_loaded(self, name: str):
    session = self.acquire_loaded(name)
    try:
      yield session
    finally:
      self.release(session)

  def run(self, session: InferenceSession, tensor: ImageTensor) -> ImageTensor:
    if session.closed:
      raise ModelUnavailableError(f"Model {session.name} has been unloaded")
    with session.run_lock:
      try:
        out = session.runtime.run(session.handle, tensor.array())
      except Exception as e:
        raise InferenceError(f"Inference failed for model {session.name}", details=str(e)) from e
    if out is None:
      raise InferenceError(f"Model {session.name} produced no output")
    return tensor_from_array(out, tensor.layout)

  def unload(self, name: str) -> bool:
    with self._lock:
      session = self._sessions.pop(name, None)
      if session is None:
        return False
      session.detached = True
      close = session.refs == 0 and not session.closed
      if close:
        session.closed = True
    if close:
      self._close(session)
    else:
      log(f"{name}: unloaded while in use; release deferred")
    return True

  def unload_all(self) -> None:
    for name in self.loaded_names():
      try:
        self.unload(name)
      except UnloadError as e:
        log(f"{name}: {e.message}: {e.details}")

  def _close(self, session: InferenceSession) -> None:
    try:
      session.runtime.unload(session.handle)
    except Exception as e:
      raise UnloadError(f"Error unloading model {session.name}", details=str(e)) from e
    finally:
      session.handle = None
    log(f"{session.name}: session released")
