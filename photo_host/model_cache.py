"""
Local model cache.

Installed artifacts live directly under the models directory, one file (or
compiled directory) per model. "Installed" is nothing more than a non-empty
artifact at that canonical path; it is re-checked on every request.

Downloads land in a scratch directory next to the canonical path, the archive
is extracted there, and only the verified artifact is renamed into place, so a
reader never sees a partial model and a failed attempt leaves nothing behind
that would confuse a retry.
"""
from __future__ import annotations
import os
import shutil
import tempfile
import threading
import uuid
import zipfile
from concurrent.futures import Future
from typing import Callable

import requests

from .config import BUNDLED_MODELS_DIR, DEFAULT_CFG, MODELS_DIR, get_descriptor, log
from .errors import DownloadError, ExtractError
from .progress import ProgressEvent, ProgressStream

ProgressCallback = Callable[[ProgressEvent], None]


def _is_present(path: str) -> bool:
  if os.path.isfile(path):
    return os.path.getsize(path) > 0
  if os.path.isdir(path):
    for root, _, files in os.walk(path):
      for fn in files:
        if os.path.getsize(os.path.join(root, fn)) > 0:
          return True
  return False


class ModelCache:
  def __init__(self, models_dir: str = MODELS_DIR, bundled_dir: str = BUNDLED_MODELS_DIR,
               cfg: dict | None = None, progress: ProgressStream | None = None):
    self.models_dir = models_dir
    self.bundled_dir = bundled_dir
    self.cfg = cfg if cfg is not None else dict(DEFAULT_CFG)
    self.progress = progress
    self._lock = threading.Lock()
    self._inflight: dict[str, Future] = {}

  def canonical_path(self, name: str) -> str:
    artifact = get_descriptor(name, self.cfg).artifact
    return os.path.join(self.models_dir, os.path.basename(artifact.rstrip("/\\")))

  def resolve_local_path(self, name: str) -> str | None:
    canonical = self.canonical_path(name)
    bundled = os.path.join(self.bundled_dir, os.path.basename(canonical))
    # A downloaded model always wins over the bundled copy of the same name.
    for path in (canonical, bundled):
      if _is_present(path):
        return path
    return None

  def is_downloading(self, name: str) -> bool:
    with self._lock:
      return name in self._inflight

  def ensure_available(self, name: str, source_url: str | None = None,
                       on_progress: ProgressCallback | None = None) -> str:
    path = self.resolve_local_path(name)
    if path:
      self._report(name, 1.0, "Model ready", on_progress)
      return path

    with self._lock:
      fut = self._inflight.get(name)
      owner = fut is None
      if owner:
        fut = Future()
        self._inflight[name] = fut

    if not owner:
      log(f"{name}: download already in progress; waiting")
      path = fut.result()
      self._report(name, 1.0, "Model ready", on_progress)
      return path

    try:
      # Another request may have finished installing between the first check and taking ownership.
      path = self.resolve_local_path(name) or self._fetch(name, source_url, on_progress)
    except Exception as e:
      # Drop the entry before resolving so a later caller starts a fresh attempt.
      with self._lock:
        self._inflight.pop(name, None)
      fut.set_exception(e)
      raise
    with self._lock:
      self._inflight.pop(name, None)
    fut.set_result(path)
    return path

  def remove(self, name: str) -> bool:
    target = self.canonical_path(name)
    if os.path.isdir(target):
      shutil.rmtree(target)
      return True
    if os.path.exists(target):
      os.remove(target)
      return True
    return False

  def _fetch(self, name: str, source_url: str | None, on_progress: ProgressCallback | None) -> str:
    descriptor = get_descriptor(name, self.cfg)
    url = source_url or descriptor.source_url
    if not url:
      raise DownloadError(f"No download source configured for model {name}")

    try:
      os.makedirs(self.models_dir, exist_ok=True)
      scratch = tempfile.mkdtemp(prefix=f".{name}-", dir=self.models_dir)
    except OSError as e:
      log(f"{name}: cannot prepare cache directory: {e}")
      raise DownloadError(f"Cannot prepare model cache for {name}", details=str(e)) from e
    archive = os.path.join(self.models_dir, f".{name}-{uuid.uuid4().hex}.zip")
    try:
      part = os.path.join(scratch, "download.part")
      self._report(name, 0.0, "Downloading model", on_progress)
      self._download(name, url, part, on_progress)
      try:
        os.replace(part, archive)
      except OSError as e:
        raise DownloadError(f"Failed to store download for model {name}", details=str(e)) from e

      self._report(name, 0.5, "Extracting model", on_progress)
      extract_dir = os.path.join(scratch, "extracted")
      self._extract(archive, extract_dir)
      found = self._locate(extract_dir, descriptor.artifact)
      if not found or not _is_present(found):
        raise ExtractError(f"Archive for {name} does not contain {descriptor.artifact}")

      target = self.canonical_path(name)
      self._install(found, target, scratch)
      log(f"{name}: installed at {target}")
      self._report(name, 1.0, "Model installed", on_progress)
      return target
    except (DownloadError, ExtractError) as e:
      log(f"{name}: fetch failed: {e}")
      raise
    finally:
      shutil.rmtree(scratch, ignore_errors=True)
      try:
        os.remove(archive)
      except OSError:
        pass

  def _download(self, name: str, url: str, dest: str, on_progress: ProgressCallback | None) -> None:
    timeout = self.cfg.get("download_timeout", DEFAULT_CFG["download_timeout"])
    chunk_size = int(self.cfg.get("download_chunk_size") or DEFAULT_CFG["download_chunk_size"])
    log(f"{name}: downloading {url}")
    try:
      with requests.get(url, stream=True, timeout=timeout) as resp:
        resp.raise_for_status()
        total = int(resp.headers.get("content-length") or 0)
        done = 0
        with open(dest, "wb") as f:
          for chunk in resp.iter_content(chunk_size=chunk_size):
            if not chunk:
              continue
            f.write(chunk)
            done += len(chunk)
            if total > 0:
              self._report(name, 0.5 * min(done / total, 1.0), "Downloading model", on_progress)
    except requests.RequestException as e:
      raise DownloadError(f"Failed to download model {name}", details=str(e)) from e
    except OSError as e:
      raise DownloadError(f"Failed to write download for model {name}", details=str(e)) from e

  def _extract(self, archive: str, dest: str) -> None:
    if not zipfile.is_zipfile(archive):
      raise ExtractError(f"Downloaded file is not a zip archive: {os.path.basename(archive)}")
    root = os.path.realpath(dest)
    try:
      with zipfile.ZipFile(archive, "r") as zf:
        bad = zf.testzip()
        if bad is not None:
          raise ExtractError(f"Corrupt archive member: {bad}")
        for member in zf.namelist():
          target = os.path.realpath(os.path.join(root, member))
          if target != root and not target.startswith(root + os.sep):
            raise ExtractError(f"Archive member escapes extraction directory: {member}")
        zf.extractall(root)
    except (zipfile.BadZipFile, OSError) as e:
      raise ExtractError("Failed to extract model archive", details=str(e)) from e

  def _locate(self, root: str, artifact: str) -> str | None:
    direct = os.path.join(root, artifact)
    if os.path.exists(direct):
      return direct
    wanted = os.path.basename(artifact.rstrip("/\\"))
    matches = []
    for dirpath, dirs, files in os.walk(root):
      for fn in dirs + files:
        if fn == wanted:
          matches.append(os.path.join(dirpath, fn))
    if not matches:
      return None
    return min(matches, key=lambda p: p.count(os.sep))

  def _install(self, src: str, target: str, scratch: str) -> None:
    if os.path.lexists(target):
      os.replace(target, os.path.join(scratch, "stale"))
    try:
      os.replace(src, target)
    except OSError as e:
      raise ExtractError(f"Failed to install model at {target}", details=str(e)) from e

  def _report(self, name: str, progress: float, status: str, on_progress: ProgressCallback | None) -> None:
    event = ProgressEvent(model_name=name, progress=round(float(progress), 4), status=status)
    if self.progress is not None:
      self.progress.publish(event)
    if on_progress is not None:
      try:
        on_progress(event)
      except Exception as e:
        log(f"{name}: progress callback failed: {e}")
