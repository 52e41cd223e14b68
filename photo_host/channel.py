"""
Method-call surface.

Every call runs on a background worker; its result is handed back through the
MainThreadDispatcher so the caller's callback always fires on the thread that
drains it. Results are {"ok": true, "result": ...} or
{"ok": false, "error": {code, message, details}}; nothing escapes as an
exception.
"""
from __future__ import annotations
import queue
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

from .config import DEFAULT_MODEL_NAME, get_descriptor, log
from .errors import HostError, InputError, to_error_payload
from .model_cache import ModelCache
from .orchestrator import TransformOrchestrator, TransformRequest
from .sessions import SessionManager

ResultCallback = Callable[[dict], None]


def ok(value: Any) -> dict:
  return {"ok": True, "result": value}


def error(exc: BaseException) -> dict:
  return {"ok": False, "error": to_error_payload(exc)}


class MainThreadDispatcher:
  """Queue of callables drained by whichever thread plays the UI/main role."""

  def __init__(self):
    self._queue: queue.Queue = queue.Queue()

  def post(self, fn: Callable[[], None]) -> None:
    self._queue.put(fn)

  def run_once(self, timeout: float | None = None) -> bool:
    try:
      fn = self._queue.get(timeout=timeout)
    except queue.Empty:
      return False
    fn()
    return True

  def run_pending(self) -> int:
    count = 0
    while True:
      try:
        fn = self._queue.get_nowait()
      except queue.Empty:
        return count
      fn()
      count += 1


class MethodChannel:
  def __init__(self, orchestrator: TransformOrchestrator, sessions: SessionManager, cache: ModelCache,
               dispatcher: MainThreadDispatcher | None = None, max_workers: int = 2):
    self.orchestrator = orchestrator
    self.sessions = sessions
    self.cache = cache
    self.dispatcher = dispatcher
    self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="photo-host")
    self._pending = 0
    self._pending_lock = threading.Lock()

  @property
  def pending(self) -> int:
    with self._pending_lock:
      return self._pending

  def handle(self, method: str, args: dict | None, on_result: ResultCallback) -> None:
    try:
      work = self._prepare(method, args)
    except HostError as e:
      log(f"{method}: rejected {e.code}: {e.message}")
      self._deliver(on_result, error(e))
      return

    with self._pending_lock:
      self._pending += 1
    future = self._executor.submit(self._execute, method, work)

    def done(f):
      with self._pending_lock:
        self._pending -= 1
      self._deliver(on_result, f.result())
    future.add_done_callback(done)

  def call(self, method: str, args: dict | None = None, timeout: float | None = None) -> dict:
    """Blocking variant of handle() for scripts and tests; bypasses the dispatcher."""
    try:
      work = self._prepare(method, args)
    except HostError as e:
      return error(e)
    return self._executor.submit(self._execute, method, work).result(timeout=timeout)

  def shutdown(self, wait: bool = True) -> None:
    self._executor.shutdown(wait=wait)
    self.sessions.unload_all()

  def _deliver(self, on_result: ResultCallback, payload: dict) -> None:
    if self.dispatcher is None:
      on_result(payload)
    else:
      self.dispatcher.post(lambda: on_result(payload))

  def _execute(self, method: str, work: Callable[[], Any]) -> dict:
    try:
      return ok(work())
    except HostError as e:
      return error(e)
    except Exception as e:
      log(f"{method}: unexpected error\n{traceback.format_exc()}")
      return error(e)

  def _prepare(self, method: str, args: dict | None) -> Callable[[], Any]:
    if args is None:
      args = {}
    if not isinstance(args, dict):
      raise InputError("Invalid arguments")

    if method == "getModelStatus":
      name = self._slot_name(args)
      return lambda: self.sessions.is_loaded(name)

    if method == "loadModel":
      path = args.get("modelPath")
      if not isinstance(path, str) or not path:
        raise InputError("Model path is required")
      name = self._slot_name(args)

      def load():
        self.sessions.load(name, path)
        return True
      return load

    if method == "unloadModel":
      name = self._slot_name(args)

      def unload():
        self.sessions.unload(name)
        return True
      return unload

    if method == "downloadModel":
      name = self._model_name(args)
      return lambda: self.cache.ensure_available(name)

    if method == "deleteModel":
      name = self._model_name(args)

      def delete():
        self.sessions.unload(name)
        return self.cache.remove(name)
      return delete

    request = TransformRequest.from_args(method, args)
    return lambda: self.orchestrator.run(request)

  def _slot_name(self, args: dict) -> str:
    name = args.get("modelName")
    if name is None or name == "":
      return DEFAULT_MODEL_NAME
    if not isinstance(name, str):
      raise InputError("modelName must be a string", details={"modelName": repr(name)})
    return name

  def _model_name(self, args: dict) -> str:
    name = args.get("modelName")
    if not isinstance(name, str) or not name:
      raise InputError("modelName is required")
    get_descriptor(name, self.orchestrator.cfg)
    return name
