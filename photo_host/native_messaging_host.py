#!/usr/bin/env python3
"""
Photo model host, stdin/stdout edition.

The app talks to this process with 4-byte little-endian length-prefixed JSON
messages:

  request   {"id": 7, "method": "upscale", "args": {"imagePath": "...", "scale": 2}}
  response  {"id": 7, "ok": true, "result": "/.../output/upscaled_x2_....png"}
            {"id": 7, "ok": false, "error": {"code": "INVALID_SCALE", "message": "...", "details": ...}}
  event     {"event": "modelProgress", "modelName": "modnet", "progress": 0.25, "status": "Downloading model"}

Requests run on background workers; every frame is written from the main
thread. Prefetch models without serving:

  python -m photo_host.native_messaging_host --download-models [modnet realesrgan_x2 ...]
"""
from __future__ import annotations
import json
import struct
import sys
import threading

from . import config
from .channel import MainThreadDispatcher, MethodChannel
from .errors import HostError, InputError, to_error_payload
from .model_cache import ModelCache
from .orchestrator import TransformOrchestrator
from .progress import ProgressStream
from .sessions import SessionManager


def _read_message():
  raw_len = sys.stdin.buffer.read(4)
  if not raw_len or len(raw_len) < 4:
    return None
  msg_len = struct.unpack("<I", raw_len)[0]
  data = sys.stdin.buffer.read(msg_len)
  if not data:
    return None
  return json.loads(data.decode("utf-8"))


def _send_message(obj: dict):
  data = json.dumps(obj).encode("utf-8")
  sys.stdout.buffer.write(struct.pack("<I", len(data)))
  sys.stdout.buffer.write(data)
  sys.stdout.buffer.flush()


def build_channel(cfg: dict | None = None, dispatcher: MainThreadDispatcher | None = None,
                  progress: ProgressStream | None = None) -> MethodChannel:
  cfg = cfg if cfg is not None else config.load_cfg()
  progress = progress or ProgressStream()
  cache = ModelCache(config.MODELS_DIR, config.BUNDLED_MODELS_DIR, cfg=cfg, progress=progress)
  sessions = SessionManager(cache, cfg=cfg)
  orchestrator = TransformOrchestrator(cache, sessions, cfg=cfg, output_dir=config.OUTPUT_DIR)
  return MethodChannel(orchestrator, sessions, cache, dispatcher=dispatcher, max_workers=cfg["max_workers"])


def _dispatch(channel: MethodChannel, msg) -> None:
  if not isinstance(msg, dict):
    _send_message({"id": None, "ok": False, "error": InputError("Message must be a JSON object").to_payload()})
    return
  msg_id = msg.get("id")
  method = str(msg.get("method") or msg.get("cmd") or "")
  args = msg.get("args")
  if args is None:
    args = msg.get("arguments")
  channel.handle(method, args, lambda payload: _send_message({"id": msg_id, **payload}))


def _download_models(names: list[str]) -> dict:
  cfg = config.load_cfg()
  cache = ModelCache(config.MODELS_DIR, config.BUNDLED_MODELS_DIR, cfg=cfg)
  imported, failed = [], {}
  for name in names:
    try:
      cache.ensure_available(name)
      imported.append(name)
    except HostError as e:
      failed[name] = to_error_payload(e)
  return {"imported": imported, "failed": failed}


def main(argv: list[str] | None = None):
  argv = sys.argv[1:] if argv is None else argv
  if "--download-models" in argv:
    names = [a for a in argv if not a.startswith("--")] or config.model_names()
    result = _download_models(names)
    print(json.dumps({"ok": not result["failed"], **result}))
    return

  dispatcher = MainThreadDispatcher()
  progress = ProgressStream()
  channel = build_channel(dispatcher=dispatcher, progress=progress)
  progress.subscribe(lambda ev: dispatcher.post(lambda: _send_message({"event": "modelProgress", **ev.to_payload()})))
  stop = threading.Event()

  def reader():
    while True:
      try:
        msg = _read_message()
      except ValueError as e:
        config.log(f"bad message: {e}")
        dispatcher.post(lambda: _dispatch(channel, None))
        continue
      if msg is None:
        dispatcher.post(stop.set)
        return
      dispatcher.post(lambda m=msg: _dispatch(channel, m))

  threading.Thread(target=reader, name="photo-host-reader", daemon=True).start()
  config.log("host started")
  while not (stop.is_set() and channel.pending == 0):
    dispatcher.run_once(timeout=0.2)
  channel.shutdown(wait=True)
  dispatcher.run_pending()
  config.log("host stopped")


if __name__ == "__main__":
  main()
