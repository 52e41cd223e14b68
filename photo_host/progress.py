from __future__ import annotations
import threading
from dataclasses import dataclass
from typing import Callable

from .config import log


@dataclass(frozen=True)
class ProgressEvent:
  model_name: str
  progress: float
  status: str

  def to_payload(self) -> dict:
    return {"modelName": self.model_name, "progress": self.progress, "status": self.status}


class ProgressStream:
  """Push-only channel for model download/extract progress. No acknowledgment, no backpressure."""

  def __init__(self):
    self._subscribers: list[Callable[[ProgressEvent], None]] = []
    self._lock = threading.Lock()

  def subscribe(self, callback: Callable[[ProgressEvent], None]) -> Callable[[], None]:
    with self._lock:
      self._subscribers.append(callback)

    def unsubscribe():
      with self._lock:
        if callback in self._subscribers:
          self._subscribers.remove(callback)
    return unsubscribe

  def publish(self, event: ProgressEvent) -> None:
    with self._lock:
      subscribers = list(self._subscribers)
    for cb in subscribers:
      try:
        cb(event)
      except Exception as e:
        log(f"progress subscriber failed for {event.model_name}: {e}")
