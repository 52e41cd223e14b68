"""
Error taxonomy for the photo model host.

Every failure that reaches the method channel is a HostError (or is mapped to
one) and is encoded as a {code, message, details} triple. Codes are stable
strings the Flutter side switches on.
"""
from __future__ import annotations
from typing import Any


class HostError(Exception):
  code = "IMAGE_PROCESSING_ERROR"

  def __init__(self, message: str, details: Any = None):
    super().__init__(message)
    self.message = message
    self.details = details

  def to_payload(self) -> dict:
    return {"code": self.code, "message": self.message, "details": self.details}


# Input

class InputError(HostError):
  code = "INVALID_ARGUMENT"


class InvalidImageError(InputError):
  code = "INVALID_IMAGE"


class InvalidScaleError(InputError):
  code = "INVALID_SCALE"


# Model acquisition and loading

class ModelUnavailableError(HostError):
  code = "MODEL_NOT_LOADED"


class ModelNotFoundError(ModelUnavailableError):
  code = "MODEL_NOT_FOUND"


class DownloadError(ModelUnavailableError):
  code = "MODEL_DOWNLOAD_ERROR"


class ExtractError(ModelUnavailableError):
  # Reported to the app as a download failure; the archive is part of the fetch.
  code = "MODEL_DOWNLOAD_ERROR"


class ModelLoadError(ModelUnavailableError):
  code = "MODEL_LOAD_ERROR"


class UnloadError(HostError):
  code = "UNLOAD_ERROR"


# Execution

class InferenceError(HostError):
  code = "MODEL_PREDICTION_ERROR"


class ProcessingError(HostError):
  code = "IMAGE_PROCESSING_ERROR"


class EncodeError(ProcessingError):
  pass


class DecodeError(ProcessingError):
  pass


class PersistenceError(HostError):
  code = "SAVE_ERROR"


class NotImplementedMethodError(HostError):
  code = "NOT_IMPLEMENTED"


def to_error_payload(exc: BaseException) -> dict:
  if isinstance(exc, HostError):
    return exc.to_payload()
  return {
    "code": ProcessingError.code,
    "message": str(exc) or exc.__class__.__name__,
    "details": exc.__class__.__name__,
  }
