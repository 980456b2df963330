from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION_ERROR = "validation_error"
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    REQUEST_FAILED = "request_failed"
    PERSISTENCE_DEGRADED = "persistence_degraded"
    STORAGE_WRITE_FAILED = "storage_write_failed"


@dataclass(frozen=True, slots=True)
class ChatError:
    kind: ErrorKind
    message: str

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.REQUEST_FAILED

    @property
    def requires_credential(self) -> bool:
        return self.kind in (ErrorKind.MISSING_CREDENTIAL, ErrorKind.INVALID_CREDENTIAL)

    @property
    def appends_message(self) -> bool:
        return self.kind not in (ErrorKind.VALIDATION_ERROR, ErrorKind.PERSISTENCE_DEGRADED)


class ParleyError(Exception):
    kind: ErrorKind = ErrorKind.REQUEST_FAILED

    def to_chat_error(self) -> ChatError:
        return ChatError(kind=self.kind, message=str(self))


class ValidationError(ParleyError):
    kind = ErrorKind.VALIDATION_ERROR


class StorageWriteFailed(ParleyError):
    kind = ErrorKind.STORAGE_WRITE_FAILED


class ConfigError(ParleyError):
    kind = ErrorKind.VALIDATION_ERROR
