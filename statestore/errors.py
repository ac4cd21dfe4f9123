"""
Structured errors for the state store.

Every error carries a machine-readable code, a message and a details mapping
so the orchestration layer (and the HTTP layer) can tell failures apart
without parsing strings.
"""

from typing import Any, Dict, List, Optional


class StateStoreError(Exception):
    """Base error with structured details."""

    def __init__(self, code: str, message: str, details: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class InvalidPathError(StateStoreError):
    """Malformed path, or a write into a namespace owned by someone else."""

    def __init__(self, path: Any, reason: str):
        super().__init__(
            code="INVALID_PATH",
            message=f"Invalid path {path!r}: {reason}",
            details={"path": path if isinstance(path, str) else repr(path), "reason": reason},
        )


class InvalidValueError(StateStoreError):
    """Value outside the JSON-like value model."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            code="INVALID_VALUE",
            message=f"Invalid value at {path!r}: {reason}",
            details={"path": path, "reason": reason},
        )


class InvalidRecordError(StateStoreError):
    """Malformed fix attempt record. No aggregate was touched."""

    def __init__(self, errors: List[str], record: Optional[Dict[str, Any]] = None):
        super().__init__(
            code="INVALID_RECORD",
            message="Fix attempt record rejected: " + "; ".join(errors),
            details={"errors": errors, "record": record or {}},
        )
        self.errors = errors


class PersistenceCorruptError(StateStoreError):
    """Stored state exists but cannot be parsed."""

    def __init__(self, file_path: str, reason: str, backup_path: Optional[str] = None):
        super().__init__(
            code="STATE_CORRUPT",
            message=f"Persisted state at {file_path} is unreadable: {reason}",
            details={"file": file_path, "reason": reason, "backup": backup_path},
        )
        self.backup_path = backup_path


class PersistenceWriteError(StateStoreError):
    """Save failed. The previous on-disk copy is left as it was."""

    def __init__(self, file_path: str, reason: str, attempts: int = 1, prior_state_intact: bool = True):
        super().__init__(
            code="SAVE_FAILED",
            message=f"Failed to save state to {file_path}: {reason}",
            details={
                "file": file_path,
                "reason": reason,
                "attempts": attempts,
                "prior_state_intact": prior_state_intact,
            },
        )
        self.attempts = attempts
        self.prior_state_intact = prior_state_intact


class ConfigError(StateStoreError):
    """Configuration file or environment value that cannot be used."""

    def __init__(self, source: str, reason: str):
        super().__init__(
            code="INVALID_CONFIG",
            message=f"Invalid configuration in {source}: {reason}",
            details={"source": source, "reason": reason},
        )


class SerializationError(StateStoreError):
    """A single change log value could not be serialized."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            code="SERIALIZATION_FAILED",
            message=f"Could not serialize change for {path!r}: {reason}",
            details={"path": path, "reason": reason},
        )
