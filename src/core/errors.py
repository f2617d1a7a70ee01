"""Supervisor error definitions."""

import hashlib
from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Expected, logged and ignored
    MEDIUM = "medium"     # Operation failed, caller decides
    HIGH = "high"         # Operator must act
    CRITICAL = "critical" # Supervising process cannot continue


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    TRANSIENT = "transient"       # Daemon busy or restarting
    PERMANENT = "permanent"       # Bad config, duplicate name
    EXTERNAL = "external"         # Daemon-side failure
    VALIDATION = "validation"     # Input validation failure


class DaemonErrorCode(Enum):
    """Typed failure codes reported by a process-control daemon."""
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    LAUNCH_FAILED = "launch_failed"
    UNKNOWN = "unknown"


class SupervisorError(Exception):
    """Base exception for all supervisor errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXTERNAL,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}

    def fingerprint(self) -> str:
        """Generate error fingerprint for deduplication."""
        components = [
            self.__class__.__name__,
            self.category.value,
            str(self.context.get("app", "")),
            str(self.context.get("code", "")),
        ]
        return hashlib.sha256(":".join(components).encode()).hexdigest()[:16]

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "fingerprint": self.fingerprint(),
        }


class ConfigError(SupervisorError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class DaemonConnectionError(SupervisorError, ConnectionError):
    """The process-control daemon could not be reached."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.TRANSIENT)
        super().__init__(message, **kwargs)


class DaemonRequestError(SupervisorError):
    """A daemon request was rejected."""

    def __init__(
        self,
        message: str,
        app: Optional[str] = None,
        code: DaemonErrorCode = DaemonErrorCode.UNKNOWN,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.code = code
        self.context["app"] = app
        self.context["code"] = code.value

    @property
    def not_found(self) -> bool:
        return self.code is DaemonErrorCode.NOT_FOUND


class StartError(DaemonRequestError):
    """The daemon rejected a launch request."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.PERMANENT)
        super().__init__(message, **kwargs)


class StopError(DaemonRequestError):
    """The daemon failed to delete a group. Logged, never raised to callers."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        super().__init__(message, **kwargs)


class ListError(DaemonRequestError):
    """The daemon failed to list its process groups."""
