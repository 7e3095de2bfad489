"""
RBAC Core Exception Hierarchy

All exceptions include code, message, and details so callers can map them
to stable responses and the audit trail can record them verbatim.

Exception Hierarchy:
    RBACError
    ├── ValidationError      malformed permission, unknown role, cyclic inheritance
    ├── AuthorizationError   caller lacks the permission for a mutation or query
    ├── NotFoundError        role or assignment absent on explicit lookup
    └── DependencyError      cache store or persistent store unreachable / timed out
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

INSUFFICIENT_PERMISSIONS = "insufficient permissions"


class RBACError(Exception):
    """
    Base exception for all RBAC core errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
    """

    default_code: str = "RBAC_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(RBACError):
    """Input rejected before any side effect."""
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, value: Optional[Any] = None, **kwargs):
        details = kwargs.pop("details", {})
        if value is not None:
            details["value"] = value
        super().__init__(message, details=details, **kwargs)


class AuthorizationError(RBACError):
    """
    Caller lacks the permission required for the requested operation.

    The message is fixed so it never leaks role names, catalogs or whether
    the target exists.
    """
    default_code = "FORBIDDEN"

    def __init__(self, message: str = INSUFFICIENT_PERMISSIONS, **kwargs):
        super().__init__(message, **kwargs)


class NotFoundError(RBACError):
    """Role or assignment absent."""
    default_code = "NOT_FOUND"


class DependencyError(RBACError):
    """External collaborator (cache store, persistent store) failed or timed out."""
    default_code = "DEPENDENCY_UNAVAILABLE"

    def __init__(self, message: str, dependency: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if dependency:
            details["dependency"] = dependency
        self.dependency = dependency
        super().__init__(message, details=details, **kwargs)


ERROR_STATUS_CODES = {
    ValidationError: 422,
    AuthorizationError: 403,
    NotFoundError: 404,
    DependencyError: 503,
}


def status_code_for(error: RBACError) -> int:
    """HTTP status for an RBAC error, most specific class first."""
    for cls in type(error).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500
