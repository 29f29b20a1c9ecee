"""
Error taxonomy for the remediation MCP server.

Every failure that reaches a tool caller is a RemediateError carrying a
category, a severity and enough context to act on it. CircuitOpenError
lives in circuit_breaker.py and deliberately sits outside this hierarchy.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Broad origin of an error."""
    KUBERNETES = "kubernetes"
    NETWORK = "network"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    OPERATION = "operation"
    AI_SERVICE = "ai_service"
    STORAGE = "storage"
    MCP_PROTOCOL = "mcp_protocol"
    UNKNOWN = "unknown"


class ErrorSeverity(Enum):
    """How much an error affects the current operation."""
    LOW = "low"            # Operation can continue
    MEDIUM = "medium"      # Recoverable by the caller
    HIGH = "high"          # Operation aborted
    CRITICAL = "critical"  # Server-wide impact


class RemediateError(Exception):
    """Base error surfaced to tool callers."""

    category = ErrorCategory.UNKNOWN
    severity = ErrorSeverity.HIGH

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        component: Optional[str] = None,
        session_id: Optional[str] = None,
        suggested_actions: Optional[List[str]] = None,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.component = component
        self.session_id = session_id
        self.suggested_actions = suggested_actions or []
        if category is not None:
            self.category = category
        if severity is not None:
            self.severity = severity
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "operation": self.operation,
            "component": self.component,
            "sessionId": self.session_id,
            "suggestedActions": self.suggested_actions,
            "timestamp": self.timestamp.isoformat()
        }


class ValidationError(RemediateError):
    """Tool input rejected before any work started."""
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.MEDIUM


class ConfigurationError(RemediateError):
    """Missing or malformed runtime configuration."""
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.HIGH


class SessionStorageError(RemediateError):
    """Session directory or session file could not be used."""
    category = ErrorCategory.STORAGE
    severity = ErrorSeverity.HIGH


class InvestigationError(RemediateError):
    """The investigation loop could not reach a terminal analysis."""
    category = ErrorCategory.AI_SERVICE
    severity = ErrorSeverity.HIGH


class KubectlError(RemediateError):
    """A kubectl invocation failed."""
    category = ErrorCategory.KUBERNETES
    severity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, command: str = "", suggestion: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.command = command
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["command"] = self.command
        data["suggestion"] = self.suggestion
        return data
