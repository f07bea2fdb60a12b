"""
Unified error hierarchy for the portal orchestration engine.

Every error raised by the core derives from ``OrchestrationError`` and
carries an ``ErrorContext`` (category, severity, details, HTTP status) so
the API layer and the session transcript can report it without string
parsing.

Taxonomy:
- InvalidTransition / NotAwaitingApproval / AlreadyDecided — node state
  does not permit the requested operation
- ConflictingDecision — a different approval decision after a final one
- DuplicateArtifact / NotFound — artifact store and lookup failures
- RunnerError — wraps an Agent Runner failure for a single node
- SessionTerminated — mutation attempted on a closed session
- InvalidGraph — graph definition failed validation
- StorageUnavailable — persistence boundary is down (fatal to a tick)
"""

import logging
import random
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums & Constants
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Scheduling cannot continue
    ERROR = "error"            # Operation failed, caller impacted
    WARNING = "warning"        # Rejected request, state unchanged


class ErrorCategory(Enum):
    """Error categories for classification and routing."""
    VALIDATION = "validation"           # Malformed graph or request
    STATE = "state"                     # Operation not allowed in current state
    CONFLICT = "conflict"               # Competing write (decision, artifact)
    NOT_FOUND = "not_found"             # Unknown id
    EXTERNAL = "external"               # Agent runner failure
    RESOURCE = "resource"               # Storage unavailable / exhausted
    INTERNAL = "internal"               # Anything else


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True
    http_status: int = 500

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (excludes stack trace)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
            "http_status": self.http_status,
        }


@dataclass
class RetryConfig:
    """Backoff configuration for ticks that hit a fatal storage error."""
    max_retries: int = 5
    initial_delay_ms: int = 250
    max_delay_ms: int = 30000
    exponential_base: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay in seconds for the given attempt number."""
        delay = min(
            self.initial_delay_ms * (self.exponential_base ** attempt),
            self.max_delay_ms
        )

        if self.jitter:
            # 0-25% jitter
            delay += delay * random.uniform(0, 0.25)

        return delay / 1000.0


# ============================================================================
# Exception Hierarchy
# ============================================================================

class OrchestrationError(Exception):
    """Base exception for all orchestration errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
        http_status: int = 500,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.http_status = http_status
        self.context = ErrorContext(
            severity=severity,
            category=category,
            message=message,
            details=self.details,
            stack_trace=traceback.format_exc(),
            is_recoverable=is_recoverable,
            http_status=http_status,
        )
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, tagged with the concrete error type."""
        data = self.context.to_dict()
        data["error"] = type(self).__name__
        return data


# ============================================================================
# State errors
# ============================================================================

class InvalidTransition(OrchestrationError):
    """Node (or graph) state does not permit the requested operation."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.STATE)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 409)
        super().__init__(message, **kwargs)


class NotAwaitingApproval(InvalidTransition):
    """A decision was submitted for a node that is not awaiting one."""
    pass


class AlreadyDecided(InvalidTransition):
    """The node already carries a final (true) approval decision."""
    pass


class SessionTerminated(InvalidTransition):
    """Operation attempted on a session that reached a terminal state."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Conflict errors
# ============================================================================

class ConflictingDecision(OrchestrationError):
    """A different decision was submitted after one was already final.

    Carries both decisions so they can be reconciled manually.
    """
    def __init__(
        self,
        node_id: str,
        original: bool,
        rejected: bool,
        original_actor: Optional[str] = None,
        actor: Optional[str] = None,
    ):
        self.node_id = node_id
        self.original = original
        self.rejected = rejected
        super().__init__(
            f"Node {node_id!r} already decided {original}; rejected new decision {rejected}",
            category=ErrorCategory.CONFLICT,
            severity=ErrorSeverity.WARNING,
            http_status=409,
            details={
                "node_id": node_id,
                "original_decision": original,
                "original_actor": original_actor,
                "rejected_decision": rejected,
                "actor": actor,
            },
        )


class DuplicateArtifact(OrchestrationError):
    """The source node already produced an artifact."""
    def __init__(self, source_node_id: str, existing_id: str):
        self.source_node_id = source_node_id
        self.existing_id = existing_id
        super().__init__(
            f"Node {source_node_id!r} already has artifact {existing_id!r}",
            category=ErrorCategory.CONFLICT,
            severity=ErrorSeverity.WARNING,
            http_status=409,
            details={"source_node_id": source_node_id, "artifact_id": existing_id},
        )


# ============================================================================
# Lookup / validation errors
# ============================================================================

class NotFound(OrchestrationError):
    """Unknown session, graph, node or artifact id."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 404)
        super().__init__(message, **kwargs)


class InvalidGraph(OrchestrationError):
    """Graph definition failed validation."""
    def __init__(self, message: str, problems: Optional[List[str]] = None, **kwargs):
        self.problems = list(problems or [])
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("http_status", 422)
        kwargs.setdefault("details", {"problems": self.problems})
        super().__init__(message, **kwargs)


# ============================================================================
# External / resource errors
# ============================================================================

class RunnerError(OrchestrationError):
    """Agent Runner failure, localized to one node."""
    def __init__(self, node_id: str, reason: str, **kwargs):
        self.node_id = node_id
        self.reason = reason
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        kwargs.setdefault("http_status", 502)
        kwargs.setdefault("details", {"node_id": node_id, "reason": reason})
        super().__init__(f"Agent runner failed for {node_id!r}: {reason}", **kwargs)


class StorageUnavailable(OrchestrationError):
    """Persistence boundary cannot be reached."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.RESOURCE)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("http_status", 503)
        super().__init__(message, **kwargs)
