"""
Remediation session model and file-based persistence.

Each investigation is one JSON file, <session_id>.json, inside the session
directory. The investigation loop owns its session exclusively while it
runs; files are replaced atomically on every save.
"""

import json
import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from config import RuntimeConfig
from errors import SessionStorageError


logger = logging.getLogger(__name__)

SESSION_ID_PATTERN = re.compile(r"^rem_[0-9A-Za-z]+_[0-9a-f]+$")


class SessionStatus(Enum):
    """Lifecycle of a remediation session."""
    INVESTIGATING = "investigating"
    ANALYSIS_COMPLETE = "analysis_complete"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    FAILED = "failed"


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(value)
    return datetime.now()


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class DataRequest:
    """A read-only cluster query the AI asked for."""
    type: str
    resource: str
    rationale: str = ""
    namespace: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "resource": self.resource,
            "rationale": self.rationale
        }
        if self.namespace:
            data["namespace"] = self.namespace
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DataRequest":
        # Non-string values (null included) count as missing
        def text(key: str) -> str:
            value = data.get(key)
            return value.strip() if isinstance(value, str) else ""

        return cls(
            type=text("type"),
            resource=text("resource"),
            rationale=text("rationale"),
            namespace=text("namespace") or None
        )

    @property
    def key(self) -> str:
        return f"{self.type}_{self.resource}"


@dataclass
class InvestigationIteration:
    """One gather-ask-decide cycle. Never modified once appended."""
    step: int
    ai_analysis: str
    data_requests: List[DataRequest] = field(default_factory=list)
    gathered_data: Dict[str, Any] = field(default_factory=dict)
    complete: bool = False
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "aiAnalysis": self.ai_analysis,
            "dataRequests": [r.to_dict() for r in self.data_requests],
            "gatheredData": self.gathered_data,
            "complete": self.complete,
            "timestamp": self.timestamp.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InvestigationIteration":
        return cls(
            step=data["step"],
            ai_analysis=data.get("aiAnalysis", ""),
            data_requests=[DataRequest.from_dict(r) for r in data.get("dataRequests", [])],
            gathered_data=data.get("gatheredData", {}),
            complete=data.get("complete", False),
            timestamp=_parse_time(data.get("timestamp"))
        )


@dataclass
class RemediateSession:
    """Persistent state of one investigation."""
    session_id: str
    issue: str
    mode: str = "manual"
    initial_context: Dict[str, Any] = field(default_factory=dict)
    policy: Optional[str] = None
    iterations: List[InvestigationIteration] = field(default_factory=list)
    status: SessionStatus = SessionStatus.INVESTIGATING
    final_analysis: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created: datetime = field(default_factory=datetime.now)
    updated: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "issue": self.issue,
            "mode": self.mode,
            "initialContext": self.initial_context,
            "policy": self.policy,
            "iterations": [i.to_dict() for i in self.iterations],
            "status": self.status.value,
            "finalAnalysis": self.final_analysis,
            "error": self.error,
            "created": self.created.isoformat(),
            "updated": self.updated.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemediateSession":
        return cls(
            session_id=data["sessionId"],
            issue=data["issue"],
            mode=data.get("mode", "manual"),
            initial_context=data.get("initialContext") or {},
            policy=data.get("policy"),
            iterations=[InvestigationIteration.from_dict(i) for i in data.get("iterations", [])],
            status=SessionStatus(data.get("status", "investigating")),
            final_analysis=data.get("finalAnalysis"),
            error=data.get("error"),
            created=_parse_time(data.get("created")),
            updated=_parse_time(data.get("updated"))
        )


def generate_session_id() -> str:
    """rem_<UTC timestamp>_<16 hex chars>"""
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"rem_{timestamp}_{secrets.token_hex(8)}"


# ============================================================================
# SESSION DIRECTORY
# ============================================================================

def resolve_session_directory(args: Dict[str, Any], config: RuntimeConfig) -> str:
    """Session directory from tool arguments, falling back to configuration."""
    session_dir = args.get("sessionDir") or config.session_dir
    if not session_dir:
        raise SessionStorageError(
            "Session directory must be specified via the sessionDir argument "
            "or the REMEDIATE_SESSION_DIR environment variable",
            operation="resolve_session_directory",
            component="sessions",
            suggested_actions=["Set REMEDIATE_SESSION_DIR to a writable directory"]
        )
    return session_dir


def validate_session_directory(session_dir: Union[str, Path], require_write: bool = False) -> Path:
    """Check the directory exists, is a directory and (optionally) is writable."""
    path = Path(session_dir)

    if not path.exists():
        raise SessionStorageError(
            f"Session directory does not exist: {session_dir}",
            operation="validate_session_directory",
            component="sessions"
        )
    if not path.is_dir():
        raise SessionStorageError(
            f"Session directory path is not a directory: {session_dir}",
            operation="validate_session_directory",
            component="sessions"
        )

    try:
        next(path.iterdir(), None)
        if require_write:
            probe = path / f".write-test-{secrets.token_hex(4)}"
            probe.write_text("test")
            probe.unlink()
    except OSError as e:
        raise SessionStorageError(
            f"Session directory is not accessible: {session_dir}. Error: {e}",
            operation="validate_session_directory",
            component="sessions",
            suggested_actions=["Check directory permissions"]
        )

    return path


# ============================================================================
# SESSION STORE
# ============================================================================

class SessionStore:
    """JSON-file session persistence."""

    def __init__(self, session_dir: Union[str, Path]):
        self.session_dir = Path(session_dir)

    def _path(self, session_id: str) -> Path:
        return self.session_dir / f"{session_id}.json"

    def create_session(
        self,
        issue: str,
        context: Optional[Dict[str, Any]] = None,
        mode: str = "manual",
        policy: Optional[str] = None
    ) -> RemediateSession:
        """Create and persist a new investigating session."""
        session = RemediateSession(
            session_id=generate_session_id(),
            issue=issue,
            mode=mode,
            initial_context=context or {},
            policy=policy
        )
        self._write(session)
        logger.info(f"Investigation session created: {session.session_id}")
        return session

    def load_session(self, session_id: str) -> Optional[RemediateSession]:
        """Load a session, or None if no such session exists."""
        if not isinstance(session_id, str) or not SESSION_ID_PATTERN.match(session_id):
            return None

        path = self._path(session_id)
        if not path.exists():
            return None

        try:
            with open(path, "r", encoding="utf-8") as f:
                return RemediateSession.from_dict(json.load(f))
        except (OSError, ValueError, KeyError) as e:
            raise SessionStorageError(
                f"Failed to read session {session_id}: {e}",
                operation="load_session",
                component="sessions",
                session_id=session_id
            )

    def save_session(self, session: RemediateSession) -> None:
        """Persist session, stamping its update time."""
        session.updated = datetime.now()
        self._write(session)

    def list_sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Summaries of the most recently updated sessions."""
        files = sorted(
            self.session_dir.glob("rem_*.json"),
            key=lambda p: p.stat().st_mtime,
            reverse=True
        )

        summaries = []
        for path in files[:limit]:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable session file {path.name}: {e}")
                continue
            summaries.append({
                "sessionId": data.get("sessionId"),
                "issue": data.get("issue"),
                "status": data.get("status"),
                "iterations": len(data.get("iterations", [])),
                "updated": data.get("updated")
            })
        return summaries

    def _write(self, session: RemediateSession) -> None:
        path = self._path(session.session_id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(session.to_dict(), f, indent=2, default=str)
            os.replace(tmp_path, path)
        except OSError as e:
            raise SessionStorageError(
                f"Failed to write session {session.session_id}: {e}",
                operation="save_session",
                component="sessions",
                session_id=session.session_id
            )
