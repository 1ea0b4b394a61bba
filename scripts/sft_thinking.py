#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.10,<3.14"
# dependencies = ["fastmcp>=2.10", "pydantic>=2.0.0", "starlette"]
# ///
"""
Sequential thinking: in-memory reasoning sessions with branches and revisions.

Architecture:
  ThinkingEngine → SessionStore → Session → Branch / Thought
  State is volatile: one engine per process (or per test), nothing on disk.
  CLI and MCP are thin adapters over the _*_impl functions.

Usage:
  sft_thinking.py classify "thought"                      # Infer a thought type
  sft_thinking.py replay [FILE] [-f json|md]              # Replay JSONL thoughts, print summary
  sft_thinking.py mcp-stdio                               # MCP server over stdio
  sft_thinking.py mcp-http [-H HOST] [-p PORT] [-t http]  # MCP server over HTTP or SSE
"""

# =============================================================================
# EXPOSED: tools available via MCP
# =============================================================================

EXPOSED = [
    "sequential_thinking",
    "get_thinking_summary",
    "list_thinking_sessions",
    "switch_thinking_branch",
    "complete_thinking_session",
    "set_thinking_status",
    "export_thinking_session",
]

# =============================================================================
# IMPORTS
# =============================================================================

import argparse
import json
import os
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

# =============================================================================
# LOGGING (TSV format)
# =============================================================================
_LEVELS = {"TRACE": 5, "DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "FATAL": 50}
_THRESHOLD = _LEVELS.get(os.environ.get("SFB_LOG_LEVEL", "INFO"), 20)
_LOG_DIR = os.environ.get("SFB_LOG_DIR", "")
_SCRIPT = Path(__file__).stem
_LOG = (
    Path(_LOG_DIR) / f"{_SCRIPT}_log.tsv"
    if _LOG_DIR
    else Path(__file__).parent / f"{_SCRIPT}_log.tsv"
)
_HEADER = "#timestamp\tscript\tlevel\tevent\tmessage\tdetail\tmetrics\ttrace\n"


def _log(
    level: str,
    event: str,
    msg: str,
    *,
    detail: str = "",
    metrics: str = "",
    trace: str = "",
):
    """Append TSV log line. Logging never crashes the main flow."""
    if _LEVELS.get(level, 20) < _THRESHOLD:
        return
    try:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        write_header = not _LOG.exists()
        with open(_LOG, "a") as f:
            if write_header:
                f.write(_HEADER)
            f.write(
                f"{ts}\t{_SCRIPT}\t{level}\t{event}\t{msg}\t{detail}\t{metrics}\t{trace}\n"
            )
    except OSError:
        pass


# =============================================================================
# CONFIGURATION
# =============================================================================

CONFIG = {
    "version": "1.1.0",
    "server_name": "sft-thinking",
    "default_branch": "main",
    "main_branch_description": "Main thinking branch",
    "title_words": 6,
    "summary_placeholder": "Starting analysis...",
    "host": os.environ.get("SFB_THINK_HOST", "127.0.0.1"),
    "port": int(os.environ.get("SFB_THINK_PORT", "3000")),
    "valid_formats": {"json", "md"},
    "valid_transports": {"http", "sse"},
}

# =============================================================================
# DATA MODEL
# =============================================================================


class ThoughtType(str, Enum):
    OBSERVATION = "observation"
    ANALYSIS = "analysis"
    HYPOTHESIS = "hypothesis"
    VERIFICATION = "verification"
    REFINEMENT = "refinement"
    CONCLUSION = "conclusion"
    QUESTION = "question"
    INSIGHT = "insight"
    REFLECTION = "reflection"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


def _short_id() -> str:
    """Generate a short unique ID (8 hex chars)."""
    return uuid.uuid4().hex[:8]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    return ts.isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class Thought:
    """One immutable reasoning step. Revisions are new thoughts, never edits."""

    id: str
    step_number: int
    thought: str
    thought_type: ThoughtType
    branch_id: str
    is_revision: bool = False
    revises_step: int | None = None
    branch_from_step: int | None = None
    confidence: float | None = None
    tags: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "step_number": self.step_number,
            "thought": self.thought,
            "thought_type": self.thought_type.value,
            "branch_id": self.branch_id,
            "is_revision": self.is_revision,
            "revises_step": self.revises_step,
            "branch_from_step": self.branch_from_step,
            "confidence": self.confidence,
            "tags": list(self.tags),
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class Branch:
    id: str
    name: str
    parent_branch_id: str | None = None
    branch_from_step_id: str | None = None
    description: str | None = None
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parent_branch_id": self.parent_branch_id,
            "branch_from_step_id": self.branch_from_step_id,
            "description": self.description,
            "created_at": _iso(self.created_at),
        }


@dataclass
class Session:
    """Container for every branch and thought of one problem.

    `thoughts` is append-only and shared by all branches; each thought carries
    its branch id. `active_branch_id` always names a branch in `branches`.
    """

    id: str
    title: str = ""
    problem: str = ""
    thoughts: list[Thought] = field(default_factory=list)
    branches: list[Branch] = field(default_factory=list)
    active_branch_id: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    # Reentrant: complete() appends through the normal path while holding it.
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def active_branch(self) -> Branch:
        return self.branch_by_id(self.active_branch_id)

    def branch_by_id(self, branch_id: str) -> Branch | None:
        for b in self.branches:
            if b.id == branch_id:
                return b
        return None

    def branch_by_name(self, name: str) -> Branch | None:
        for b in self.branches:
            if b.name == name:
                return b
        return None

    def branch_thoughts(self, branch_id: str) -> list[Thought]:
        return [t for t in self.thoughts if t.branch_id == branch_id]

    def touch(self):
        self.updated_at = _now()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "problem": self.problem,
            "status": self.status.value,
            "active_branch_id": self.active_branch_id,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "branches": [b.to_dict() for b in self.branches],
            "thoughts": [t.to_dict() for t in self.thoughts],
        }


# =============================================================================
# REQUEST MODELS (boundary validation, snake_case or camelCase keys)
# =============================================================================


class _Request(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class ThoughtRequest(_Request):
    thought: str = Field(..., description="The thinking step content")
    next_thought_needed: bool = Field(
        ..., description="Whether another thought step is needed"
    )
    session_id: str | None = Field(None, description="Session to continue (new if unknown)")
    thought_type: ThoughtType | None = Field(
        None, description="Explicit thought type; inferred from text when omitted"
    )
    is_revision: bool = Field(False, description="Whether this revises earlier thinking")
    revises_step: int | None = Field(None, ge=1, description="Step number being revised")
    branch_id: str | None = Field(None, description="Existing branch to continue on")
    branch_from_step: int | None = Field(
        None, ge=1, description="Step on the current branch the new branch forks from"
    )
    new_branch_name: str | None = Field(None, description="Create and switch to this branch")
    confidence: float | None = Field(None, ge=0.0, le=1.0, description="Confidence 0-1")
    tags: list[str] = Field(default_factory=list, description="Free-text labels")


class StatusRequest(_Request):
    session_id: str = Field(..., description="Session to update")
    status: SessionStatus = Field(..., description="active, paused, completed, abandoned")


# =============================================================================
# CLASSIFICATION
# =============================================================================

_QUESTION_PREFIXES = ("what", "how", "why")

# Order matters: first match wins, question is checked before all of these.
_CLASSIFICATION_RULES: list[tuple[ThoughtType, tuple[str, ...]]] = [
    (ThoughtType.OBSERVATION, ("i notice", "i see", "observe")),
    (ThoughtType.CONCLUSION, ("therefore", "in conclusion", "finally")),
    (ThoughtType.HYPOTHESIS, ("perhaps", "maybe", "hypothesis")),
    (ThoughtType.VERIFICATION, ("verify", "test", "check")),
    (ThoughtType.INSIGHT, ("insight", "realize", "aha")),
    (ThoughtType.REFINEMENT, ("refine", "improve", "better")),
    (ThoughtType.REFLECTION, ("reflect", "thinking about")),
]


def classify_thought(text: str) -> ThoughtType:
    """Infer a thought type from keywords. Falls back to analysis."""
    lower = text.lower()
    if "?" in lower or lower.startswith(_QUESTION_PREFIXES):
        return ThoughtType.QUESTION
    for thought_type, keywords in _CLASSIFICATION_RULES:
        if any(k in lower for k in keywords):
            return thought_type
    return ThoughtType.ANALYSIS


def _make_title(text: str) -> str:
    words = text.split(" ")
    limit = CONFIG["title_words"]
    title = " ".join(words[:limit])
    return title + "..." if len(words) > limit else title


# =============================================================================
# SESSION ENGINE
# =============================================================================


class SessionStore:
    """Session id → Session map owned by one engine."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def add(self, session: Session) -> Session:
        """Insert unless the id is already taken; return whichever is stored."""
        with self._lock:
            return self._sessions.setdefault(session.id, session)

    def values(self) -> list[Session]:
        with self._lock:
            return list(self._sessions.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions


class ThinkingEngine:
    """Session/branch/thought bookkeeping. Pure in-memory, no I/O besides logging.

    Not-found conditions come back as None/False, never as exceptions.
    """

    def __init__(self, store: SessionStore | None = None):
        self.store = store if store is not None else SessionStore()

    # --- sessions ---

    def get_or_create_session(
        self, session_id: str | None = None, seed: str | None = None
    ) -> Session:
        if session_id:
            existing = self.store.get(session_id)
            if existing is not None:
                return existing

        main = Branch(
            id=_short_id(),
            name=CONFIG["default_branch"],
            description=CONFIG["main_branch_description"],
        )
        session = Session(
            id=session_id or str(uuid.uuid4()),
            title=_make_title(seed) if seed else "",
            problem=seed or "",
            branches=[main],
            active_branch_id=main.id,
        )
        stored = self.store.add(session)
        if stored is session:
            _log("INFO", "session_create", f"Created session {session.id}")
        return stored

    def get_session(self, session_id: str) -> Session | None:
        return self.store.get(session_id)

    def list_sessions(self) -> list[dict]:
        return [
            {
                "id": s.id,
                "title": s.title,
                "status": s.status.value,
                "step_count": len(s.thoughts),
            }
            for s in self.store.values()
        ]

    # --- writes ---

    def append_thought(self, request: ThoughtRequest) -> dict:
        session = self.get_or_create_session(request.session_id, request.thought)
        with session.lock:
            if not session.thoughts and not session.problem:
                session.problem = request.thought
                session.title = _make_title(request.thought)

            branch_from_step = None
            if request.new_branch_name:
                branch = self.create_branch(
                    session, request.new_branch_name, request.branch_from_step
                )
                session.active_branch_id = branch.id
                branch_from_step = request.branch_from_step
            elif request.branch_id:
                self._activate_branch_directive(session, request.branch_id)

            branch = session.active_branch
            branch_thoughts = session.branch_thoughts(branch.id)
            step_number = len(branch_thoughts) + 1

            if request.is_revision and request.revises_step is not None:
                if not any(t.step_number == request.revises_step for t in branch_thoughts):
                    _log(
                        "WARN",
                        "revise_unknown_step",
                        f"Step {request.revises_step} not on branch '{branch.name}'",
                        detail=f"session={session.id}",
                    )

            thought = Thought(
                id=_short_id(),
                step_number=step_number,
                thought=request.thought,
                thought_type=request.thought_type or classify_thought(request.thought),
                branch_id=branch.id,
                is_revision=request.is_revision,
                revises_step=request.revises_step,
                branch_from_step=branch_from_step,
                confidence=request.confidence,
                tags=tuple(request.tags),
                timestamp=_now(),
            )
            session.thoughts.append(thought)
            session.touch()

            result = {
                "session_id": session.id,
                "step_number": thought.step_number,
                "total_steps": len(session.thoughts),
                "active_branch": branch.name,
                "branch_count": len(session.branches),
                "thought_recorded": thought.thought,
                "thought_type": thought.thought_type.value,
                "is_revision": thought.is_revision,
                "next_thought_needed": request.next_thought_needed,
                "progress": self.progress(session),
            }

        _log(
            "INFO",
            "think",
            f"#{step_number} on {branch.name} in {session.id}",
            detail=f"type={thought.thought_type.value} revision={thought.is_revision}",
        )
        return result

    def create_branch(
        self, session: Session, name: str, branch_from_step: int | None = None
    ) -> Branch:
        """Add a branch forked from the active one. Does not activate it."""
        with session.lock:
            parent = session.active_branch
            unique_name = self._unique_branch_name(session, name)

            branch_from_step_id = None
            if branch_from_step is not None:
                for t in session.branch_thoughts(parent.id):
                    if t.step_number == branch_from_step:
                        branch_from_step_id = t.id
                        break

            branch = Branch(
                id=_short_id(),
                name=unique_name,
                parent_branch_id=parent.id,
                branch_from_step_id=branch_from_step_id,
            )
            session.branches.append(branch)

        _log(
            "INFO",
            "branch",
            f"Created branch '{unique_name}' from '{parent.name}'",
            detail=f"session={session.id} from_step={branch_from_step}",
        )
        return branch

    def switch_branch(self, session_id: str, branch_name: str) -> bool:
        session = self.store.get(session_id)
        if session is None:
            return False
        with session.lock:
            branch = session.branch_by_name(branch_name)
            if branch is None:
                return False
            session.active_branch_id = branch.id
            session.touch()
        _log("INFO", "switch", f"Session {session_id} now on '{branch_name}'")
        return True

    def set_status(self, session_id: str, status: SessionStatus) -> bool:
        session = self.store.get(session_id)
        if session is None:
            return False
        with session.lock:
            session.status = SessionStatus(status)
            session.touch()
        _log("INFO", "status", f"Session {session_id} → {session.status.value}")
        return True

    def complete(self, session_id: str, final_conclusion: str | None = None) -> bool:
        """Mark completed, optionally recording a final conclusion first."""
        session = self.store.get(session_id)
        if session is None:
            return False
        with session.lock:
            if final_conclusion:
                self.append_thought(
                    ThoughtRequest(
                        session_id=session_id,
                        thought=final_conclusion,
                        thought_type=ThoughtType.CONCLUSION,
                        next_thought_needed=False,
                    )
                )
            self.set_status(session_id, SessionStatus.COMPLETED)
        _log(
            "INFO",
            "complete",
            f"Session {session_id} completed with {len(session.thoughts)} thoughts",
        )
        return True

    # --- reads ---

    def progress(self, session: Session) -> dict:
        with session.lock:
            has_conclusion = any(
                t.thought_type == ThoughtType.CONCLUSION for t in session.thoughts
            )
            return {
                "session_id": session.id,
                "total_steps": len(session.thoughts),
                "current_step": len(session.branch_thoughts(session.active_branch_id)),
                "branches": len(session.branches),
                "active_branch": session.active_branch.name,
                "has_more_thoughts": not has_conclusion
                or session.status == SessionStatus.ACTIVE,
                "summary": self._quick_summary(session),
            }

    def get_summary(self, session_id: str) -> dict | None:
        session = self.store.get(session_id)
        if session is None:
            return None
        with session.lock:
            branches = []
            for branch in session.branches:
                branch_thoughts = session.branch_thoughts(branch.id)
                counts = {tt.value: 0 for tt in ThoughtType}
                for t in branch_thoughts:
                    counts[t.thought_type.value] += 1
                branches.append(
                    {
                        "id": branch.id,
                        "name": branch.name,
                        "step_count": len(branch_thoughts),
                        "thought_types": counts,
                    }
                )

            names = {b.id: b.name for b in session.branches}
            # sorted() is stable, so equal timestamps keep append order
            timeline = [
                {
                    "step_number": t.step_number,
                    "thought": t.thought,
                    "type": t.thought_type.value,
                    "branch_name": names.get(t.branch_id, CONFIG["default_branch"]),
                    "is_revision": t.is_revision,
                }
                for t in sorted(session.thoughts, key=lambda t: t.timestamp)
            ]

            return {
                "session_id": session.id,
                "title": session.title,
                "problem": session.problem,
                "total_steps": len(session.thoughts),
                "branches": branches,
                "key_insights": [
                    t.thought for t in session.thoughts if t.thought_type == ThoughtType.INSIGHT
                ],
                "conclusions": [
                    t.thought
                    for t in session.thoughts
                    if t.thought_type == ThoughtType.CONCLUSION
                ],
                "status": session.status.value,
                "timeline": timeline,
            }

    def export_session(self, session_id: str, fmt: str = "md") -> str | None:
        session = self.store.get(session_id)
        if session is None:
            return None
        with session.lock:
            if fmt == "json":
                return json.dumps(session.to_dict(), indent=2)

            lines = [f"# {session.title or 'Untitled thinking session'}\n"]
            lines.append(f"**Session:** `{session.id}`  ")
            lines.append(f"**Status:** {session.status.value}  ")
            if session.problem:
                lines.append(f"**Problem:** {session.problem}")

            for branch in session.branches:
                lines.append(f"\n## Branch: {branch.name}\n")
                if branch.parent_branch_id:
                    parent = session.branch_by_id(branch.parent_branch_id)
                    origin = ""
                    for t in session.thoughts:
                        if t.id == branch.branch_from_step_id:
                            origin = f" at step {t.step_number}"
                            break
                    lines.append(f"_Forked from {parent.name if parent else '?'}{origin}_\n")
                branch_thoughts = session.branch_thoughts(branch.id)
                if not branch_thoughts:
                    lines.append("_No thoughts yet._\n")
                for t in branch_thoughts:
                    revision = ""
                    if t.is_revision:
                        revision = f" (revises step {t.revises_step})" if t.revises_step else " (revision)"
                    confidence = f" confidence={t.confidence:.2f}" if t.confidence is not None else ""
                    tag_str = f" `{','.join(t.tags)}`" if t.tags else ""
                    lines.append(
                        f"### Step {t.step_number} [{t.thought_type.value}]{revision}{confidence}{tag_str}\n"
                    )
                    lines.append(t.thought + "\n")
            return "\n".join(lines)

    # --- helpers ---

    def _activate_branch_directive(self, session: Session, branch_ref: str):
        """Switch to a caller-named branch by id or name; unknown refs keep the active one."""
        branch = session.branch_by_id(branch_ref) or session.branch_by_name(branch_ref)
        if branch is None:
            _log(
                "WARN",
                "unknown_branch",
                f"Branch '{branch_ref}' not in session {session.id}, staying on "
                f"'{session.active_branch.name}'",
            )
            return
        session.active_branch_id = branch.id

    def _unique_branch_name(self, session: Session, name: str) -> str:
        if session.branch_by_name(name) is None:
            return name
        n = 2
        while session.branch_by_name(f"{name}-{n}") is not None:
            n += 1
        _log("WARN", "branch_rename", f"Branch '{name}' exists, using '{name}-{n}'")
        return f"{name}-{n}"

    def _quick_summary(self, session: Session) -> str:
        counts: dict[ThoughtType, int] = {}
        for t in session.thoughts:
            counts[t.thought_type] = counts.get(t.thought_type, 0) + 1
        parts = []
        for thought_type, plural in (
            (ThoughtType.OBSERVATION, "observations"),
            (ThoughtType.HYPOTHESIS, "hypotheses"),
            (ThoughtType.INSIGHT, "insights"),
            (ThoughtType.CONCLUSION, "conclusions"),
        ):
            if counts.get(thought_type):
                parts.append(f"{counts[thought_type]} {plural}")
        return ", ".join(parts) if parts else CONFIG["summary_placeholder"]


# =============================================================================
# IMPLEMENTATION: shared by CLI and MCP
# =============================================================================


def _metrics(start_ms: float, status: str = "success", **extra) -> dict:
    latency_ms = time.time() * 1000 - start_ms
    return {"status": status, "latency_ms": round(latency_ms, 2), **extra}


def _error(start_ms: float, message: str, **extra) -> tuple[dict, dict]:
    return {"status": "error", "message": message, **extra}, _metrics(start_ms, "error")


def _think_impl(engine: ThinkingEngine, request: ThoughtRequest) -> tuple[dict, dict]:
    """Append a thought. MCP: sequential_thinking, CLI: replay."""
    start_ms = time.time() * 1000
    result = engine.append_thought(request)
    return result, _metrics(start_ms)


def _summary_impl(engine: ThinkingEngine, session_id: str) -> tuple[dict, dict]:
    """Summarize a session. MCP: get_thinking_summary, CLI: replay -f json."""
    start_ms = time.time() * 1000
    summary = engine.get_summary(session_id)
    if summary is None:
        return _error(start_ms, f"Session {session_id} not found")
    return summary, _metrics(start_ms)


def _list_impl(engine: ThinkingEngine) -> tuple[list[dict], dict]:
    """List held sessions. MCP: list_thinking_sessions."""
    start_ms = time.time() * 1000
    sessions = engine.list_sessions()
    return sessions, _metrics(start_ms, count=len(sessions))


def _switch_impl(
    engine: ThinkingEngine, session_id: str, branch_name: str
) -> tuple[dict, dict]:
    """Switch the active branch. MCP: switch_thinking_branch."""
    start_ms = time.time() * 1000
    session = engine.get_session(session_id)
    if session is None:
        return _error(start_ms, f"Session {session_id} not found")
    if not engine.switch_branch(session_id, branch_name):
        return _error(
            start_ms,
            f"Branch '{branch_name}' not found",
            available_branches=[b.name for b in session.branches],
        )
    return {"success": True, "session_id": session_id, "active_branch": branch_name}, _metrics(start_ms)


def _set_status_impl(engine: ThinkingEngine, request: StatusRequest) -> tuple[dict, dict]:
    """Set session status. MCP: set_thinking_status."""
    start_ms = time.time() * 1000
    if not engine.set_status(request.session_id, request.status):
        return _error(start_ms, f"Session {request.session_id} not found")
    result = {
        "success": True,
        "session_id": request.session_id,
        "status": request.status.value,
    }
    return result, _metrics(start_ms)


def _complete_impl(
    engine: ThinkingEngine, session_id: str, final_conclusion: str = ""
) -> tuple[dict, dict]:
    """Complete a session. MCP: complete_thinking_session, CLI: replay."""
    start_ms = time.time() * 1000
    if not engine.complete(session_id, final_conclusion or None):
        return _error(start_ms, f"Session {session_id} not found")
    summary = engine.get_summary(session_id)
    result = {
        "success": True,
        "session_id": session_id,
        "status": summary["status"],
        "total_steps": summary["total_steps"],
        "conclusions": summary["conclusions"],
    }
    return result, _metrics(start_ms)


def _export_impl(
    engine: ThinkingEngine, session_id: str, fmt: str = "md"
) -> tuple[str, dict]:
    """Export a session as markdown or JSON. MCP: export_thinking_session."""
    start_ms = time.time() * 1000
    if fmt not in CONFIG["valid_formats"]:
        valid = ", ".join(sorted(CONFIG["valid_formats"]))
        return f"Invalid format '{fmt}'. Valid: {valid}", _metrics(start_ms, "error")
    output = engine.export_session(session_id, fmt)
    if output is None:
        return f"Session {session_id} not found.", _metrics(start_ms, "error")
    return output, _metrics(start_ms)


def _classify_impl(text: str) -> tuple[dict, dict]:
    """Infer a thought type without touching any session. CLI: classify."""
    start_ms = time.time() * 1000
    return {"thought": text, "thought_type": classify_thought(text).value}, _metrics(start_ms)


def _replay_impl(lines: list[str], fmt: str = "json") -> tuple[str, dict]:
    """Feed JSON lines through a fresh engine and render the last session. CLI: replay.

    Each line is a thought request, or a control record:
      {"switch_branch": "main"}          switch the current session's branch
      {"complete": "final text" | null}  complete the current session
    Thought lines without a session id continue the current session.
    """
    start_ms = time.time() * 1000
    engine = ThinkingEngine()
    session_id = None
    applied = 0

    for lineno, raw in enumerate(lines, 1):
        raw = raw.strip()
        if not raw or raw.startswith("#"):
            continue
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"line {lineno}: invalid JSON ({e.msg})") from e
        assert isinstance(record, dict), f"line {lineno}: expected a JSON object"

        target = record.get("session_id") or record.get("sessionId") or session_id
        if "switch_branch" in record:
            assert target, f"line {lineno}: no session to switch"
            result, _ = _switch_impl(engine, target, record["switch_branch"])
            assert result.get("success"), f"line {lineno}: {result['message']}"
        elif "complete" in record:
            assert target, f"line {lineno}: no session to complete"
            result, _ = _complete_impl(engine, target, record["complete"] or "")
            assert result.get("success"), f"line {lineno}: {result['message']}"
        else:
            if target and "session_id" not in record and "sessionId" not in record:
                record["session_id"] = target
            result, _ = _think_impl(engine, ThoughtRequest.model_validate(record))
            target = result["session_id"]
        session_id = target
        applied += 1

    if session_id is None:
        return "No thoughts replayed.", _metrics(start_ms, "error")

    if fmt == "md":
        output, _ = _export_impl(engine, session_id, "md")
    else:
        summary, _ = _summary_impl(engine, session_id)
        output = json.dumps(summary, indent=2)
    _log("INFO", "replay", f"Replayed {applied} records into {session_id}")
    return output, _metrics(start_ms, records=applied)


# =============================================================================
# CLI INTERFACE
# =============================================================================


def main():
    parser = argparse.ArgumentParser(
        description="Structured sequential thinking with branches and revisions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  sft_thinking.py classify "I notice reads dominate writes"
  sft_thinking.py replay session.jsonl -f md
  cat session.jsonl | sft_thinking.py replay
  sft_thinking.py mcp-stdio
  sft_thinking.py mcp-http -p 3000 -t sse
""",
    )
    parser.add_argument(
        "-V", "--version", action="version", version=f"%(prog)s {CONFIG['version']}"
    )
    sub = parser.add_subparsers(dest="command")

    # classify
    p_classify = sub.add_parser("classify", help="Infer the type of a thought")
    p_classify.add_argument("thought", nargs="?", default="", help="Thought text (or stdin)")

    # replay
    p_replay = sub.add_parser("replay", help="Replay JSONL thought requests")
    p_replay.add_argument("file", nargs="?", default="", help="JSONL file (default: stdin)")
    p_replay.add_argument(
        "-f", "--format", dest="fmt", default="json", choices=["json", "md"], help="Output format"
    )

    # mcp-stdio
    sub.add_parser("mcp-stdio", help="Run as MCP stdio server")

    # mcp-http
    p_http = sub.add_parser("mcp-http", help="Run as MCP HTTP/SSE server")
    p_http.add_argument("-H", "--host", default=CONFIG["host"], help=f"Bind address (default: {CONFIG['host']})")
    p_http.add_argument("-p", "--port", type=int, default=CONFIG["port"], help=f"Port (default: {CONFIG['port']})")
    p_http.add_argument(
        "-t",
        "--transport",
        default="http",
        choices=sorted(CONFIG["valid_transports"]),
        help="Streamable HTTP or legacy SSE",
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "mcp-stdio":
        _run_mcp()
        return
    if args.command == "mcp-http":
        _run_mcp(transport=args.transport, host=args.host, port=args.port)
        return

    try:
        if args.command == "classify":
            text = args.thought
            if not text and not sys.stdin.isatty():
                text = sys.stdin.read().strip()
            assert text, "thought required (positional argument or stdin)"
            result, _ = _classify_impl(text)
            print(json.dumps(result, indent=2))
        elif args.command == "replay":
            if args.file:
                lines = Path(args.file).read_text().splitlines()
            else:
                lines = sys.stdin.read().splitlines()
            output, metrics = _replay_impl(lines, fmt=args.fmt)
            if metrics["status"] == "error":
                print(json.dumps({"status": "error", "message": output}), file=sys.stderr)
                sys.exit(1)
            print(output)
        else:
            parser.print_help()
            sys.exit(1)

    except (AssertionError, ValidationError, ValueError, OSError) as e:
        _log("ERROR", args.command, str(e))
        print(json.dumps({"status": "error", "message": str(e)}), file=sys.stderr)
        sys.exit(1)


# =============================================================================
# FASTMCP SERVER (lazy, only loaded when an mcp-* command is invoked)
# =============================================================================


def _format_thought_recorded(result: dict) -> str:
    return (
        "## Thought Recorded\n\n"
        f"**Session ID:** `{result['session_id']}`\n"
        f"**Step:** {result['step_number']} on `{result['active_branch']}`\n"
        f"**Type:** {result['thought_type']}\n\n"
        f"{result['thought_recorded']}\n\n"
        f"```json\n{json.dumps(result, indent=2)}\n```"
    )


def _build_mcp(engine: ThinkingEngine):
    """Build the FastMCP server around one engine."""
    from fastmcp import FastMCP
    from fastmcp.exceptions import ToolError
    from starlette.requests import Request
    from starlette.responses import JSONResponse

    mcp = FastMCP(CONFIG["server_name"])

    def _reply(result: dict | list | str, metrics: dict) -> str:
        """Render an _impl result; error results become MCP tool errors."""
        if metrics["status"] == "error":
            if isinstance(result, dict):
                message = result.get("message", "error")
                if result.get("available_branches"):
                    message += f". Available branches: {', '.join(result['available_branches'])}"
            else:
                message = str(result)
            raise ToolError(message)
        return result if isinstance(result, str) else json.dumps(result, indent=2)

    @mcp.custom_route("/health", methods=["GET"])
    async def health(request: Request) -> JSONResponse:
        return JSONResponse(
            {
                "status": "healthy",
                "server": CONFIG["server_name"],
                "version": CONFIG["version"],
                "sessions": len(engine.store),
            }
        )

    @mcp.custom_route("/info", methods=["GET"])
    async def info(request: Request) -> JSONResponse:
        return JSONResponse(
            {"name": CONFIG["server_name"], "version": CONFIG["version"], "tools": EXPOSED}
        )

    @mcp.tool()
    def sequential_thinking(
        thought: str,
        next_thought_needed: bool,
        session_id: str = "",
        thought_type: ThoughtType | None = None,
        is_revision: bool = False,
        revises_step: int | None = None,
        branch_id: str = "",
        branch_from_step: int | None = None,
        new_branch_name: str = "",
        confidence: float | None = None,
        tags: list[str] | None = None,
    ) -> str:
        """Dynamic, reflective problem-solving through structured sequential thoughts.

        Each call records one thought. Thoughts can revise earlier steps or open
        a new branch to explore an alternative line of reasoning.

        Args:
            thought: Your current thinking step
            next_thought_needed: Whether another thought step is needed
            session_id: Session to continue (omit to start a new one)
            thought_type: observation, analysis, hypothesis, verification, refinement,
                conclusion, question, insight, reflection (inferred when omitted)
            is_revision: True if this revises previous thinking
            revises_step: Which step number is being reconsidered
            branch_id: Continue on an existing branch (id or name)
            branch_from_step: Step on the current branch to fork from
            new_branch_name: Create and switch to a new branch
            confidence: Confidence in this thought, 0 to 1
            tags: Free-text labels
        """
        try:
            request = ThoughtRequest(
                thought=thought,
                next_thought_needed=next_thought_needed,
                session_id=session_id or None,
                thought_type=thought_type or None,
                is_revision=is_revision,
                revises_step=revises_step,
                branch_id=branch_id or None,
                branch_from_step=branch_from_step,
                new_branch_name=new_branch_name or None,
                confidence=confidence,
                tags=tags or [],
            )
        except ValidationError as e:
            _log("ERROR", "sequential_thinking", str(e))
            raise ToolError(f"Invalid thought request: {e}") from e
        result, _ = _think_impl(engine, request)
        return _format_thought_recorded(result)

    @mcp.tool()
    def get_thinking_summary(session_id: str) -> str:
        """Get a session summary: branches, insights, conclusions and timeline.

        Args:
            session_id: Session to summarize
        """
        return _reply(*_summary_impl(engine, session_id))

    @mcp.tool()
    def list_thinking_sessions() -> str:
        """List all thinking sessions held by this server.

        Args:
            (none)
        """
        return _reply(*_list_impl(engine))

    @mcp.tool()
    def switch_thinking_branch(session_id: str, branch_name: str) -> str:
        """Switch to a different thinking branch within a session.

        Args:
            session_id: Session ID
            branch_name: Name of the branch to switch to
        """
        return _reply(*_switch_impl(engine, session_id, branch_name))

    @mcp.tool()
    def complete_thinking_session(session_id: str, final_conclusion: str = "") -> str:
        """Mark a thinking session as completed.

        Args:
            session_id: Session to complete
            final_conclusion: Optional final conclusion, recorded as a conclusion thought
        """
        return _reply(*_complete_impl(engine, session_id, final_conclusion))

    @mcp.tool()
    def set_thinking_status(session_id: str, status: str) -> str:
        """Set a session's status.

        Args:
            session_id: Session to update
            status: active, paused, completed, abandoned
        """
        try:
            request = StatusRequest(session_id=session_id, status=status)
        except ValidationError as e:
            _log("ERROR", "set_thinking_status", str(e))
            raise ToolError(f"Invalid status request: {e}") from e
        return _reply(*_set_status_impl(engine, request))

    @mcp.tool()
    def export_thinking_session(session_id: str, fmt: str = "md") -> str:
        """Export a thinking session as markdown or JSON.

        Args:
            session_id: Session to export
            fmt: Output format, md or json
        """
        return _reply(*_export_impl(engine, session_id, fmt))

    return mcp


def _run_mcp(transport: str = "stdio", host: str | None = None, port: int | None = None):
    """Build and run the FastMCP server."""
    mcp = _build_mcp(ThinkingEngine())
    if transport == "stdio":
        mcp.run(transport="stdio")
        return
    host = host or CONFIG["host"]
    port = port or CONFIG["port"]
    _log("INFO", "server_start", f"Listening on {host}:{port} ({transport})")
    print(f"Sequential thinking MCP server on http://{host}:{port} ({transport})", file=sys.stderr)
    mcp.run(transport=transport, host=host, port=port)


if __name__ == "__main__":
    main()
