"""In-memory log of every agent request/response pair issued during a run."""

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Log of the run executing in the current task. Child tasks inherit it.
_active_log: ContextVar["AgentRequestLog | None"] = ContextVar("active_request_log", default=None)


@dataclass
class RequestTag:
    agent_type: str                # "persona", "expert", "contrarian", "orchestrator", "consensus"
    agent_id: str | None = None
    role: str | None = None
    round_number: int | None = None


def _dump(obj: Any) -> Any:
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return obj


class AgentRequestLog:
    """Collects request/response pairs tagged by agent type, id, role and round."""

    def __init__(self) -> None:
        self._entries: list[dict[str, Any]] = []

    def record(
        self,
        tag: RequestTag | None,
        request: dict[str, Any],
        response: Any = None,
        error: BaseException | None = None,
    ) -> None:
        tag = tag or RequestTag(agent_type="unknown")
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "agent_type": tag.agent_type,
            "agent_id": tag.agent_id,
            "role": tag.role,
            "round_number": tag.round_number,
            "request": _dump(request),
        }
        if error is not None:
            entry["error"] = str(error)
        else:
            entry["response"] = _dump(response)
        self._entries.append(entry)

    @property
    def entries(self) -> list[dict[str, Any]]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def save(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self._entries, indent=2, default=str), encoding="utf-8")
        logger.info("Agent request log saved to: %s (%d entries)", path, len(self._entries))
        return path


def current_request_log() -> AgentRequestLog | None:
    return _active_log.get()


@contextmanager
def use_request_log(log: AgentRequestLog | None) -> Iterator[AgentRequestLog | None]:
    """Route generation calls made in this context (and its child tasks) to ``log``."""
    token = _active_log.set(log)
    try:
        yield log
    finally:
        _active_log.reset(token)
