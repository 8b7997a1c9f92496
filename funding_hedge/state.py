from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .types import STATE_VERSION, ClosedPosition, PersistedState, Position

logger = logging.getLogger(__name__)

_POSITION_TIMESTAMPS = ("opened_at", "last_checked_at")


def _ts_to_str(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _ts_from_str(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def position_to_dict(position: Position) -> Dict[str, Any]:
    data = asdict(position)
    for key in _POSITION_TIMESTAMPS:
        data[key] = _ts_to_str(data[key])
    return data


def position_from_dict(data: Dict[str, Any]) -> Position:
    fields = dict(data)
    for key in _POSITION_TIMESTAMPS:
        fields[key] = _ts_from_str(fields[key])
    return Position(**fields)


def state_to_dict(state: PersistedState) -> Dict[str, Any]:
    return {
        "version": state.version,
        "position": position_to_dict(state.position) if state.position else None,
        "last_checked_at": _ts_to_str(state.last_checked_at),
        "last_opportunity_check_at": _ts_to_str(state.last_opportunity_check_at),
        "history": [
            {
                "position": position_to_dict(c.position),
                "closed_at": _ts_to_str(c.closed_at),
                "close_reason": c.close_reason,
            }
            for c in state.history
        ],
    }


def state_from_dict(data: Dict[str, Any]) -> PersistedState:
    """Raises ValueError / KeyError / TypeError on a document of the wrong shape."""
    if not isinstance(data, dict):
        raise ValueError("state document must be an object")
    if data.get("version") != STATE_VERSION:
        raise ValueError(f"unsupported state version: {data.get('version')}")
    position = data.get("position")
    return PersistedState(
        version=STATE_VERSION,
        position=position_from_dict(position) if position else None,
        last_checked_at=_ts_from_str(data.get("last_checked_at")),
        last_opportunity_check_at=_ts_from_str(data.get("last_opportunity_check_at")),
        history=[
            ClosedPosition(
                position=position_from_dict(item["position"]),
                closed_at=_ts_from_str(item["closed_at"]),
                close_reason=item["close_reason"],
            )
            for item in data.get("history", [])
        ],
    )


class StateStore:
    """JSON state file, replaced atomically on every save."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> PersistedState:
        if not os.path.exists(self.path):
            logger.info("no state file at %s, starting idle", self.path)
            return PersistedState()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                state = state_from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("state file %s unreadable (%s: %s), starting idle", self.path, type(exc).__name__, exc)
            return PersistedState()
        logger.info(
            "state loaded: position=%s history=%d",
            state.position.symbol if state.position else None,
            len(state.history),
        )
        return state

    def save(self, state: PersistedState) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state_to_dict(state), f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug("state saved to %s", self.path)
