"""Append-only JSONL trace of agent events."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class TelemetryWriter:
    """Append structured events to a run.jsonl file."""

    def __init__(self, path: Path, agent_id: Optional[str] = None) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.agent_id = agent_id
        self._fp = self.path.open("a", encoding="utf-8")

    def write(self, event: str, **fields: Any) -> None:
        if self._fp.closed:
            logger.debug("Dropping telemetry event %s after close", event)
            return
        payload: Dict[str, Any] = {"event": event, **fields}
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        if self.agent_id:
            payload.setdefault("agent_id", self.agent_id)
        self._fp.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        self._fp.flush()

    def close(self) -> None:
        try:
            self._fp.close()
        except OSError as exc:
            logger.debug("Error closing telemetry file %s: %s", self.path, exc)
