"""Sandboxed task workspace the agent can write notes and results into."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from .exceptions import ActionExecutionError

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = (".md", ".txt", ".json", ".csv")
_FILENAME_RE = re.compile(r"^[A-Za-z0-9_\-\.]+$")


class FileSystem:
    """Flat directory of small text files, mirrored in memory so it can be serialized."""

    def __init__(self, base_dir: str | Path, files: Optional[Dict[str, str]] = None) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._files: Dict[str, str] = {}
        for name, content in (files or {}).items():
            self._store(name, content)

    def _validate_name(self, name: str) -> str:
        if not _FILENAME_RE.match(name) or name.startswith("."):
            raise ActionExecutionError(f"Invalid file name '{name}': use letters, digits, '-', '_' and an extension")
        if not name.endswith(ALLOWED_EXTENSIONS):
            raise ActionExecutionError(
                f"Invalid file extension for '{name}'. Allowed: {', '.join(ALLOWED_EXTENSIONS)}"
            )
        return name

    def _store(self, name: str, content: str) -> None:
        self._files[name] = content
        (self.base_dir / name).write_text(content, encoding="utf-8")

    def list_files(self) -> List[str]:
        return sorted(self._files)

    def write_file(self, name: str, content: str) -> str:
        self._store(self._validate_name(name), content)
        return f"Data written to file {name} successfully."

    def append_file(self, name: str, content: str) -> str:
        self._validate_name(name)
        if name not in self._files:
            raise ActionExecutionError(f"File '{name}' not found.")
        self._store(name, self._files[name] + content)
        return f"Data appended to file {name} successfully."

    def read_file(self, name: str) -> str:
        self._validate_name(name)
        if name not in self._files:
            raise ActionExecutionError(f"File '{name}' not found.")
        return f"Read from file {name}.\n<content>\n{self._files[name]}\n</content>"

    def describe(self, preview_chars: int = 400) -> str:
        if not self._files:
            return "No files in the workspace."
        lines = []
        for name in self.list_files():
            content = self._files[name]
            preview = content[:preview_chars] + ("..." if len(content) > preview_chars else "")
            lines.append(f"<file name=\"{name}\" chars=\"{len(content)}\">\n{preview}\n</file>")
        return "\n".join(lines)

    def get_state(self) -> Dict[str, Any]:
        return {"base_dir": str(self.base_dir), "files": dict(self._files)}

    @classmethod
    def from_state(cls, state: Dict[str, Any]) -> "FileSystem":
        logger.debug("Restoring workspace at %s with %d file(s)", state.get("base_dir"), len(state.get("files", {})))
        return cls(state["base_dir"], files=state.get("files") or {})
