"""On-disk journal of build sessions, their output and their artifacts."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
import shutil

from contract_builder.log import strip_control_sequences
from contract_builder.models.session import BuildSession

logger = logging.getLogger(__name__)

_TRUNCATED_MARKER = "\n[output truncated]\n"


class SessionStore:
    """Keeps one JSON record, one output log and one artifact directory per session.

    Files are named after the session id (a fingerprint of the token), never
    the token itself.
    """

    def __init__(self, state_path: str | Path, artifacts_path: str | Path, max_log_bytes: int) -> None:
        self._state_path = Path(state_path)
        self._logs_path = self._state_path / "logs"
        self._artifacts_path = Path(artifacts_path)
        self._max_log_bytes = max_log_bytes

    def ensure(self) -> None:
        for path in (self._state_path, self._logs_path, self._artifacts_path):
            path.mkdir(parents=True, exist_ok=True)

    def save(self, session: BuildSession) -> None:
        self._state_path.mkdir(parents=True, exist_ok=True)
        target = self._state_path / f"{session.ref}.json"
        tmp = target.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(session.to_dict(), indent=2), encoding="utf-8")
        os.replace(tmp, target)

    def load_all(self) -> list[BuildSession]:
        sessions = []
        for path in sorted(self._state_path.glob("*.json")):
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                sessions.append(BuildSession.from_dict(raw))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("skipping unreadable session record %s: %s", path.name, exc)
        return sessions

    def append_log(self, session: BuildSession, stage: str, output: str) -> None:
        self._logs_path.mkdir(parents=True, exist_ok=True)
        path = self._logs_path / f"{session.ref}.log"
        used = path.stat().st_size if path.exists() else 0
        budget = self._max_log_bytes - used
        if budget <= 0:
            return
        text = f"==> {stage}\n{strip_control_sequences(output)}"
        if not text.endswith("\n"):
            text += "\n"
        data = text.encode("utf-8")
        if len(data) > budget:
            marker = _TRUNCATED_MARKER.encode("utf-8")
            data = data[: max(0, budget - len(marker))] + marker
        with path.open("ab") as handle:
            handle.write(data)

    def read_log(self, session_id: str) -> str:
        path = self._logs_path / f"{session_id}.log"
        if not path.exists():
            return ""
        return path.read_bytes().decode("utf-8", errors="replace")

    def write_artifacts(self, session: BuildSession, wasm: bytes, metadata: bytes) -> tuple[Path, Path]:
        directory = self._artifacts_path / session.ref
        directory.mkdir(parents=True, exist_ok=True)
        wasm_path = directory / "main.wasm"
        metadata_path = directory / "main.json"
        wasm_path.write_bytes(wasm)
        metadata_path.write_bytes(metadata)
        return wasm_path, metadata_path

    def discard_artifacts(self, session: BuildSession) -> None:
        shutil.rmtree(self._artifacts_path / session.ref, ignore_errors=True)
