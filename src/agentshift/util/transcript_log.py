"""Chat transcript persistence.

Transcripts are stored as JSONL (one record per line) in
``~/.agentshift/transcripts/{session_id}.jsonl``. Messages are appended once
and later updates are appended as separate records, so a partially streamed
reply survives a crash; reading replays the records in order.
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Protocol

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]


@dataclass
class TranscriptMessage:
    role: Role
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    tool_calls: list[dict[str, str]] = field(default_factory=list)


class TranscriptStore(Protocol):
    def add_message(self, session_id: str, role: Role, content: str) -> str: ...

    def update_message(
        self,
        session_id: str,
        message_id: str,
        content: str,
        tool_calls: list[dict[str, str]] | None = None,
    ) -> None: ...

    def get_conversation_id(self, session_id: str) -> str | None: ...

    def set_conversation_id(self, session_id: str, conversation_id: str | None) -> None: ...


class TranscriptLog:
    """JSONL-backed :class:`TranscriptStore`, one file per session."""

    def __init__(self, base_dir: Path | None = None):
        self.base_dir = self.get_log_dir(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._seq: dict[str, int] = {}

    @classmethod
    def get_log_dir(cls, base_dir: Path | None = None) -> Path:
        if base_dir is not None:
            return Path(base_dir)
        env_dir = os.environ.get("AGENTSHIFT_TRANSCRIPT_DIR")
        if env_dir:
            return Path(env_dir)
        return Path.home() / ".agentshift" / "transcripts"

    def _path(self, session_id: str) -> Path:
        return self.base_dir / f"{session_id}.jsonl"

    def _next_seq(self, session_id: str) -> int:
        if session_id not in self._seq:
            # Seed from the existing log so sequence numbers keep increasing across restarts
            records = self._read(session_id)
            self._seq[session_id] = int(records[-1].get("seq", 0)) if records else 0
        self._seq[session_id] += 1
        return self._seq[session_id]

    def _append(self, session_id: str, record: dict[str, Any]) -> None:
        record = {"seq": self._next_seq(session_id), **record}
        with open(self._path(session_id), "a", encoding="utf-8") as f:
            f.write(json.dumps(record) + "\n")

    def _read(self, session_id: str) -> list[dict[str, Any]]:
        path = self._path(session_id)
        if not path.exists():
            return []
        records = []
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt transcript line in %s", path)
        return records

    def add_message(self, session_id: str, role: Role, content: str) -> str:
        message = TranscriptMessage(role=role, content=content)
        self._append(session_id, {"type": "message", **asdict(message)})
        return message.id

    def update_message(
        self,
        session_id: str,
        message_id: str,
        content: str,
        tool_calls: list[dict[str, str]] | None = None,
    ) -> None:
        record: dict[str, Any] = {"type": "update", "id": message_id, "content": content}
        if tool_calls is not None:
            record["tool_calls"] = tool_calls
        self._append(session_id, record)

    def get_messages(self, session_id: str) -> list[TranscriptMessage]:
        messages: dict[str, TranscriptMessage] = {}
        for record in self._read(session_id):
            if record.get("type") == "message":
                messages[record["id"]] = TranscriptMessage(
                    role=record["role"],
                    content=record.get("content", ""),
                    id=record["id"],
                    ts=record.get("ts", ""),
                    tool_calls=record.get("tool_calls") or [],
                )
            elif record.get("type") == "update" and record.get("id") in messages:
                message = messages[record["id"]]
                message.content = record.get("content", message.content)
                if "tool_calls" in record:
                    message.tool_calls = record["tool_calls"]
        return list(messages.values())

    def get_conversation_id(self, session_id: str) -> str | None:
        conversation_id = None
        for record in self._read(session_id):
            if record.get("type") == "conversation":
                conversation_id = record.get("conversation_id")
        return conversation_id

    def set_conversation_id(self, session_id: str, conversation_id: str | None) -> None:
        self._append(session_id, {"type": "conversation", "conversation_id": conversation_id})

    def list_sessions(self) -> list[str]:
        return sorted(f.stem for f in self.base_dir.glob("*.jsonl"))
