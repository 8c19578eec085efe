"""低置信度样本日志 — 有界环形缓冲，可选 JSONL 持久化。"""

from __future__ import annotations

import json
import logging
import tempfile
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from toolsight.models import CanonicalRecord

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TrainingEntry:
    raw_output: str
    record: CanonicalRecord
    timestamp: datetime
    fingerprint: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "rawOutput": self.raw_output,
            "record": self.record.model_dump(mode="json"),
            "timestamp": self.timestamp.isoformat(),
            "fingerprint": self.fingerprint,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrainingEntry:
        return cls(
            raw_output=data["rawOutput"],
            record=CanonicalRecord.model_validate(data["record"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            fingerprint=data.get("fingerprint", ""),
        )


class TrainingLog:
    """保存最近 capacity 条低置信度结果，最旧的先被挤出。"""

    def __init__(
        self,
        capacity: int = 100,
        path: Path | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.capacity = capacity
        self.path = path
        self._clock = clock
        self._entries: deque[TrainingEntry] = deque(maxlen=capacity)
        self._dirty = False

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def has_changes(self) -> bool:
        return self._dirty

    def entries(self) -> list[TrainingEntry]:
        return list(self._entries)

    def append(self, raw_output: str, record: CanonicalRecord, fingerprint: str = "") -> bool:
        """追加一条记录。任何异常只记日志，不向上抛。"""
        try:
            self._entries.append(
                TrainingEntry(
                    raw_output=raw_output,
                    record=record,
                    timestamp=self._clock(),
                    fingerprint=fingerprint,
                )
            )
            self._dirty = True
            logger.debug(
                "Training log: stored %r (confidence %.2f), %d/%d",
                record.name, record.confidence, len(self._entries), self.capacity,
            )
            return True
        except Exception:
            logger.exception("Failed to append to training log")
            return False

    def load(self) -> None:
        """从 JSONL 文件加载。文件不存在或损坏则保持为空。"""
        if self.path is None or not self.path.exists():
            return
        loaded: list[TrainingEntry] = []
        try:
            for line in self.path.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    loaded.append(TrainingEntry.from_dict(json.loads(line)))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, ValidationError) as e:
            logger.warning("Failed to load training log %s: %s, starting empty", self.path, e)
            return
        self._entries.clear()
        self._entries.extend(loaded[-self.capacity:])
        self._dirty = False
        logger.info("Loaded %d training log entries from %s", len(self._entries), self.path)

    def save(self) -> None:
        """写入 JSONL（原子写入：临时文件 + rename）。"""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with open(fd, "w", encoding="utf-8") as f:
                for entry in self._entries:
                    f.write(json.dumps(entry.to_dict(), ensure_ascii=False))
                    f.write("\n")
            Path(tmp_path).replace(self.path)
        except Exception:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        self._dirty = False
