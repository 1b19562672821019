"""Structured logging and observability helpers."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TextIO


@dataclass(slots=True)
class StructuredLogger:
    """Collects structured records and optionally echoes them as human-readable lines."""

    records: list[dict[str, Any]] = field(default_factory=list)
    echo: TextIO | None = None
    quiet: bool = False
    verbose: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def log(
        self,
        *,
        operation: str,
        stage: str | None,
        message: str,
        crate: str | None = None,
        toolchain: str | None = None,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "stage": stage,
            "crate": crate,
            "toolchain": toolchain,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        with self._lock:
            self.records.append(record)
            if self.echo is not None and self._should_echo(level):
                self.echo.write(_format_line(record) + "\n")
                self.echo.flush()

    def output(self, *, crate: str, line: str, prefix: bool = False) -> None:
        """Stream one line of child-process output; not retained as a record."""
        if self.echo is None:
            return
        text = f"{crate} | {line}" if prefix else line
        with self._lock:
            self.echo.write(text + "\n")
            self.echo.flush()

    def records_for_crate(self, crate: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("crate") == crate]

    def records_for_stage(self, stage: str) -> list[dict[str, Any]]:
        return [record for record in self.records if record.get("stage") == stage]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path

    def _should_echo(self, level: str) -> bool:
        if level == "debug":
            return self.verbose
        if level == "info":
            return not self.quiet
        return True


def _format_line(record: dict[str, Any]) -> str:
    stage = record.get("stage") or "-"
    crate = record.get("crate")
    level = record.get("level", "info")
    head = f"[{stage}]"
    if level in ("warning", "error"):
        head = f"{head} {level}:"
    if crate:
        return f"{head} {crate}: {record['message']}"
    return f"{head} {record['message']}"


__all__ = ["StructuredLogger"]
