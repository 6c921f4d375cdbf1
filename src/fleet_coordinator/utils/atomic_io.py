"""Atomic file I/O for the coordinator's local state files."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel

logger = logging.getLogger(__name__)


def atomic_write_text(file_path: Path, content: str, max_retries: int = 3) -> None:
    """
    Write content to file_path via a sibling temp file and rename.

    Readers either see the previous content or the new content, never a
    truncated file, even if the process dies mid-write.

    Args:
        file_path: Target file path
        content: Text to write
        max_retries: Attempts before giving up

    Raises:
        OSError: If every attempt fails
    """
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    # pid suffix keeps concurrent coordinator processes off each other's temp files
    tmp_file = file_path.with_suffix(f"{file_path.suffix}.tmp.{os.getpid()}")

    last_error = None
    for attempt in range(max_retries):
        try:
            tmp_file.write_text(content)
            tmp_file.replace(file_path)
            return
        except OSError as e:
            last_error = e
            if attempt < max_retries - 1:
                logger.warning(
                    f"Failed to write {file_path} (attempt {attempt + 1}/{max_retries}): {e}"
                )
        finally:
            if tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError:
                    pass

    logger.error(f"Failed to write {file_path} after {max_retries} attempts: {last_error}")
    raise last_error


def atomic_write_json(file_path: Path, data: Any, indent: int = 2) -> None:
    """Serialize data as JSON and write it atomically."""
    atomic_write_text(file_path, json.dumps(data, indent=indent, default=str))


def atomic_write_jsonl(file_path: Path, models: Iterable[BaseModel]) -> None:
    """Rewrite a JSON Lines file compactly, one model per line."""
    lines = [m.model_dump_json() for m in models]
    atomic_write_text(file_path, "\n".join(lines) + "\n" if lines else "")


def append_jsonl(file_path: Path, record: dict) -> None:
    """Append one JSON record to an audit log. Not atomic; audit lines are best-effort."""
    file_path = Path(file_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    with open(file_path, "a") as f:
        f.write(json.dumps(record, default=str) + "\n")
