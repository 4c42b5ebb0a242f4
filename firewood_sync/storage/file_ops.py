"""
JSON and JSONL file operations for durable client-side state.

The change queue, the local entity collections and the sync cursor
are small documents rewritten in full on every change, so every
write goes through a temp file + fsync + rename.
"""

import json
import os
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary."""
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def read_json(path: Path) -> dict[str, Any] | None:
    """Read a JSON file.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON data or None if file doesn't exist
    """
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
            return json.loads(content) if content.strip() else None
    except json.JSONDecodeError as e:
        raise StorageIOError("parse_json", str(path), e) from e
    except OSError as e:
        raise StorageIOError("read_json", str(path), e) from e


async def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """Read all lines from a JSONL file.

    Returns:
        List of parsed JSON objects, empty if the file doesn't exist
    """
    try:
        if not await aiofiles.os.path.exists(path):
            return []

        results = []
        async with aiofiles.open(path, encoding="utf-8") as f:
            async for line in f:
                line = line.strip()
                if line:
                    results.append(json.loads(line))
        return results
    except json.JSONDecodeError as e:
        raise StorageIOError("parse_jsonl", str(path), e) from e
    except OSError as e:
        raise StorageIOError("read_jsonl", str(path), e) from e


async def _write_atomic(path: Path, content: str, operation: str) -> None:
    await ensure_directory(path.parent)

    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=".tmp_",
        suffix=path.suffix,
    )
    try:
        os.close(fd)
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(content)
            await f.flush()
            os.fsync(f.fileno())

        await aiofiles.os.rename(temp_path, path)
    except Exception as e:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise StorageIOError(operation, str(path), e) from e


async def write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Write JSON file atomically using temp file + rename."""
    await _write_atomic(path, json.dumps(data, indent=2, default=_json_serializer), "write_json")


async def write_jsonl_atomic(path: Path, data: list[dict[str, Any]]) -> None:
    """Write entire JSONL file atomically."""
    content = "".join(json.dumps(item, default=_json_serializer) + "\n" for item in data)
    await _write_atomic(path, content, "write_jsonl")


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not handled by default."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
