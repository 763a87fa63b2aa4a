"""
File operations for the local cache.

Each cache record is one small JSON document. Writes go to a temp file in
the same directory and are renamed into place, so a reader sees either the
previous record or the new one, never a torn write.
"""

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError

TEMP_PREFIX = ".tmp_"


async def read_json(path: Path) -> dict[str, Any] | None:
    """Read a JSON record.

    Returns:
        Parsed record, or None if the file does not exist

    Raises:
        StorageIOError: The file exists but cannot be read or parsed
    """
    try:
        async with aiofiles.open(path, "rb") as f:
            raw = await f.read()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageIOError("read_json", str(path), e) from e

    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise StorageIOError("parse_json", str(path), e) from e


async def write_json_atomic(path: Path, data: dict[str, Any]) -> None:
    """Replace ``path`` with ``data`` serialized as JSON.

    The directory is created if needed.
    """
    try:
        payload = json.dumps(data, default=_encode_default).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise StorageIOError("serialize_json", str(path), e) from e

    try:
        await aiofiles.os.makedirs(path.parent, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX, suffix=path.suffix)
    except OSError as e:
        raise StorageIOError("write_json", str(path), e) from e

    try:
        async with aiofiles.open(fd, "wb") as f:
            await f.write(payload)
            await f.flush()
            os.fsync(f.fileno())
        await aiofiles.os.replace(temp_path, path)
    except OSError as e:
        try:
            await aiofiles.os.remove(temp_path)
        except FileNotFoundError:
            pass
        raise StorageIOError("write_json", str(path), e) from e


async def remove_file(path: Path) -> bool:
    """Remove a file; returns False if it was already gone."""
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StorageIOError("remove", str(path), e) from e
    return True


async def list_files(path: Path, suffix: str) -> list[Path]:
    """Files in ``path`` ending in ``suffix``, sorted by name.

    Temp files left by interrupted writes are skipped.
    """
    try:
        entries = await aiofiles.os.listdir(path)
    except FileNotFoundError:
        return []
    except OSError as e:
        raise StorageIOError("list_files", str(path), e) from e

    return [
        path / entry
        for entry in sorted(entries)
        if entry.endswith(suffix) and not entry.startswith(TEMP_PREFIX)
    ]


def _encode_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
