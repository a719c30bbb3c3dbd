# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_free_fleet

import json
import os
from pathlib import Path
from typing import Any, Optional, Union

from coreason_free_fleet.utils.logger import logger

PathLike = Union[str, Path]


def ensure_dir(directory: PathLike) -> None:
    Path(directory).mkdir(parents=True, exist_ok=True)


def write_json(file_path: PathLike, data: Any) -> None:
    """
    Writes JSON atomically: the payload goes to a sibling temp file which is
    then renamed over the target. Errors propagate to the caller; the temp
    file is removed on failure.
    """
    path = Path(file_path)
    ensure_dir(path.parent)
    temp_path = path.with_name(path.name + ".tmp")
    try:
        temp_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        os.replace(temp_path, path)
    except Exception:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:  # pragma: no cover
                pass
        raise


def read_json(file_path: PathLike) -> Optional[Any]:
    """
    Reads a JSON document. Missing or unreadable files yield None.
    """
    path = Path(file_path)
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read or parse {path}: {e}")
        return None


def append_json_line(file_path: PathLike, record: Any) -> None:
    path = Path(file_path)
    ensure_dir(path.parent)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, default=str) + "\n")
