from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import structlog

from deploy_watch.errors import PersistenceError


logger = structlog.get_logger(__name__)


def read_json_document(path: Path, default: Any) -> Any:
    """Load a whole JSON state document.

    A missing file yields ``default``. An unreadable or corrupt file is logged
    and also yields ``default``; the next successful save replaces it.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as exc:
        logger.warning("Failed to read state file", path=str(path), error=str(exc))
        return default

    try:
        return json.loads(text)
    except ValueError as exc:
        logger.warning("State file is not valid JSON", path=str(path), error=str(exc))
        return default


def write_json_atomic(path: Path, payload: Any) -> None:
    """Overwrite ``path`` with ``payload`` via a sibling temp file + rename.

    Readers see either the previous document or the new one, never a partial
    write. Raises ``PersistenceError`` on any filesystem failure.
    """
    tmp = path.with_name(f"{path.name}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)
    except (OSError, TypeError, ValueError) as exc:
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise PersistenceError(str(path), f"Failed to write state file: {type(exc).__name__}: {exc}") from exc
