from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterator

_LOGGER = logging.getLogger("bookpress.imposition.artifacts")


def _log_event(level: int, event_name: str, **event_fields: Any) -> None:
    _LOGGER.log(
        level,
        event_name,
        extra={"event_name": event_name, "event_fields": event_fields},
    )


class ArtifactLedger:
    """Intermediate files owned by one run, in creation order."""

    def __init__(self) -> None:
        self._paths: dict[Path, None] = {}

    def track(self, path: Path) -> Path:
        self._paths[path] = None
        return path

    def forget(self, path: Path) -> None:
        self._paths.pop(path, None)

    def __iter__(self) -> Iterator[Path]:
        return iter(list(self._paths))

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, path: object) -> bool:
        return path in self._paths

    def cleanup(self) -> list[Path]:
        removed: list[Path] = []
        for path in list(self._paths):
            try:
                if path.is_file():
                    path.unlink()
                    removed.append(path)
            except OSError as exc:
                _log_event(logging.WARNING, "impose.cleanup.failed", path=str(path), error=str(exc))
                continue
            self._paths.pop(path, None)
        return removed
