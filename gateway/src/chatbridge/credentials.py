from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

CREDS_FILENAME = "creds.json"


class CredentialStore:
    """Locates the SDK-owned credential folder and wipes it on invalidation.

    The files themselves are opaque; only the session client reads or writes them.
    """

    def __init__(self, directory: str | Path, extra_paths: Iterable[str | Path] = ()) -> None:
        self.directory = Path(directory)
        self.extra_paths = [Path(p) for p in extra_paths]

    def ensure_directory(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def has_credentials(self) -> bool:
        return (self.directory / CREDS_FILENAME).is_file()

    def clear(self) -> int:
        """Delete every stored credential file plus the extra paths; return the count."""

        removed = 0
        if self.directory.is_dir():
            for path in sorted(self.directory.iterdir()):
                if not path.is_file():
                    continue
                path.unlink(missing_ok=True)
                logger.info("deleted credential file %s", path)
                removed += 1
        for path in self.extra_paths:
            if path.is_file():
                path.unlink(missing_ok=True)
                logger.info("deleted %s", path)
                removed += 1
        return removed
