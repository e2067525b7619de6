"""
Credential Store - one flat file per credential.

File content is an opaque blob (usually a full cookie string) from which
the session token is extracted. Filenames carry no meaning beyond
uniqueness; the pool keeps its own filename -> credential ID index.
"""

import logging
import os
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class CredentialStore:
    """Filesystem-backed storage for raw credential blobs."""

    def __init__(self, directory: Path, readme_name: str = "README.md"):
        self.directory = Path(directory)
        self.readme_name = readme_name

    def ensure_dir(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def is_ignored(self, name: str) -> bool:
        """Hidden files and the directory README are never credentials."""
        return name.startswith(".") or name.lower() == self.readme_name.lower()

    def iter_files(self) -> Iterator[Path]:
        """Yield candidate credential files, sorted by name."""
        self.ensure_dir()
        for path in sorted(self.directory.iterdir()):
            if path.is_file() and not self.is_ignored(path.name):
                yield path

    def read(self, path: Path) -> str:
        return Path(path).read_text(encoding="utf-8", errors="replace")

    def filename_for(self, credential_id: str) -> str:
        return f"{credential_id[:16]}.txt"

    def write(self, credential_id: str, raw: str) -> str:
        """Persist raw input for a credential and return the filename."""
        self.ensure_dir()
        name = self.filename_for(credential_id)
        path = self.directory / name

        # Owner-only: the file holds a session secret
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(raw)

        logger.debug(f"Wrote credential file {name}")
        return name

    def delete_for(self, credential_id: str, filename: Optional[str] = None) -> Optional[str]:
        """Delete the backing file of a credential.

        Uses the indexed filename when known, otherwise the first file whose
        name starts with the credential ID prefix. Returns the deleted name.
        """
        candidates = []
        if filename:
            candidates.append(self.directory / filename)
        elif self.directory.exists():
            prefix = credential_id[:16]
            candidates.extend(
                p for p in sorted(self.directory.iterdir()) if p.name.startswith(prefix)
            )

        for path in candidates:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            logger.debug(f"Deleted credential file {path.name}")
            return path.name

        return None
