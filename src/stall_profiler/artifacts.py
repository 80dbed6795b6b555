"""Persisted CPU profile artifacts.

Each captured profile payload is written as JSON to
``<directory>/<prefix>-<6 hex chars>.cpuprofile`` so it can be opened later
in a profile viewer.
"""

import json
import secrets
import tempfile
from pathlib import Path

import structlog

from stall_profiler.aggregator import Profile

log = structlog.get_logger()

DEFAULT_PREFIX = "exthost"
CPUPROFILE_EXTENSION = ".cpuprofile"


def artifact_name(prefix: str = DEFAULT_PREFIX, extension: str = CPUPROFILE_EXTENSION) -> str:
    """Return a fresh artifact file name with a short random hex suffix."""
    return f"{prefix}-{secrets.token_hex(3)}{extension}"


class ArtifactStore:
    """Writes profile payloads to a directory (the system temp dir by default)."""

    def __init__(
        self,
        directory: Path | None = None,
        prefix: str = DEFAULT_PREFIX,
        extension: str = CPUPROFILE_EXTENSION,
    ) -> None:
        self.directory = directory or Path(tempfile.gettempdir())
        self.prefix = prefix
        self.extension = extension

    def write(self, profile: Profile) -> Path:
        """Serialize the profile payload to a new artifact file.

        Raises:
            OSError: If the file cannot be written.
            TypeError: If the payload is not JSON serializable.
        """
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / artifact_name(self.prefix, self.extension)
        path.write_text(json.dumps(profile.data))
        log.debug("artifact_written", path=str(path))
        return path

    def list_artifacts(self) -> list[Path]:
        """Return saved artifacts, newest first."""
        if not self.directory.exists():
            return []
        paths = self.directory.glob(f"{self.prefix}-*{self.extension}")
        return sorted(paths, key=lambda p: p.stat().st_mtime, reverse=True)
