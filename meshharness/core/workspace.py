"""Per-test workspace directories.

Each mesh owns exactly one workspace; the name carries a ULID so concurrently
running tests never share certificates, configs or control sockets.
"""

from __future__ import annotations

import re
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import ulid
from loguru import logger

from meshharness.datastructures.type_aliases import NodeName

WORKSPACE_PARENT = "meshharness-testing"
# Unix socket paths are limited to 108 bytes; keep labels short.
MAX_LABEL_LENGTH = 24

_UNSAFE_LABEL_CHARS = re.compile(r"[^A-Za-z0-9_-]+")


def _sanitize_label(label: str) -> str:
    cleaned = _UNSAFE_LABEL_CHARS.sub("-", label).strip("-")
    return (cleaned or "mesh")[:MAX_LABEL_LENGTH]


@dataclass(slots=True)
class MeshWorkspace:
    """A uniquely named directory tree: ``certs/`` plus one dir per node."""

    root: Path
    removed: bool = field(default=False, init=False)

    @classmethod
    def create(cls, label: str = "mesh", base_dir: str | Path | None = None) -> MeshWorkspace:
        parent = Path(base_dir) if base_dir is not None else Path(tempfile.gettempdir())
        parent = parent / WORKSPACE_PARENT
        parent.mkdir(parents=True, exist_ok=True)
        root = parent / f"{_sanitize_label(label)}-{ulid.new()}"
        root.mkdir()
        logger.debug("Created mesh workspace {}", root)
        return cls(root=root)

    @property
    def cert_dir(self) -> Path:
        path = self.root / "certs"
        path.mkdir(exist_ok=True)
        return path

    def node_dir(self, name: NodeName) -> Path:
        path = self.root / name
        path.mkdir(exist_ok=True)
        return path

    def remove(self) -> None:
        if self.removed:
            return
        if self.root.exists():
            shutil.rmtree(self.root)
        self.removed = True
        logger.debug("Removed mesh workspace {}", self.root)
