from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

from .errors import PublishFailure, ReadFailure

logger = logging.getLogger(__name__)


class DocumentSource(Protocol):
    def list_keys(self) -> List[str]:
        ...

    def read(self, key: str) -> str:
        ...


class OutputSink(Protocol):
    def publish(self, text: str) -> None:
        ...


@dataclass
class VaultPaths:
    root: Path
    output_name: str = "output.md"
    extension: str = ".md"

    @property
    def output_path(self) -> Path:
        return self.root / self.output_name

    def document_path(self, key: str) -> Path:
        return self.root / key

    def key_for(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()


class LocalVaultStorage:
    """
    Filesystem host for a vault of markdown notes. Lists and reads documents
    and publishes the aggregated output by writing a temp file next to the
    target and renaming it into place, so readers never see a missing or
    half-written output.
    """

    def __init__(self, vault_paths: VaultPaths):
        self.paths = vault_paths

    def ensure_base_dirs(self) -> None:
        self.paths.root.mkdir(parents=True, exist_ok=True)
        self.paths.output_path.parent.mkdir(parents=True, exist_ok=True)

    def list_keys(self) -> List[str]:
        root = self.paths.root
        if not root.exists():
            return []
        output = self.paths.output_path.resolve()
        keys = []
        for path in root.rglob(f"*{self.paths.extension}"):
            rel = path.relative_to(root)
            if any(part.startswith(".") for part in rel.parts):
                continue
            if not path.is_file() or path.resolve() == output:
                continue
            keys.append(rel.as_posix())
        return sorted(keys)

    def read(self, key: str) -> str:
        path = self._resolve(key)
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ReadFailure(key, str(exc)) from exc

    def publish(self, text: str) -> None:
        target = self.paths.output_path
        tmp_name: Optional[str] = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
        except OSError as exc:
            raise PublishFailure(str(target), str(exc)) from exc
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
        logger.info("Published aggregated output to %s (%d bytes)", target, len(text.encode("utf-8")))

    def read_output(self) -> Optional[str]:
        path = self.paths.output_path
        return path.read_text(encoding="utf-8") if path.exists() else None

    def _resolve(self, key: str) -> Path:
        root = self.paths.root.resolve()
        path = self.paths.document_path(key).resolve()
        if root != path and root not in path.parents:
            raise ReadFailure(key, "key resolves outside the vault")
        return path
