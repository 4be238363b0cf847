"""
File catalog interface consumed by the job streamer.

The control core only needs to turn a job's file id into an absolute path:
``get_file(file_id)`` returns the catalog record and ``get_file_path(record)``
resolves it. ``DirectoryFileCatalog`` serves the files of one directory,
using each file name as its id.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Protocol, Union

from .errors import JobError

JOB_FILE_SUFFIXES = (".gcode", ".gco", ".g", ".nc")


@dataclass(frozen=True)
class FileRecord:
    """A job file known to the catalog."""
    id: str
    name: str
    path: Path


class FileCatalog(Protocol):
    """Lookup-by-id interface for uploaded job files."""

    def get_file(self, file_id: str) -> FileRecord:
        ...

    def get_file_path(self, file: FileRecord) -> Path:
        ...


class DirectoryFileCatalog:
    """Catalog backed by the job files stored in a single directory."""

    def __init__(self, root: Union[str, Path], suffixes=JOB_FILE_SUFFIXES):
        self.root = Path(root).expanduser().resolve()
        self.suffixes = tuple(s.lower() for s in suffixes)

    def list_files(self) -> List[FileRecord]:
        if not self.root.is_dir():
            return []
        return [
            FileRecord(id=p.name, name=p.stem, path=p)
            for p in sorted(self.root.iterdir())
            if p.is_file() and p.suffix.lower() in self.suffixes
        ]

    def get_file(self, file_id: str) -> FileRecord:
        candidate = (self.root / file_id).resolve()
        if candidate.parent != self.root or not candidate.is_file():
            raise JobError(f"File {file_id!r} is not in the catalog")
        return FileRecord(id=file_id, name=candidate.stem, path=candidate)

    def get_file_path(self, file: FileRecord) -> Path:
        return file.path


__all__ = ["DirectoryFileCatalog", "FileCatalog", "FileRecord", "JOB_FILE_SUFFIXES"]
