"""The staging area: the content of the next commit."""

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from pathlib import Path, PurePosixPath

from .constants import DEFAULT_REPO_DIR, EXECUTABLE_MODE, FILE_MODE, INDEX_VERSION
from .exceptions import PathNotStagedError, StagingError
from .fileio import FileLockedError, LockFile
from .object_store import ObjectStore
from .objects import ObjectKind, VALID_MODES, TreeRecordType, validate_name
from .ref import HashRef
from .trees import flatten_tree, write_tree

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexEntry:
    """A staged file."""

    path: str
    hash: str
    mode: int = FILE_MODE
    size: int = 0
    mtime_ns: int = 0


def normalize_path(path: str | PurePosixPath, repo_dir_name: str = DEFAULT_REPO_DIR) -> str:
    """Normalize a working-tree path to the relative, slash-separated form used in the index.

    :raises ValueError: If the path is absolute, escapes the working tree or points into the repository directory."""
    text = str(path).replace('\\', '/')
    if not text or text.startswith('/'):
        msg = f'Path must be relative to the working tree: {path!r}'
        raise ValueError(msg)

    parts = [part for part in text.split('/') if part not in {'', '.'}]
    if not parts:
        msg = f'Path does not name a file: {path!r}'
        raise ValueError(msg)
    for part in parts:
        validate_name(part)
    if parts[0] == repo_dir_name:
        msg = f'Cannot stage repository internals: {path!r}'
        raise ValueError(msg)

    return '/'.join(parts)


class Index:
    """A sorted table of staged paths, persisted as JSON.

    Each mutation re-reads the file under an exclusive lock, applies the change and
    atomically replaces the file, so concurrent stagers never lose each other's entries.
    A stager that finds the lock held gets StagingError."""

    def __init__(self, index_file: Path | str, objects: ObjectStore, *, repo_dir_name: str = DEFAULT_REPO_DIR,
                 fsync: bool = True) -> None:
        self.index_file = Path(index_file)
        self.objects = objects
        self.repo_dir_name = repo_dir_name
        self.fsync = fsync

    def _load(self) -> dict[str, IndexEntry]:
        if not self.index_file.exists():
            return {}
        try:
            data = json.loads(self.index_file.read_text(encoding='utf-8'))
            version = data['version']
            if version == INDEX_VERSION:
                return {item['path']: IndexEntry(**item) for item in data['entries']}
        except (ValueError, KeyError, TypeError) as e:
            msg = f'Corrupted index file {self.index_file}'
            raise StagingError(msg) from e

        msg = f'Unsupported index version: {version}'
        raise StagingError(msg)

    def _mutate(self, change: Callable[[dict[str, IndexEntry]], None]) -> None:
        lock = LockFile(self.index_file, fsync=self.fsync)
        try:
            lock.acquire()
        except FileLockedError as e:
            msg = 'Index is locked by another writer'
            raise StagingError(msg) from e

        try:
            entries = self._load()
            change(entries)
            data = {'version': INDEX_VERSION, 'entries': [asdict(entries[path]) for path in sorted(entries)]}
            lock.write(json.dumps(data, indent=1).encode('utf-8'))
            lock.commit()
        finally:
            lock.release()

    def normalize(self, path: str | PurePosixPath) -> str:
        return normalize_path(path, self.repo_dir_name)

    def entries(self) -> list[IndexEntry]:
        """All entries, ordered by path."""
        entries = self._load()
        return [entries[path] for path in sorted(entries)]

    def paths(self) -> list[str]:
        return [entry.path for entry in self.entries()]

    def get(self, path: str) -> IndexEntry | None:
        return self._load().get(self.normalize(path))

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        try:
            return self.get(path) is not None
        except ValueError:
            # Paths outside the working tree are never staged
            return False

    def __len__(self) -> int:
        return len(self._load())

    def stage(self, path: str | PurePosixPath, content: bytes, mode: int = FILE_MODE, mtime_ns: int = 0) -> HashRef:
        """Store content as a blob and stage it at path.

        Entries that clash with path as a file/directory (``a`` versus ``a/b``) are replaced.

        :return: The blob digest."""
        if mode not in VALID_MODES[TreeRecordType.BLOB]:
            msg = f'Invalid file mode: {mode:o}'
            raise ValueError(msg)

        normalized = self.normalize(path)
        blob_hash = self.objects.put(content, ObjectKind.BLOB)
        entry = IndexEntry(normalized, blob_hash, mode, len(content), mtime_ns)

        def change(entries: dict[str, IndexEntry]) -> None:
            parents = {'/'.join(normalized.split('/')[:depth]) for depth in range(1, normalized.count('/') + 1)}
            for existing in list(entries):
                if existing in parents or existing.startswith(normalized + '/'):
                    logger.debug('Replacing %s with %s', existing, normalized)
                    del entries[existing]
            entries[normalized] = entry

        self._mutate(change)
        logger.debug('Staged %s as %s', normalized, blob_hash)
        return blob_hash

    def stage_file(self, working_dir: Path, path: str | PurePosixPath) -> HashRef:
        """Stage the current content of a working-tree file."""
        normalized = self.normalize(path)
        file = working_dir / normalized
        stat = file.stat()
        mode = EXECUTABLE_MODE if stat.st_mode & 0o111 else FILE_MODE
        return self.stage(normalized, file.read_bytes(), mode, stat.st_mtime_ns)

    def unstage(self, path: str | PurePosixPath) -> None:
        """Remove a path from the index.

        :raises PathNotStagedError: If the path is not staged."""
        normalized = self.normalize(path)

        def change(entries: dict[str, IndexEntry]) -> None:
            if normalized not in entries:
                raise PathNotStagedError(normalized)
            del entries[normalized]

        self._mutate(change)
        logger.debug('Unstaged %s', normalized)

    def replace(self, new_entries: Iterable[IndexEntry]) -> None:
        """Replace the whole entry set in one atomic write."""
        replacement = {entry.path: entry for entry in new_entries}

        def change(entries: dict[str, IndexEntry]) -> None:
            entries.clear()
            entries.update(replacement)

        self._mutate(change)

    def clear(self) -> None:
        self.replace([])

    def build_tree(self) -> HashRef:
        """Write the staged entries as a nested tree and return the root digest."""
        return write_tree(self.objects, ((entry.path, entry.hash, entry.mode) for entry in self.entries()))

    def read_tree(self, tree_hash: str | None) -> None:
        """Replace the index with the content of a tree (or empty it for None)."""
        records = flatten_tree(self.objects, tree_hash)
        self.replace(IndexEntry(path, record.hash, record.mode) for path, record in records.items())
