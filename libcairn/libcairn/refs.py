"""Mutable named references with compare-and-swap updates."""

import logging
from pathlib import Path

from .constants import HEAD_FILE, LOCK_SUFFIX, MAX_SYMREF_DEPTH, REFS_DIR
from .exceptions import RefConflictError, RefError, ReferenceCycleError, ReferenceNotFoundError
from .fileio import FileLockedError, LockFile
from .ref import HashRef, Ref, SymRef, is_hash, parse_ref, read_ref, serialize_ref

logger = logging.getLogger(__name__)

# Sentinel for "do not compare the current value"
ANY = object()


def validate_ref_name(name: str) -> None:
    """Check that a reference name is safe to map onto a file path.

    :raises RefError: If it is not."""
    if not name or name.startswith('/') or name.endswith('/'):
        msg = f'Invalid reference name: {name!r}'
        raise RefError(msg)
    for part in name.split('/'):
        if not part or part in {'.', '..'} or part.startswith('.') or part.endswith(LOCK_SUFFIX):
            msg = f'Invalid reference name: {name!r}'
            raise RefError(msg)
        if any(c in part for c in '\0\n\r\t\\ ~^:?*['):
            msg = f'Invalid character in reference name: {name!r}'
            raise RefError(msg)


def _matches(current: Ref | None, expected: Ref | str | None) -> bool:
    if current is None or expected is None:
        return current is expected
    if not isinstance(expected, HashRef | SymRef):
        expected = HashRef(expected) if is_hash(expected) else SymRef(expected)
    return type(current) is type(expected) and current == expected


class RefStore:
    """References stored one per file: HEAD at the repository root, everything else under refs/.

    Every mutation goes through a `<ref>.lock` file, which makes `update` and `delete` atomic
    compare-and-swap operations. A writer that finds the lock held, or finds a value other
    than the one it expected, gets RefConflictError and is expected to re-read and retry."""

    def __init__(self, repo_path: Path | str, *, max_depth: int = MAX_SYMREF_DEPTH, fsync: bool = True) -> None:
        self.repo_path = Path(repo_path)
        self.max_depth = max_depth
        self.fsync = fsync

    def refs_dir(self) -> Path:
        return self.repo_path / REFS_DIR

    def path_for(self, name: str) -> Path:
        if name == HEAD_FILE:
            return self.repo_path / HEAD_FILE
        validate_ref_name(name)
        return self.refs_dir() / name

    def exists(self, name: str) -> bool:
        return self.path_for(name).is_file()

    def read(self, name: str) -> Ref | None:
        """Read the raw value of a reference without following it.

        :return: The stored value, or None if the reference is unborn.
        :raises ReferenceNotFoundError: If the reference does not exist."""
        path = self.path_for(name)
        try:
            return read_ref(path)
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError) as e:
            raise ReferenceNotFoundError(name) from e

    def follow(self, name: str) -> tuple[str, HashRef | None]:
        """Follow a chain of symbolic references to its end.

        :return: The name of the last reference in the chain and its value (None if unborn).
        :raises ReferenceCycleError: If the chain revisits a reference or exceeds max_depth hops.
        :raises ReferenceNotFoundError: If any reference in the chain does not exist."""
        chain = [name]
        current = name
        for _ in range(self.max_depth + 1):
            value = self.read(current)
            if not isinstance(value, SymRef):
                return current, value
            target = str(value)
            if target in chain:
                raise ReferenceCycleError([*chain, target])
            chain.append(target)
            current = target

        raise ReferenceCycleError(chain)

    def resolve(self, name: str) -> HashRef:
        """Resolve a reference to the digest it ultimately points to.

        :raises ReferenceNotFoundError: If the reference (or a link of its chain) does not exist or is unborn.
        :raises ReferenceCycleError: If the symbolic chain does not terminate."""
        final_name, value = self.follow(name)
        if value is None:
            msg = f'Reference "{final_name}" does not point to an object yet'
            raise ReferenceNotFoundError(final_name, msg)
        return value

    def update(self, name: str, expected: Ref | None | object, new: Ref | None) -> None:
        """Atomically replace the value of a reference if it still holds the expected value.

        The named reference itself is updated; symbolic references are not followed.

        :param name: The reference to update.
        :param expected: The value the caller last observed. None means the reference must be
            absent or unborn. ANY skips the comparison.
        :param new: The new value.
        :raises RefConflictError: If the current value differs from expected or another writer holds the lock."""
        path = self.path_for(name)
        lock = LockFile(path, fsync=self.fsync)
        try:
            lock.acquire()
        except FileLockedError as e:
            raise RefConflictError(name, expected, None, f'Reference "{name}" is being updated concurrently') from e

        try:
            current = parse_ref(path.read_text(encoding='utf-8')) if path.is_file() else None
            if expected is not ANY and not _matches(current, expected):
                raise RefConflictError(name, expected, current)
            lock.write(serialize_ref(new))
            lock.commit()
        finally:
            lock.release()

        logger.debug('Updated ref %s: %s -> %s', name, expected if expected is not ANY else '*', new)

    def create(self, name: str, value: Ref | None = None) -> None:
        """Create a new reference.

        :raises RefConflictError: If the reference already exists."""
        path = self.path_for(name)
        lock = LockFile(path, fsync=self.fsync)
        try:
            lock.acquire()
        except FileLockedError as e:
            raise RefConflictError(name, None, None, f'Reference "{name}" is being updated concurrently') from e

        try:
            if path.exists():
                raise RefConflictError(name, None, read_ref(path), f'Reference "{name}" already exists')
            lock.write(serialize_ref(value))
            lock.commit()
        finally:
            lock.release()

        logger.debug('Created ref %s -> %s', name, value)

    def delete(self, name: str, expected: Ref | None | object = ANY) -> None:
        """Delete a reference.

        :raises ReferenceNotFoundError: If the reference does not exist.
        :raises RefConflictError: If expected is given and does not match, or another writer holds the lock."""
        path = self.path_for(name)
        if not path.is_file():
            raise ReferenceNotFoundError(name)

        lock = LockFile(path, fsync=self.fsync)
        try:
            lock.acquire()
        except FileLockedError as e:
            raise RefConflictError(name, expected, None, f'Reference "{name}" is being updated concurrently') from e

        try:
            if not path.is_file():
                raise ReferenceNotFoundError(name)
            current = read_ref(path)
            if expected is not ANY and not _matches(current, expected):
                raise RefConflictError(name, expected, current)
            lock.commit_delete()
        finally:
            lock.release()

        logger.debug('Deleted ref %s', name)

    def names(self, prefix: str = '') -> list[str]:
        """List reference names under refs/, optionally restricted to a prefix such as 'heads'."""
        root = self.refs_dir() / prefix if prefix else self.refs_dir()
        if not root.is_dir():
            return []
        return sorted(path.relative_to(self.refs_dir()).as_posix() for path in root.rglob('*')
                      if path.is_file() and not path.name.endswith(LOCK_SUFFIX)
                      and not path.name.startswith('.'))
