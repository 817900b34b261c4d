"""Content-addressed storage of immutable objects."""

import logging
import zlib
from collections.abc import Iterator
from pathlib import Path

from .constants import COMPRESSION_LEVEL
from .exceptions import CorruptObjectError, ObjectNotFoundError, ObjectTypeError
from .fileio import atomic_write
from .objects import (AnnotatedTag, Blob, CairnObject, Commit, ObjectKind, Tree, deserialize, digest, frame,
                      serialize, unframe)
from .ref import HashRef, is_hash

logger = logging.getLogger(__name__)


class ObjectStore:
    """A directory of loose objects, each stored under ``<xx>/<digest>``.

    Objects are written once and never modified, so concurrent writers need no locking:
    two writers racing on the same digest produce identical bytes and the final rename
    is atomic."""

    def __init__(self, objects_dir: Path | str, *, fsync: bool = True,
                 compression_level: int = COMPRESSION_LEVEL) -> None:
        self.objects_dir = Path(objects_dir)
        self.fsync = fsync
        self.compression_level = compression_level

    def path_for(self, object_hash: str) -> Path:
        """Get the path an object is (or would be) stored at.

        :raises ValueError: If object_hash is not a valid digest."""
        if not is_hash(object_hash):
            msg = f'Invalid object hash: {object_hash!r}'
            raise ValueError(msg)
        return self.objects_dir / object_hash[:2] / object_hash

    def put(self, content: bytes, kind: ObjectKind = ObjectKind.BLOB) -> HashRef:
        """Store content as an object of the given kind.

        Storing content that is already present is a no-op returning the same digest.
        The object is durable by the time this returns.

        :param content: The object body.
        :param kind: The object kind.
        :return: The object digest."""
        object_hash = digest(kind, content)
        path = self.path_for(object_hash)
        if path.exists():
            return object_hash

        atomic_write(path, zlib.compress(frame(kind, content), self.compression_level), fsync=self.fsync)
        logger.debug('Stored %s %s (%d bytes)', kind, object_hash, len(content))
        return object_hash

    def put_object(self, obj: CairnObject) -> HashRef:
        kind, body = serialize(obj)
        return self.put(body, kind)

    def read(self, object_hash: str) -> tuple[ObjectKind, bytes]:
        """Read an object's kind and body.

        :raises ObjectNotFoundError: If the object is not stored.
        :raises CorruptObjectError: If the stored data cannot be decoded or does not match its digest."""
        try:
            path = self.path_for(object_hash)
        except ValueError as e:
            raise ObjectNotFoundError(object_hash) from e
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise ObjectNotFoundError(object_hash) from e

        try:
            raw = zlib.decompress(data)
        except zlib.error as e:
            msg = f'Object {object_hash} is not a valid compressed stream'
            raise CorruptObjectError(msg) from e

        kind, body = unframe(raw)
        if digest(kind, body) != object_hash:
            msg = f'Object {object_hash} does not match its content'
            raise CorruptObjectError(msg)
        return kind, body

    def get(self, object_hash: str) -> bytes:
        """Get the body of an object."""
        return self.read(object_hash)[1]

    def contains(self, object_hash: str) -> bool:
        return is_hash(object_hash) and self.path_for(object_hash).is_file()

    def __contains__(self, object_hash: object) -> bool:
        return isinstance(object_hash, str) and self.contains(object_hash)

    def __iter__(self) -> Iterator[HashRef]:
        if not self.objects_dir.is_dir():
            return
        for fan_dir in sorted(self.objects_dir.iterdir()):
            if not fan_dir.is_dir():
                continue
            for object_file in sorted(fan_dir.iterdir()):
                if is_hash(object_file.name) and object_file.name.startswith(fan_dir.name):
                    yield HashRef(object_file.name)

    def kind_of(self, object_hash: str) -> ObjectKind:
        return self.read(object_hash)[0]

    def load_object(self, object_hash: str) -> CairnObject:
        return deserialize(*self.read(object_hash))

    def _load_kind(self, object_hash: str, expected: ObjectKind) -> CairnObject:
        kind, body = self.read(object_hash)
        if kind != expected:
            msg = f'Object {object_hash} is a {kind}, not a {expected}'
            raise ObjectTypeError(msg)
        return deserialize(kind, body)

    def load_blob(self, object_hash: str) -> Blob:
        return self._load_kind(object_hash, ObjectKind.BLOB)

    def load_tree(self, object_hash: str) -> Tree:
        return self._load_kind(object_hash, ObjectKind.TREE)

    def load_commit(self, object_hash: str) -> Commit:
        return self._load_kind(object_hash, ObjectKind.COMMIT)

    def load_tag(self, object_hash: str) -> AnnotatedTag:
        return self._load_kind(object_hash, ObjectKind.TAG)
