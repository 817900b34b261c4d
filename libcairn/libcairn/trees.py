"""Conversion between flat path listings and nested tree objects."""

from collections.abc import Iterable, Mapping

from .constants import TREE_MODE
from .object_store import ObjectStore
from .objects import Tree, TreeRecord, TreeRecordType, validate_name
from .ref import HashRef

EMPTY_TREE = Tree({})


def split_path(path: str) -> list[str]:
    parts = path.split('/')
    for part in parts:
        validate_name(part)
    return parts


def write_tree(store: ObjectStore, entries: Iterable[tuple[str, str, int]]) -> HashRef:
    """Write a nested tree for a flat list of (path, blob hash, mode) entries.

    One tree is written per directory, each sorted by name, deepest directories first.
    The same entries always produce the same root digest.

    :raises ValueError: If a path is both a file and a directory, or contains an invalid segment."""
    directories: dict[tuple[str, ...], dict[str, TreeRecord]] = {(): {}}
    files: set[tuple[str, ...]] = set()

    for path, blob_hash, mode in entries:
        parts = tuple(split_path(path))
        for depth in range(1, len(parts)):
            prefix = parts[:depth]
            if prefix in files:
                msg = f'Path {"/".join(prefix)} is both a file and a directory'
                raise ValueError(msg)
            directories.setdefault(prefix, {})
        if parts in directories:
            msg = f'Path {path} is both a file and a directory'
            raise ValueError(msg)
        files.add(parts)
        directories[parts[:-1]][parts[-1]] = TreeRecord(TreeRecordType.BLOB, blob_hash, parts[-1], mode)

    for prefix in sorted(directories, key=len, reverse=True):
        tree_hash = store.put_object(Tree(dict(sorted(directories[prefix].items()))))
        if not prefix:
            return tree_hash
        name = prefix[-1]
        directories[prefix[:-1]][name] = TreeRecord(TreeRecordType.TREE, tree_hash, name, TREE_MODE)

    msg = 'Root tree was not written'
    raise AssertionError(msg)


def write_records(store: ObjectStore, records: Mapping[str, TreeRecord]) -> HashRef:
    """Write a nested tree for a mapping of path to blob record."""
    return write_tree(store, ((path, record.hash, record.mode) for path, record in records.items()))


def flatten_tree(store: ObjectStore, tree_hash: str | None) -> dict[str, TreeRecord]:
    """List every blob reachable from a tree, keyed by its slash-separated path.

    :param tree_hash: The root tree, or None for an empty listing."""
    flat: dict[str, TreeRecord] = {}
    if tree_hash is None:
        return flat

    stack = [('', tree_hash)]
    while stack:
        prefix, current_hash = stack.pop()
        for name, record in store.load_tree(current_hash).records.items():
            path = f'{prefix}/{name}' if prefix else name
            if record.type == TreeRecordType.TREE:
                stack.append((path, record.hash))
            else:
                flat[path] = record

    return dict(sorted(flat.items()))
