"""Object types stored in a libcairn repository and their canonical encoding.

Every object is serialized to a body, framed as ``b'<kind> <length>\\0' + body`` and
identified by the SHA-1 of that frame. Including the kind and length in the hashed
bytes keeps a blob from ever sharing a digest with a tree or commit of the same body."""

import hashlib
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from functools import cached_property

from .constants import EXECUTABLE_MODE, FILE_MODE, TREE_MODE
from .exceptions import CorruptObjectError
from .ref import HashRef, is_hash


class ObjectKind(StrEnum):
    BLOB = 'blob'
    TREE = 'tree'
    COMMIT = 'commit'
    TAG = 'tag'


class TreeRecordType(Enum):
    BLOB = 'blob'
    TREE = 'tree'


VALID_MODES = {
    TreeRecordType.BLOB: frozenset({FILE_MODE, EXECUTABLE_MODE}),
    TreeRecordType.TREE: frozenset({TREE_MODE}),
}


@dataclass(frozen=True)
class Blob:
    """Raw file content."""

    content: bytes

    @cached_property
    def hash(self) -> HashRef:
        return hash_object(self)


@dataclass(frozen=True)
class TreeRecord:
    """An entry of a tree: a named blob or subtree."""

    type: TreeRecordType
    hash: str
    name: str
    mode: int = 0

    def __post_init__(self) -> None:
        if not self.mode:
            default = TREE_MODE if self.type == TreeRecordType.TREE else FILE_MODE
            object.__setattr__(self, 'mode', default)


@dataclass(frozen=True)
class Tree:
    """A directory listing, mapping names to records."""

    records: dict[str, TreeRecord] = field(default_factory=dict)


@dataclass(frozen=True)
class Commit:
    """A snapshot of a tree together with its history."""

    tree_hash: str
    author: str
    message: str
    timestamp: int
    parents: tuple[str, ...] = ()

    @property
    def parent(self) -> str | None:
        """The first parent, or None for a root commit."""
        return self.parents[0] if self.parents else None


@dataclass(frozen=True)
class AnnotatedTag:
    """A named, annotated pointer to another object."""

    target: str
    name: str
    tagger: str
    message: str
    timestamp: int
    target_kind: ObjectKind = ObjectKind.COMMIT


CairnObject = Blob | Tree | Commit | AnnotatedTag


def validate_name(name: str) -> None:
    """Check that a tree record name is a single, safe path segment.

    :raises ValueError: If it is not."""
    if not name or name in {'.', '..'}:
        msg = f'Invalid tree entry name: {name!r}'
        raise ValueError(msg)
    if any(c in name for c in '/\0\n\t'):
        msg = f'Tree entry name contains a forbidden character: {name!r}'
        raise ValueError(msg)


def _check_single_line(label: str, value: str) -> None:
    if '\n' in value:
        msg = f'{label} must be a single line'
        raise ValueError(msg)


def serialize_tree(tree: Tree) -> bytes:
    lines = []
    for name in sorted(tree.records):
        record = tree.records[name]
        validate_name(name)
        if record.mode not in VALID_MODES[record.type]:
            msg = f'Invalid mode {record.mode:o} for {record.type.value} {name!r}'
            raise ValueError(msg)
        lines.append(f'{record.mode:06o} {record.type.value} {record.hash}\t{name}\n')
    return ''.join(lines).encode('utf-8')


def serialize_commit(commit: Commit) -> bytes:
    _check_single_line('Author', commit.author)
    header = [f'tree {commit.tree_hash}']
    header.extend(f'parent {parent}' for parent in commit.parents)
    header.append(f'author {commit.author}')
    header.append(f'timestamp {commit.timestamp}')
    return ('\n'.join(header) + '\n\n' + commit.message).encode('utf-8')


def serialize_tag(tag: AnnotatedTag) -> bytes:
    _check_single_line('Tag name', tag.name)
    _check_single_line('Tagger', tag.tagger)
    header = [
        f'object {tag.target}',
        f'kind {tag.target_kind}',
        f'tag {tag.name}',
        f'tagger {tag.tagger}',
        f'timestamp {tag.timestamp}',
    ]
    return ('\n'.join(header) + '\n\n' + tag.message).encode('utf-8')


def serialize(obj: CairnObject) -> tuple[ObjectKind, bytes]:
    """Return the kind and canonical body of an object."""
    match obj:
        case Blob():
            return ObjectKind.BLOB, obj.content
        case Tree():
            return ObjectKind.TREE, serialize_tree(obj)
        case Commit():
            return ObjectKind.COMMIT, serialize_commit(obj)
        case AnnotatedTag():
            return ObjectKind.TAG, serialize_tag(obj)
        case _:
            msg = f'Cannot serialize {type(obj)}'
            raise TypeError(msg)


def frame(kind: ObjectKind, body: bytes) -> bytes:
    return f'{kind} {len(body)}\0'.encode('ascii') + body


def unframe(data: bytes) -> tuple[ObjectKind, bytes]:
    """Split a framed object into kind and body, checking the declared length.

    :raises CorruptObjectError: If the header is malformed or the length does not match."""
    header, sep, body = data.partition(b'\0')
    if not sep:
        msg = 'Missing object header'
        raise CorruptObjectError(msg)
    try:
        kind_text, length_text = header.decode('ascii').split(' ')
        kind = ObjectKind(kind_text)
        length = int(length_text)
    except ValueError as e:
        msg = f'Malformed object header: {header[:32]!r}'
        raise CorruptObjectError(msg) from e
    if length != len(body):
        msg = f'Object length mismatch: header says {length}, body has {len(body)}'
        raise CorruptObjectError(msg)
    return kind, body


def digest(kind: ObjectKind, body: bytes) -> HashRef:
    return HashRef(hashlib.sha1(frame(kind, body)).hexdigest())


def hash_object(obj: CairnObject) -> HashRef:
    """Compute the digest of an object without storing it."""
    return digest(*serialize(obj))


def _split_header(body: bytes) -> tuple[list[tuple[str, str]], str]:
    text = body.decode('utf-8')
    head, sep, message = text.partition('\n\n')
    if not sep:
        msg = 'Missing header terminator'
        raise ValueError(msg)
    fields = []
    for line in head.split('\n'):
        key, _, value = line.partition(' ')
        fields.append((key, value))
    return fields, message


def parse_tree(body: bytes) -> Tree:
    records: dict[str, TreeRecord] = {}
    try:
        # Names may hold any character but newline, tab, NUL and slash, so only split on newlines
        *lines, tail = body.decode('utf-8').split('\n')
        if tail:
            raise ValueError(tail)
        for line in lines:
            meta, _, name = line.partition('\t')
            mode_text, type_text, record_hash = meta.split(' ')
            record_type = TreeRecordType(type_text)
            mode = int(mode_text, 8)
            validate_name(name)
            if not is_hash(record_hash) or mode not in VALID_MODES[record_type]:
                raise ValueError(line)
            records[name] = TreeRecord(record_type, record_hash, name, mode)
    except ValueError as e:
        msg = 'Malformed tree object'
        raise CorruptObjectError(msg) from e
    return Tree(records)


def parse_commit(body: bytes) -> Commit:
    try:
        fields, message = _split_header(body)
        values: dict[str, str] = {}
        parents: list[str] = []
        for key, value in fields:
            if key == 'parent':
                parents.append(value)
            elif key in {'tree', 'author', 'timestamp'}:
                values[key] = value
            else:
                raise ValueError(key)
        return Commit(values['tree'], values['author'], message, int(values['timestamp']), tuple(parents))
    except (KeyError, ValueError) as e:
        msg = 'Malformed commit object'
        raise CorruptObjectError(msg) from e


def parse_tag(body: bytes) -> AnnotatedTag:
    try:
        fields, message = _split_header(body)
        values = dict(fields)
        return AnnotatedTag(values['object'], values['tag'], values['tagger'], message,
                            int(values['timestamp']), ObjectKind(values['kind']))
    except (KeyError, ValueError) as e:
        msg = 'Malformed tag object'
        raise CorruptObjectError(msg) from e


def deserialize(kind: ObjectKind, body: bytes) -> CairnObject:
    match kind:
        case ObjectKind.BLOB:
            return Blob(body)
        case ObjectKind.TREE:
            return parse_tree(body)
        case ObjectKind.COMMIT:
            return parse_commit(body)
        case ObjectKind.TAG:
            return parse_tag(body)
