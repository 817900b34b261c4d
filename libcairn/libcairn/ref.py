"""Reference values and their on-disk encoding."""

from pathlib import Path

from .constants import HASH_CHARSET, HASH_LENGTH, SYMREF_PREFIX
from .exceptions import RefError
from .fileio import atomic_write

__all__ = ['HashRef', 'Ref', 'RefError', 'SymRef', 'is_hash', 'parse_ref', 'read_ref', 'serialize_ref', 'write_ref']


class HashRef(str):
    """A direct reference: the digest of an object."""

    __slots__ = ()


class SymRef(str):
    """A symbolic reference: the name of another reference, e.g. 'heads/main'."""

    __slots__ = ()


Ref = HashRef | SymRef


def is_hash(value: str) -> bool:
    """Return True if value looks like a full object digest."""
    return len(value) == HASH_LENGTH and all(c in HASH_CHARSET for c in value)


def parse_ref(text: str) -> Ref | None:
    """Decode the content of a ref file.

    :param text: The file content.
    :return: A SymRef, a HashRef, or None for an empty (unborn) ref.
    :raises RefError: If the content is neither."""
    value = text.strip()
    if not value:
        return None
    if value.startswith(SYMREF_PREFIX):
        target = value[len(SYMREF_PREFIX):].strip()
        if not target:
            msg = 'Empty symbolic reference'
            raise RefError(msg)
        return SymRef(target)
    if is_hash(value):
        return HashRef(value)

    msg = f'Invalid reference content: {value!r}'
    raise RefError(msg)


def serialize_ref(ref: Ref | None) -> bytes:
    match ref:
        case None:
            return b''
        case SymRef():
            return f'{SYMREF_PREFIX}{ref}\n'.encode()
        case HashRef():
            return f'{ref}\n'.encode()
        case _:
            msg = f'Invalid reference type: {type(ref)}'
            raise RefError(msg)


def read_ref(ref_file: Path) -> Ref | None:
    """Read a reference from a file.

    :param ref_file: The ref file to read.
    :return: The stored reference, or None if the file is empty.
    :raises RefError: If the file content is not a valid reference."""
    return parse_ref(ref_file.read_text(encoding='utf-8'))


def write_ref(ref_file: Path, ref: Ref | None, *, fsync: bool = True) -> None:
    """Atomically replace the content of a ref file.

    This does no compare-and-swap. Concurrent writers should go through RefStore.update."""
    atomic_write(ref_file, serialize_ref(ref), fsync=fsync)
