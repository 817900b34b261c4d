"""Low-level helpers that operate on an objects directory."""

from pathlib import Path

from .object_store import ObjectStore
from .objects import AnnotatedTag, Blob, Commit, ObjectKind, Tree, digest, hash_object
from .ref import HashRef

__all__ = ['get_content_path', 'hash_object', 'hash_string', 'load_commit', 'load_tag', 'load_tree', 'read_blob',
           'save_blob', 'save_commit', 'save_file_content', 'save_tag', 'save_tree']


def hash_string(content: str | bytes) -> HashRef:
    """Compute the digest a blob with this content would have."""
    if isinstance(content, str):
        content = content.encode('utf-8')
    return digest(ObjectKind.BLOB, content)


def get_content_path(objects_dir: str | Path, object_hash: str) -> Path:
    return ObjectStore(objects_dir).path_for(object_hash)


def save_blob(objects_dir: str | Path, content: bytes) -> Blob:
    blob = Blob(content)
    ObjectStore(objects_dir).put(content, ObjectKind.BLOB)
    return blob


def save_file_content(objects_dir: str | Path, file: Path) -> Blob:
    """Store the content of a file as a blob.

    :raises ValueError: If the file does not exist."""
    if not file.is_file():
        msg = f'{file} is not a file'
        raise ValueError(msg)
    return save_blob(objects_dir, file.read_bytes())


def read_blob(objects_dir: str | Path, blob_hash: str) -> bytes:
    return ObjectStore(objects_dir).load_blob(blob_hash).content


def save_tree(objects_dir: str | Path, tree: Tree) -> HashRef:
    return ObjectStore(objects_dir).put_object(tree)


def load_tree(objects_dir: str | Path, tree_hash: str) -> Tree:
    return ObjectStore(objects_dir).load_tree(tree_hash)


def save_commit(objects_dir: str | Path, commit: Commit) -> HashRef:
    return ObjectStore(objects_dir).put_object(commit)


def load_commit(objects_dir: str | Path, commit_hash: str) -> Commit:
    return ObjectStore(objects_dir).load_commit(commit_hash)


def save_tag(objects_dir: str | Path, tag: AnnotatedTag) -> HashRef:
    return ObjectStore(objects_dir).put_object(tag)


def load_tag(objects_dir: str | Path, tag_hash: str) -> AnnotatedTag:
    return ObjectStore(objects_dir).load_tag(tag_hash)
