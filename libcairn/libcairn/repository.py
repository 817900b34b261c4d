"""libcairn repository management."""

import json
import logging
import os
import shutil
from collections.abc import Callable, Generator, Mapping
from dataclasses import dataclass
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Concatenate, ParamSpec, TypeVar

from . import AnnotatedTag, Blob, ObjectKind, TreeRecord, TreeRecordType
from .constants import (DEFAULT_BRANCH, DEFAULT_REPO_DIR, EXECUTABLE_MODE, FILE_MODE, HEAD_FILE, HEADS_DIR,
                        INDEX_FILE, MERGE_STATE_FILE, OBJECTS_SUBDIR, REFS_DIR, TAGS_DIR)
from .diff import Diff, RemovedDiff, Status, diff_records
from .exceptions import (CairnError, MergeAbortedError, MergeConflictError, MergeError, RefError,
                         ReferenceNotFoundError, RepositoryError, RepositoryNotFoundError)
from .fileio import atomic_write
from .graph import CommitGraph, LogEntry, WalkOrder
from .index import Index, IndexEntry
from .merge import ChangeKind, MergeEngine, MergeOutcome, MergeState
from .object_store import ObjectStore
from .plumbing import hash_string
from .ref import HashRef, Ref, SymRef, is_hash
from .refs import ANY, RefStore
from .trees import flatten_tree

logger = logging.getLogger(__name__)

P = ParamSpec('P')
R = TypeVar('R')


@dataclass
class Tag:
    """Represents a label that points to a commit.

    annotation is the digest of the annotated tag object, or None for a lightweight tag."""

    name: str
    target: HashRef
    annotation: HashRef | None = None


@dataclass
class PendingMerge:
    """A merge that stopped with conflicts and waits for the next commit."""

    theirs: HashRef
    message: str
    conflicts: list[str]


class Repository:
    """Represents a libcairn repository.

    This class provides methods to initialize a repository, manage branches and tags,
    stage and commit changes, inspect history and merge branches."""

    def __init__(self, working_dir: Path | str, repo_dir: Path | str | None = None, *, fsync: bool = True) -> None:
        """Initialize a Repository instance. The repository is not created on disk until `init()` is called.

        :param working_dir: The working directory where the repository will be located.
        :param repo_dir: The name of the repository directory within the working directory. Defaults to '.cairn'.
        :param fsync: Whether writes are flushed to stable storage before they are considered done."""
        self.working_dir = Path(working_dir)

        if repo_dir is None:
            self.repo_dir = Path(DEFAULT_REPO_DIR)
        else:
            self.repo_dir = Path(repo_dir)

        self.objects = ObjectStore(self.objects_dir(), fsync=fsync)
        self.ref_store = RefStore(self.repo_path(), fsync=fsync)
        self.index = Index(self.index_file(), self.objects, repo_dir_name=self.repo_dir.parts[0], fsync=fsync)
        self.graph = CommitGraph(self.objects)
        self.merger = MergeEngine(self.objects, self.ref_store, self.graph)
        self.fsync = fsync

    def init(self, default_branch: str = DEFAULT_BRANCH) -> None:
        """Initialize a new repository in the working directory.

        :param default_branch: The name of the default branch to create. Defaults to 'main'.
        :raises RepositoryError: If the repository already exists."""
        if self.exists():
            msg = f'Repository already exists at {self.repo_path()}'
            raise RepositoryError(msg)

        self.repo_path().mkdir(parents=True)
        self.objects_dir().mkdir()
        self.heads_dir().mkdir(parents=True)
        self.tags_dir().mkdir(parents=True)

        self.add_branch(default_branch)
        self.ref_store.update(HEAD_FILE, None, branch_ref(default_branch))
        logger.debug('Initialized repository at %s', self.repo_path())

    def exists(self) -> bool:
        """Check if the repository exists in the working directory."""
        return self.repo_path().exists()

    def repo_path(self) -> Path:
        return self.working_dir / self.repo_dir

    def objects_dir(self) -> Path:
        return self.repo_path() / OBJECTS_SUBDIR

    def refs_dir(self) -> Path:
        return self.repo_path() / REFS_DIR

    def heads_dir(self) -> Path:
        return self.refs_dir() / HEADS_DIR

    def tags_dir(self) -> Path:
        return self.refs_dir() / TAGS_DIR

    def head_file(self) -> Path:
        return self.repo_path() / HEAD_FILE

    def index_file(self) -> Path:
        return self.repo_path() / INDEX_FILE

    def merge_state_file(self) -> Path:
        return self.repo_path() / MERGE_STATE_FILE

    @staticmethod
    def requires_repo(func: Callable[Concatenate['Repository', P], R]) -> \
            Callable[Concatenate['Repository', P], R]:
        """Decorate a Repository method to ensure that the repository exists before executing the method.

        :param func: The method to decorate.
        :return: A wrapper function that checks for the repository's existence."""

        @wraps(func)
        def _verify_repo(self: 'Repository', *args: P.args, **kwargs: P.kwargs) -> R:
            if not self.exists():
                msg = f'Repository not initialized at {self.repo_path()}'
                raise RepositoryNotFoundError(msg)

            return func(self, *args, **kwargs)

        return _verify_repo

    @requires_repo
    def head_ref(self) -> Ref | None:
        """Get the current HEAD reference of the repository.

        :return: The current HEAD reference, which can be a HashRef or SymRef, or None if HEAD is empty.
        :raises RepositoryError: If the HEAD ref file does not exist.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        try:
            return self.ref_store.read(HEAD_FILE)
        except ReferenceNotFoundError as e:
            msg = 'HEAD ref file does not exist'
            raise RepositoryError(msg) from e

    @requires_repo
    def head_commit(self) -> HashRef | None:
        """Return the commit HEAD resolves to, or None if HEAD's branch has no commits yet.

        :raises RepositoryError: If the HEAD ref file does not exist.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        self.head_ref()
        _, commit_ref = self.ref_store.follow(HEAD_FILE)
        return commit_ref

    @requires_repo
    def current_branch(self) -> str | None:
        """Return the name of the checked-out branch, or None for a detached HEAD."""
        head_ref = self.head_ref()
        prefix = f'{HEADS_DIR}/'
        if isinstance(head_ref, SymRef) and head_ref.startswith(prefix):
            return head_ref[len(prefix):]
        return None

    @requires_repo
    def refs(self) -> list[SymRef]:
        """Get a list of all references under refs/, e.g. 'heads/main' and 'tags/v1.0'.

        :raises RepositoryError: If the refs directory does not exist or is not a directory.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        refs_dir = self.refs_dir()
        if not refs_dir.exists() or not refs_dir.is_dir():
            msg = f'Refs directory does not exist or is not a directory: {refs_dir}'
            raise RepositoryError(msg)

        return [SymRef(name) for name in self.ref_store.names()]

    def _peel(self, object_hash: HashRef) -> HashRef:
        """Follow annotated tag objects down to the object they label."""
        seen = set()
        while object_hash in self.objects and self.objects.kind_of(object_hash) == ObjectKind.TAG:
            if object_hash in seen:
                msg = f'Tag cycle at {object_hash}'
                raise RefError(msg)
            seen.add(object_hash)
            object_hash = HashRef(self.objects.load_tag(object_hash).target)
        return object_hash

    @requires_repo
    def resolve_ref(self, ref: Ref | str | None) -> HashRef | None:
        """Resolve a reference to a HashRef, following symbolic references if necessary.

        Strings are tried as HEAD, a full reference name ('heads/main'), a branch name, a tag name
        and finally a full object digest. Annotated tags resolve to the commit they label.

        :param ref: The reference to resolve. This can be a HashRef, SymRef, or a string.
        :return: The resolved HashRef or None if the reference exists but has no commits yet.
        :raises RefError: If the reference is invalid or cannot be resolved.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        match ref:
            case HashRef():
                return ref
            case SymRef():
                name = HEAD_FILE if ref.upper() == HEAD_FILE else str(ref)
                _, value = self.ref_store.follow(name)
                return self._peel(value) if value is not None else None
            case str():
                if ref.upper() == HEAD_FILE:
                    return self.resolve_ref(SymRef(HEAD_FILE))
                for candidate in (ref, f'{HEADS_DIR}/{ref}', f'{TAGS_DIR}/{ref}'):
                    try:
                        if self.ref_store.exists(candidate):
                            return self.resolve_ref(SymRef(candidate))
                    except RefError:
                        break
                if is_hash(ref):
                    return HashRef(ref)

                msg = f'Invalid reference: {ref}'
                raise RefError(msg)
            case None:
                return None
            case _:
                msg = f'Invalid reference type: {type(ref)}'
                raise RefError(msg)

    def _resolve_commit(self, ref: Ref | str | None) -> HashRef:
        """Resolve a reference that must name an existing commit, wrapping failures in RepositoryError."""
        try:
            commit_hash = self.resolve_ref(ref)
            if commit_hash is None:
                msg = f'Cannot resolve reference {ref}'
                raise RefError(msg)
            self.graph.load(commit_hash)
        except CairnError as e:
            msg = f'Cannot resolve commit for {ref}'
            raise RepositoryError(msg) from e
        return commit_hash

    @requires_repo
    def update_ref(self, ref_name: str, new_ref: Ref, expected: Ref | None | object = ANY) -> None:
        """Update an existing reference in the repository.

        :param ref_name: The name of the reference to update, e.g. 'heads/main'.
        :param new_ref: The new reference value to set.
        :param expected: If given, the value the reference must currently hold (compare-and-swap).
        :raises RepositoryError: If the reference does not exist.
        :raises RefConflictError: If the reference does not hold the expected value.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not self.ref_store.exists(ref_name):
            msg = f'Reference "{ref_name}" does not exist.'
            raise RepositoryError(msg)

        self.ref_store.update(ref_name, expected, new_ref)

    @requires_repo
    def delete_repo(self) -> None:
        """Delete the entire repository, including all objects and refs."""
        shutil.rmtree(self.repo_path())

    @requires_repo
    def save_file_content(self, file: Path) -> Blob:
        """Save the content of a file to the repository.

        :param file: The path to the file to save.
        :return: A Blob object representing the saved file content.
        :raises ValueError: If the file does not exist.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not file.is_file():
            msg = f'{file} is not a file'
            raise ValueError(msg)

        blob = Blob(file.read_bytes())
        self.objects.put(blob.content, ObjectKind.BLOB)
        return blob

    @requires_repo
    def add_branch(self, branch: str, start: Ref | str | None = None) -> None:
        """Add a new branch to the repository.

        :param branch: The name of the branch to add.
        :param start: Where the branch starts. Defaults to the commit HEAD points to; a branch created
            before the first commit has no commits either.
        :raises ValueError: If the branch name is empty.
        :raises RepositoryError: If the branch already exists or start cannot be resolved.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not branch:
            msg = 'Branch name is required'
            raise ValueError(msg)
        if self.branch_exists(SymRef(branch)):
            msg = f'Branch "{branch}" already exists'
            raise RepositoryError(msg)

        if start is not None:
            start_commit = self._resolve_commit(start)
        elif self.head_file().exists():
            start_commit = self.head_commit()
        else:
            start_commit = None

        self.ref_store.create(branch_ref(branch), start_commit)
        logger.debug('Created branch %s at %s', branch, start_commit)

    @requires_repo
    def delete_branch(self, branch: str) -> None:
        """Delete a branch from the repository.

        :param branch: The name of the branch to delete.
        :raises ValueError: If the branch name is empty.
        :raises RepositoryError: If the branch does not exist, is checked out, or is the last branch.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not branch:
            msg = 'Branch name is required'
            raise ValueError(msg)

        if not self.branch_exists(SymRef(branch)):
            msg = f'Branch "{branch}" does not exist.'
            raise RepositoryError(msg)
        if len(self.branches()) == 1:
            msg = f'Cannot delete the last branch "{branch}".'
            raise RepositoryError(msg)
        if self.current_branch() == branch:
            msg = f'Cannot delete the checked-out branch "{branch}".'
            raise RepositoryError(msg)

        self.ref_store.delete(branch_ref(branch))

    @requires_repo
    def branch_exists(self, branch_ref: Ref) -> bool:
        """Check if a branch exists in the repository."""
        return (self.heads_dir() / branch_ref).is_file()

    @requires_repo
    def branches(self) -> list[str]:
        """Get a sorted list of all branch names in the repository."""
        prefix = f'{HEADS_DIR}/'
        return [name[len(prefix):] for name in self.ref_store.names(HEADS_DIR)]

    @requires_repo
    def create_tag(self, tag_name: str, target: Ref | str, message: str | None = None,
                   tagger: str | None = None) -> Tag:
        """Create a new tag that points to the given target commit.

        Without a message the tag is a lightweight reference to the commit. With a message an
        annotated tag object is stored and the tag reference points to it.

        :param tag_name: The name of the tag to create.
        :param target: The reference (commit hash, branch, or tag) the new tag should point to.
        :param message: The annotation message.
        :param tagger: Who created the annotated tag.
        :return: The created Tag.
        :raises ValueError: If the tag name is empty, or a message is given without a tagger.
        :raises RepositoryError: If the tag already exists or the target cannot be resolved.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not tag_name:
            msg = 'Tag name is required'
            raise ValueError(msg)
        if message is not None and not tagger:
            msg = 'Tagger is required for annotated tags'
            raise ValueError(msg)

        if self.tag_exists(tag_name):
            msg = f'Tag "{tag_name}" already exists'
            raise RepositoryError(msg)

        try:
            resolved_target = self._resolve_commit(target)
        except RepositoryError as exc:
            msg = f'Cannot resolve target "{target}" for tag "{tag_name}"'
            raise RepositoryError(msg) from exc

        annotation = None
        ref_value = resolved_target
        if message is not None:
            tag_object = AnnotatedTag(resolved_target, tag_name, tagger, message, int(datetime.now().timestamp()))
            annotation = self.objects.put_object(tag_object)
            ref_value = annotation

        self.ref_store.create(tag_ref(tag_name), ref_value)
        return Tag(tag_name, resolved_target, annotation)

    @requires_repo
    def delete_tag(self, tag_name: str) -> None:
        """Delete a tag from the repository."""
        if not self.tag_exists(tag_name):
            msg = f'Tag "{tag_name}" does not exist.'
            raise RepositoryError(msg)

        self.ref_store.delete(tag_ref(tag_name))

    @requires_repo
    def list_tags(self) -> list[Tag]:
        """Return all tags sorted by name."""
        prefix = f'{TAGS_DIR}/'
        tags: list[Tag] = []
        for name in self.ref_store.names(TAGS_DIR):
            value = self.ref_store.read(name)
            if not isinstance(value, HashRef):
                msg = f'Invalid tag reference stored in {name}'
                raise RepositoryError(msg)

            target = self._peel(value)
            annotation = value if target != value else None
            tags.append(Tag(name[len(prefix):], target, annotation))

        return tags

    @requires_repo
    def tag_exists(self, tag_name: str) -> bool:
        """Check whether a tag with the given name exists."""
        if not tag_name:
            msg = 'Tag name is required'
            raise ValueError(msg)

        return (self.tags_dir() / tag_name).is_file()

    def _working_files(self) -> dict[str, Path]:
        """Map every file of the working tree (outside the repository directory) to its relative path."""
        files: dict[str, Path] = {}
        skip = self.repo_dir.parts[0]
        for root, dirs, names in os.walk(self.working_dir):
            root_path = Path(root)
            if root_path == self.working_dir:
                dirs[:] = [d for d in dirs if d != skip]
            for name in names:
                file = root_path / name
                if file.is_file():
                    files[file.relative_to(self.working_dir).as_posix()] = file
        return dict(sorted(files.items()))

    @staticmethod
    def _file_mode(file: Path) -> int:
        return EXECUTABLE_MODE if file.stat().st_mode & 0o111 else FILE_MODE

    @requires_repo
    def stage(self, path: str | Path, content: bytes | None = None) -> HashRef | None:
        """Stage a path for the next commit.

        :param path: The path relative to the working directory.
        :param content: The content to stage. Defaults to the current content of the working file;
            if that file no longer exists its removal is staged instead.
        :return: The staged blob digest, or None if a removal was staged.
        :raises StagingError: If the path neither exists nor is staged.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        normalized = self.index.normalize(str(path))

        if content is not None:
            blob_hash = self.index.stage(normalized, content)
        elif (self.working_dir / normalized).is_file():
            blob_hash = self.index.stage_file(self.working_dir, normalized)
        else:
            self.index.unstage(normalized)
            blob_hash = None

        self._mark_resolved([normalized])
        return blob_hash

    @requires_repo
    def unstage(self, path: str | Path) -> None:
        """Remove a path from the index.

        :raises PathNotStagedError: If the path is not staged."""
        self.index.unstage(str(path))

    @requires_repo
    def stage_all(self) -> None:
        """Make the index match the working tree: stage new and modified files, drop deleted ones."""
        entries = []
        for path, file in self._working_files().items():
            content = file.read_bytes()
            blob_hash = self.objects.put(content, ObjectKind.BLOB)
            entries.append(IndexEntry(self.index.normalize(path), blob_hash, self._file_mode(file), len(content),
                                      file.stat().st_mtime_ns))

        self.index.replace(entries)
        pending = self._read_pending_merge()
        if pending is not None:
            self._mark_resolved(pending.conflicts)

    @requires_repo
    def commit(self, author: str, message: str, *, allow_empty: bool = False, timestamp: int | None = None) -> HashRef:
        """Commit the staged content.

        The new commit's parents are the commit HEAD points to (if any) and, when concluding a
        conflicted merge, the merged commit. The reference HEAD points to is advanced through a
        compare-and-swap, so a concurrent commit to the same branch makes this one fail.

        :param author: The name of the commit author.
        :param message: The commit message.
        :param allow_empty: Allow a commit whose tree equals its parent's.
        :param timestamp: The commit timestamp. Defaults to now.
        :return: The new commit reference.
        :raises ValueError: If the author or message is empty.
        :raises MergeConflictError: If a pending merge still has unresolved paths.
        :raises EmptyCommitError: If nothing changed and allow_empty is false.
        :raises RefConflictError: If the branch moved while committing.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if not author:
            msg = 'Author is required'
            raise ValueError(msg)
        if not message:
            msg = 'Commit message is required'
            raise ValueError(msg)

        pending = self._read_pending_merge()
        if pending is not None and pending.conflicts:
            raise MergeConflictError(pending.conflicts)

        # HEAD either names a branch, which gets advanced, or is detached and gets replaced itself.
        # Either way the commit HEAD eventually resolves to becomes the parent of the new commit.
        target_name, parent_commit_ref = self.ref_store.follow(HEAD_FILE)
        parents = [parent_commit_ref] if parent_commit_ref else []
        if pending is not None:
            parents.append(pending.theirs)

        tree_hash = self.index.build_tree()
        commit_ref = self.graph.commit(tree_hash, parents, author, message, timestamp,
                                       allow_empty=allow_empty or pending is not None)
        self.ref_store.update(target_name, parent_commit_ref, commit_ref)

        if pending is not None:
            self.merge_state_file().unlink()
        logger.debug('Committed %s on %s', commit_ref, target_name)
        return commit_ref

    @requires_repo
    def commit_working_dir(self, author: str, message: str) -> HashRef:
        """Stage the whole working directory and commit it.

        :raises ValueError: If the author or message is empty."""
        if not author:
            msg = 'Author is required'
            raise ValueError(msg)
        if not message:
            msg = 'Commit message is required'
            raise ValueError(msg)

        self.stage_all()
        return self.commit(author, message)

    @requires_repo
    def log(self, tip: Ref | str | None = None,
            order: WalkOrder = WalkOrder.CHRONOLOGICAL) -> Generator[LogEntry, None, None]:
        """Generate the history reachable from a commit.

        :param tip: The reference to the commit to start from. If None, defaults to the current HEAD.
        :param order: Chronological (newest first) or topological (children before parents).
        :return: A generator yielding LogEntry objects representing the commits in the log.
        :raises RepositoryError: If a commit cannot be loaded.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        tip = tip or self.head_ref()
        try:
            start = self.resolve_ref(tip)
            if start is None:
                return
            yield from self.graph.walk([start], order)
        except CairnError as e:
            msg = f'Error loading history from {tip}'
            raise RepositoryError(msg) from e

    @requires_repo
    def merge_base(self, commit_ref1: Ref | str | None = None, commit_ref2: Ref | str | None = None) -> HashRef | None:
        """Find the most recent common ancestor of two commits, if one exists.

        :raises RepositoryError: If either reference cannot be resolved to a commit."""
        commit_hash1 = self._resolve_commit(commit_ref1 or self.head_ref())
        commit_hash2 = self._resolve_commit(commit_ref2 or self.head_ref())
        return self.graph.merge_base(commit_hash1, commit_hash2)

    def _commit_records(self, commit_ref: HashRef | None) -> dict[str, TreeRecord]:
        if commit_ref is None:
            return {}
        return flatten_tree(self.objects, self.graph.tree_of(commit_ref))

    @requires_repo
    def diff_commits(self, commit_ref1: Ref | str | None = None, commit_ref2: Ref | str | None = None) -> list[Diff]:
        """List the paths that differ between two commits.

        :param commit_ref1: The older commit. If None, defaults to the current HEAD.
        :param commit_ref2: The newer commit. If None, defaults to the current HEAD.
        :raises RepositoryError: If a commit or tree cannot be loaded."""
        commit_hash1 = self._resolve_commit(commit_ref1 or self.head_ref())
        commit_hash2 = self._resolve_commit(commit_ref2 or self.head_ref())

        try:
            if self.graph.tree_of(commit_hash1) == self.graph.tree_of(commit_hash2):
                return []
            return diff_records(self._commit_records(commit_hash1), self._commit_records(commit_hash2))
        except CairnError as e:
            msg = 'Error loading tree'
            raise RepositoryError(msg) from e

    def _index_records(self) -> dict[str, TreeRecord]:
        return {entry.path: TreeRecord(TreeRecordType.BLOB, entry.hash, entry.path.rsplit('/', 1)[-1], entry.mode)
                for entry in self.index.entries()}

    @requires_repo
    def status(self) -> Status:
        """Compare HEAD, the index and the working tree."""
        head_records = self._commit_records(self.head_commit())
        index_records = self._index_records()

        working_records: dict[str, TreeRecord] = {}
        untracked: list[str] = []
        for path, file in self._working_files().items():
            if path not in index_records:
                untracked.append(path)
                continue
            working_records[path] = TreeRecord(TreeRecordType.BLOB, hash_string(file.read_bytes()), file.name,
                                               self._file_mode(file))

        pending = self._read_pending_merge()
        return Status(
            staged=diff_records(head_records, index_records),
            unstaged=diff_records(index_records, working_records),
            untracked=untracked,
            conflicts=pending.conflicts if pending is not None else [],
        )

    def _write_working_file(self, path: str, record: TreeRecord, content: bytes | None = None) -> None:
        target = self.working_dir / path
        for parent in reversed(Path(path).parents[:-1]):
            if (self.working_dir / parent).is_file():
                (self.working_dir / parent).unlink()
        if target.is_dir():
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.objects.get(record.hash) if content is None else content)
        target.chmod(0o755 if record.mode == EXECUTABLE_MODE else 0o644)

    def _remove_working_file(self, path: str) -> None:
        target = self.working_dir / path
        if target.is_file():
            target.unlink()
        # Prune directories the removal left empty
        parent = target.parent
        while parent != self.working_dir and parent.is_dir() and not any(parent.iterdir()):
            parent.rmdir()
            parent = parent.parent

    def _update_working_tree(self, old: Mapping[str, TreeRecord], new: Mapping[str, TreeRecord], *,
                             force: bool = False) -> None:
        """Bring the working tree from the old snapshot to the new one.

        Without force only differing paths are touched; with force every new path is rewritten."""
        diffs = diff_records(old, new)
        for diff in diffs:
            if isinstance(diff, RemovedDiff):
                self._remove_working_file(diff.path)
        written = set()
        for diff in diffs:
            if not isinstance(diff, RemovedDiff):
                self._write_working_file(diff.path, diff.new)
                written.add(diff.path)
        if force:
            for path, record in new.items():
                if path not in written:
                    self._write_working_file(path, record)

    @requires_repo
    def checkout(self, target: str, *, force: bool = False) -> None:
        """Switch the working tree, index and HEAD to a branch or commit.

        A branch name makes HEAD follow that branch; anything else detaches HEAD at the commit.

        :param target: A branch name, tag name, reference name or commit hash.
        :param force: Discard local changes (and any pending merge) instead of refusing.
        :raises RepositoryError: If there are local changes and force is false, or target cannot be resolved.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        status = self.status()
        if not force and not status.is_clean():
            msg = 'Cannot checkout: working directory has uncommitted changes.'
            raise RepositoryError(msg)

        new_head: Ref
        if self.branch_exists(SymRef(target)):
            new_head = branch_ref(target)
            _, commit_ref = self.ref_store.follow(new_head)
        else:
            commit_ref = self._resolve_commit(target)
            new_head = commit_ref

        old_head = self.head_ref()
        old_records = self._index_records()
        new_records = self._commit_records(commit_ref)

        clobbered = [path for path in status.untracked if path in new_records]
        if clobbered and not force:
            msg = f'Cannot checkout: untracked files would be overwritten: {", ".join(clobbered)}'
            raise RepositoryError(msg)

        self._update_working_tree(old_records, new_records, force=force)
        self.index.read_tree(self.graph.tree_of(commit_ref) if commit_ref is not None else None)
        self.ref_store.update(HEAD_FILE, old_head, new_head)
        if force and self.merge_state_file().exists():
            self.merge_state_file().unlink()
        logger.debug('Checked out %s', new_head)

    def _read_pending_merge(self) -> PendingMerge | None:
        state_file = self.merge_state_file()
        if not state_file.exists():
            return None
        data = json.loads(state_file.read_text(encoding='utf-8'))
        return PendingMerge(HashRef(data['theirs']), data['message'], list(data['conflicts']))

    def _write_pending_merge(self, pending: PendingMerge) -> None:
        data = {'theirs': pending.theirs, 'message': pending.message, 'conflicts': pending.conflicts}
        atomic_write(self.merge_state_file(), json.dumps(data, indent=1).encode('utf-8'), fsync=self.fsync)

    def _mark_resolved(self, paths: list[str]) -> None:
        pending = self._read_pending_merge()
        if pending is None:
            return
        remaining = [path for path in pending.conflicts if path not in paths]
        if remaining != pending.conflicts:
            self._write_pending_merge(PendingMerge(pending.theirs, pending.message, remaining))

    @requires_repo
    def pending_merge(self) -> PendingMerge | None:
        """Return the merge waiting for conflict resolution, if any."""
        return self._read_pending_merge()

    @requires_repo
    def merge(self, other: Ref | str, author: str, message: str | None = None, *,
              allow_unrelated: bool = False, line_merge: bool = False) -> MergeOutcome:
        """Merge another branch or commit into the checked-out branch.

        A fast-forward or clean merge updates the branch, index and working tree. A conflicting
        merge commits nothing: the clean part of the result is staged, conflicted text files get
        their line merge with conflict markers (other conflicted files keep our version) and the
        merge waits for the conflicted paths to be staged and committed.

        :param other: The branch, tag or commit to merge.
        :param author: The author of the merge commit.
        :param message: The merge commit message.
        :param allow_unrelated: Merge histories that share no commit.
        :param line_merge: Let a clean line merge resolve files changed differently on both sides.
        :raises RepositoryError: If a merge is already pending or there are local changes.
        :raises MergeAbortedError: If other or a needed object cannot be read.
        :raises MergeError: If the histories are unrelated and allow_unrelated is false.
        :raises RefConflictError: If the branch moved while merging.
        :raises RepositoryNotFoundError: If the repository does not exist."""
        if self._read_pending_merge() is not None:
            msg = 'A merge is already in progress'
            raise RepositoryError(msg)
        status = self.status()
        if status.staged or status.unstaged:
            msg = 'Cannot merge: working directory has uncommitted changes.'
            raise RepositoryError(msg)

        try:
            theirs = self.resolve_ref(other)
        except RefError as e:
            msg = f'Cannot resolve {other}'
            raise MergeAbortedError(msg, e) from e
        if theirs is None:
            msg = f'Nothing to merge: {other} has no commits'
            raise MergeError(msg)

        message = message or f'Merge {other}'
        old_records = self._index_records()
        outcome = self.merger.merge(HEAD_FILE, theirs, author, message, allow_unrelated=allow_unrelated,
                                    line_merge=line_merge)

        match outcome.state:
            case MergeState.FAST_FORWARD | MergeState.RESOLVED:
                self._update_working_tree(old_records, self._commit_records(outcome.commit))
                self.index.read_tree(outcome.tree_hash)
            case MergeState.NEEDS_RESOLUTION:
                self._stage_conflicted_merge(old_records, outcome, message)
            case MergeState.UP_TO_DATE:
                pass

        return outcome

    def _stage_conflicted_merge(self, old_records: Mapping[str, TreeRecord], outcome: MergeOutcome,
                                message: str) -> None:
        new_records = dict(outcome.records)
        for conflict in outcome.conflicts:
            if conflict.kind != ChangeKind.FILE_DIRECTORY:
                new_records[conflict.path] = conflict.ours or conflict.theirs

        self._update_working_tree(old_records, new_records)
        for conflict in outcome.conflicts:
            if conflict.marker_blob is not None:
                self._write_working_file(conflict.path, conflict.ours, self.objects.get(conflict.marker_blob))

        self.index.replace(IndexEntry(path, record.hash, record.mode) for path, record in new_records.items())
        self._write_pending_merge(PendingMerge(outcome.theirs, message, outcome.conflict_paths))
        logger.debug('Merge of %s stopped with conflicts in %s', outcome.theirs, outcome.conflict_paths)

    @requires_repo
    def abort_merge(self) -> None:
        """Abandon a pending merge, restoring the index and working tree to HEAD.

        :raises RepositoryError: If no merge is pending."""
        if self._read_pending_merge() is None:
            msg = 'No merge in progress'
            raise RepositoryError(msg)

        head = self.head_commit()
        self._update_working_tree(self._index_records(), self._commit_records(head), force=True)
        self.index.read_tree(self.graph.tree_of(head) if head is not None else None)
        self.merge_state_file().unlink()


def branch_ref(branch: str) -> SymRef:
    """Create a symbolic reference for a branch name.

    :param branch: The name of the branch.
    :return: A SymRef object representing the branch reference."""
    return SymRef(f'{HEADS_DIR}/{branch}')


def tag_ref(tag: str) -> SymRef:
    """Create a symbolic reference for a tag name."""
    return SymRef(f'{TAGS_DIR}/{tag}')
