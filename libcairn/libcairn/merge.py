"""Three-way merge of commits, trees and blobs."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from merge3 import Merge3

from .exceptions import (MergeAbortedError, MergeConflictError, MergeError, ObjectStoreError, ReferenceCycleError,
                         ReferenceNotFoundError)
from .graph import CommitGraph
from .object_store import ObjectStore
from .objects import ObjectKind, TreeRecord, TreeRecordType
from .ref import HashRef
from .refs import RefStore
from .trees import flatten_tree, write_records

logger = logging.getLogger(__name__)

OURS_MARKER = b'<<<<<<< ours\n'
SEPARATOR_MARKER = b'=======\n'
THEIRS_MARKER = b'>>>>>>> theirs\n'


class ChangeKind(Enum):
    """How a single path changed on each side relative to the merge base."""

    UNCHANGED = 'unchanged'
    CHANGED_IN_OURS = 'changed-in-ours'
    CHANGED_IN_THEIRS = 'changed-in-theirs'
    CHANGED_IN_BOTH_SAME = 'changed-in-both-same'
    CHANGED_IN_BOTH_DIFFERENT = 'changed-in-both-different'
    ADDED_IN_OURS = 'added-in-ours'
    ADDED_IN_THEIRS = 'added-in-theirs'
    ADDED_IN_BOTH_SAME = 'added-in-both-same'
    ADDED_IN_BOTH_DIFFERENT = 'added-in-both-different'
    DELETED_IN_OURS = 'deleted-in-ours'
    DELETED_IN_THEIRS = 'deleted-in-theirs'
    DELETED_IN_BOTH = 'deleted-in-both'
    DELETED_IN_OURS_CHANGED_IN_THEIRS = 'deleted-in-ours-changed-in-theirs'
    DELETED_IN_THEIRS_CHANGED_IN_OURS = 'deleted-in-theirs-changed-in-ours'
    FILE_DIRECTORY = 'file-directory'


CONFLICT_KINDS = frozenset({
    ChangeKind.CHANGED_IN_BOTH_DIFFERENT,
    ChangeKind.ADDED_IN_BOTH_DIFFERENT,
    ChangeKind.DELETED_IN_OURS_CHANGED_IN_THEIRS,
    ChangeKind.DELETED_IN_THEIRS_CHANGED_IN_OURS,
    ChangeKind.FILE_DIRECTORY,
})


class MergeState(Enum):
    UP_TO_DATE = 'up-to-date'
    FAST_FORWARD = 'fast-forward'
    RESOLVED = 'resolved'
    NEEDS_RESOLUTION = 'needs-resolution'


@dataclass(frozen=True)
class ConflictEntry:
    """A path the merge could not resolve, with the three versions involved.

    marker_blob, when set, is a blob holding the line merge of both sides, with conflict markers around
    the regions where they clash."""

    path: str
    kind: ChangeKind
    base: TreeRecord | None
    ours: TreeRecord | None
    theirs: TreeRecord | None
    marker_blob: HashRef | None = None


@dataclass
class TreeMergeResult:
    """Represents the output of a 3-way tree merge.

    tree_hash is None when there are conflicts; records then holds the resolved paths only."""

    tree_hash: HashRef | None
    records: dict[str, TreeRecord]
    conflicts: list[ConflictEntry]


@dataclass
class MergeOutcome:
    """The terminal state of a merge attempt."""

    state: MergeState
    ours: HashRef | None
    theirs: HashRef
    base: HashRef | None
    commit: HashRef | None = None
    tree_hash: HashRef | None = None
    conflicts: list[ConflictEntry] = field(default_factory=list)
    records: dict[str, TreeRecord] = field(default_factory=dict)

    @property
    def conflict_paths(self) -> list[str]:
        return [conflict.path for conflict in self.conflicts]

    def raise_for_conflicts(self) -> None:
        """Raise MergeConflictError if the merge needs manual resolution."""
        if self.state == MergeState.NEEDS_RESOLUTION:
            raise MergeConflictError(self.conflict_paths)


def records_match(record1: TreeRecord | None, record2: TreeRecord | None) -> bool:
    if record1 is None or record2 is None:
        return record1 is record2
    return record1.type == record2.type and record1.hash == record2.hash and record1.mode == record2.mode


def classify(base: TreeRecord | None, ours: TreeRecord | None, theirs: TreeRecord | None) -> ChangeKind:
    """Classify one path given its base, ours and theirs versions (None where absent)."""
    if base is None:
        if ours is None and theirs is None:
            msg = 'Path is absent from all three trees'
            raise ValueError(msg)
        if theirs is None:
            return ChangeKind.ADDED_IN_OURS
        if ours is None:
            return ChangeKind.ADDED_IN_THEIRS
        return ChangeKind.ADDED_IN_BOTH_SAME if records_match(ours, theirs) else ChangeKind.ADDED_IN_BOTH_DIFFERENT

    if ours is None and theirs is None:
        return ChangeKind.DELETED_IN_BOTH
    if ours is None:
        if records_match(base, theirs):
            return ChangeKind.DELETED_IN_OURS
        return ChangeKind.DELETED_IN_OURS_CHANGED_IN_THEIRS
    if theirs is None:
        if records_match(base, ours):
            return ChangeKind.DELETED_IN_THEIRS
        return ChangeKind.DELETED_IN_THEIRS_CHANGED_IN_OURS

    ours_changed = not records_match(base, ours)
    theirs_changed = not records_match(base, theirs)
    if ours_changed and theirs_changed:
        if records_match(ours, theirs):
            return ChangeKind.CHANGED_IN_BOTH_SAME
        return ChangeKind.CHANGED_IN_BOTH_DIFFERENT
    if ours_changed:
        return ChangeKind.CHANGED_IN_OURS
    if theirs_changed:
        return ChangeKind.CHANGED_IN_THEIRS
    return ChangeKind.UNCHANGED


def is_text(content: bytes) -> bool:
    return b'\0' not in content


def _terminated(lines: Sequence[bytes]) -> list[bytes]:
    lines = list(lines)
    if lines and not lines[-1].endswith(b'\n'):
        lines[-1] += b'\n'
    return lines


def merge_text(base: bytes, ours: bytes, theirs: bytes) -> tuple[bytes, bool]:
    """Merge three versions of text line by line.

    :return: The merged content, with conflict markers around clashing regions, and whether there were any."""
    merger = Merge3(base.splitlines(keepends=True), ours.splitlines(keepends=True), theirs.splitlines(keepends=True))

    content_buffer: list[bytes] = []
    conflict = False
    for group in merger.merge_groups():
        group_type = group[0]
        if group_type == 'conflict':
            conflict = True
            _, _, ours_lines, theirs_lines = group
            content_buffer.append(OURS_MARKER)
            content_buffer.extend(_terminated(ours_lines))
            content_buffer.append(SEPARATOR_MARKER)
            content_buffer.extend(_terminated(theirs_lines))
            content_buffer.append(THEIRS_MARKER)
        else:
            # 'unchanged', 'same', 'a' and 'b' all carry the lines to keep
            content_buffer.extend(group[1])

    return b''.join(content_buffer), conflict


def merge_blob_text(
    store: ObjectStore,
    base_hash: str | None,
    ours_hash: str,
    theirs_hash: str,
) -> tuple[HashRef, bool]:
    """Merge three versions of a blob.

    Hashes are compared before any content is read, so the common cases never touch the
    blobs. Binary content that differs on both sides is a conflict and keeps our version.

    :param base_hash: The common ancestor's blob, or None if the path did not exist there.
    :return: The merged blob digest and whether the merge has conflicts."""
    if ours_hash == theirs_hash:
        return HashRef(ours_hash), False
    if base_hash is not None and ours_hash == base_hash:
        return HashRef(theirs_hash), False
    if base_hash is not None and theirs_hash == base_hash:
        return HashRef(ours_hash), False

    base = store.get(base_hash) if base_hash is not None else b''
    ours = store.get(ours_hash)
    theirs = store.get(theirs_hash)
    if not (is_text(base) and is_text(ours) and is_text(theirs)):
        return HashRef(ours_hash), True

    merged, conflict = merge_text(base, ours, theirs)
    return store.put(merged, ObjectKind.BLOB), conflict


def _merge_mode(base: int | None, ours: int, theirs: int) -> int | None:
    if ours == theirs:
        return ours
    if base == ours:
        return theirs
    if base == theirs:
        return ours
    return None


def _resolve_both_changed(store: ObjectStore, path: str, kind: ChangeKind, base: TreeRecord | None,
                          ours: TreeRecord, theirs: TreeRecord, line_merge: bool) -> TreeRecord | ConflictEntry:
    base_hash = base.hash if base is not None else None
    mode = _merge_mode(base.mode if base is not None else None, ours.mode, theirs.mode)
    merged_hash, text_conflict = merge_blob_text(store, base_hash, ours.hash, theirs.hash)

    # Both sides adding different content is never merged silently
    added_twice = kind == ChangeKind.ADDED_IN_BOTH_DIFFERENT and ours.hash != theirs.hash
    if line_merge and not text_conflict and not added_twice and mode is not None:
        return TreeRecord(TreeRecordType.BLOB, merged_hash, ours.name, mode)

    marker_blob = merged_hash if merged_hash != ours.hash else None
    return ConflictEntry(path, kind, base, ours, theirs, marker_blob)


def merge_trees(store: ObjectStore, base_tree: str | None, ours_tree: str | None,
                theirs_tree: str | None, *, line_merge: bool = False) -> TreeMergeResult:
    """Merge two trees against their common ancestor.

    Every path present in any of the three trees is classified and resolved on its own.
    When no path conflicts the merged tree is written and its digest returned; otherwise
    nothing but conflict marker blobs is written.

    :param base_tree: The merge base tree, or None to merge unrelated histories.
    :param line_merge: Resolve a path changed differently on both sides when its line merge is clean.
        Without it every such path is a conflict."""
    base_records = flatten_tree(store, base_tree)
    ours_records = flatten_tree(store, ours_tree)
    theirs_records = flatten_tree(store, theirs_tree)

    merged: dict[str, TreeRecord] = {}
    conflicts: dict[str, ConflictEntry] = {}

    for path in sorted(set(base_records) | set(ours_records) | set(theirs_records)):
        base = base_records.get(path)
        ours = ours_records.get(path)
        theirs = theirs_records.get(path)
        kind = classify(base, ours, theirs)

        match kind:
            case (ChangeKind.UNCHANGED | ChangeKind.CHANGED_IN_OURS | ChangeKind.ADDED_IN_OURS
                  | ChangeKind.CHANGED_IN_BOTH_SAME | ChangeKind.ADDED_IN_BOTH_SAME):
                merged[path] = ours
            case ChangeKind.CHANGED_IN_THEIRS | ChangeKind.ADDED_IN_THEIRS:
                merged[path] = theirs
            case ChangeKind.DELETED_IN_OURS | ChangeKind.DELETED_IN_THEIRS | ChangeKind.DELETED_IN_BOTH:
                pass
            case ChangeKind.CHANGED_IN_BOTH_DIFFERENT | ChangeKind.ADDED_IN_BOTH_DIFFERENT:
                resolution = _resolve_both_changed(store, path, kind, base, ours, theirs, line_merge)
                if isinstance(resolution, ConflictEntry):
                    conflicts[path] = resolution
                else:
                    merged[path] = resolution
            case _:
                conflicts[path] = ConflictEntry(path, kind, base, ours, theirs)

    # A path cannot stay a file if another surviving path needs it as a directory
    occupied = set(merged) | set(conflicts)
    for path in sorted(occupied):
        parts = path.split('/')
        for depth in range(1, len(parts)):
            prefix = '/'.join(parts[:depth])
            if prefix in merged:
                record = merged.pop(prefix)
                conflicts[prefix] = ConflictEntry(prefix, ChangeKind.FILE_DIRECTORY, base_records.get(prefix),
                                                  ours_records.get(prefix), theirs_records.get(prefix))
                logger.debug('File/directory conflict at %s (kept %s)', prefix, record.hash)
            elif prefix in conflicts and conflicts[prefix].kind != ChangeKind.FILE_DIRECTORY:
                # The conflicted file keeps its place, so the path below it gives way
                merged.pop(path, None)
                conflicts[path] = ConflictEntry(path, ChangeKind.FILE_DIRECTORY, base_records.get(path),
                                                ours_records.get(path), theirs_records.get(path))
                logger.debug('File/directory conflict at %s below conflicted %s', path, prefix)
                break

    conflict_list = [conflicts[path] for path in sorted(conflicts)]
    if conflict_list:
        return TreeMergeResult(None, merged, conflict_list)

    return TreeMergeResult(write_records(store, merged), merged, [])


class MergeEngine:
    """Runs a single merge attempt from start to one of the terminal MergeStates.

    The compare-and-swap reference update is the only externally visible write: a merge
    that fails before it leaves at most unreferenced objects behind."""

    def __init__(self, objects: ObjectStore, refs: RefStore, graph: CommitGraph) -> None:
        self.objects = objects
        self.refs = refs
        self.graph = graph

    def merge(self, target: str, theirs: str, author: str, message: str | None = None, *,
              allow_unrelated: bool = False, timestamp: int | None = None, line_merge: bool = False) -> MergeOutcome:
        """Merge the commit theirs into the reference target.

        :param target: The reference to merge into; symbolic references are followed, so 'HEAD' merges into
            the checked-out branch.
        :param theirs: The commit to merge.
        :param author: The author of a merge commit.
        :param message: The merge commit message.
        :param allow_unrelated: Merge histories without a common ancestor against an empty base.
        :param timestamp: The merge commit timestamp.
        :param line_merge: Let a clean line merge resolve paths changed differently on both sides.
        :raises MergeAbortedError: If a reference or object needed by the merge cannot be read.
        :raises MergeError: If the histories are unrelated and allow_unrelated is false.
        :raises RefConflictError: If target moved while the merge was running."""
        try:
            target_name, ours = self.refs.follow(target)
            theirs = HashRef(theirs)
            self.graph.load(theirs)
            base = self.graph.merge_base(ours, theirs) if ours is not None else None
        except (ObjectStoreError, ReferenceNotFoundError, ReferenceCycleError) as e:
            msg = 'Cannot start merge'
            raise MergeAbortedError(msg, e) from e

        if ours is not None and base == theirs:
            logger.debug('Merge %s into %s: already up to date', theirs, target_name)
            return MergeOutcome(MergeState.UP_TO_DATE, ours, theirs, base, commit=ours)

        if ours is None or base == ours:
            self.refs.update(target_name, ours, theirs)
            logger.debug('Merge %s into %s: fast-forward from %s', theirs, target_name, ours)
            return MergeOutcome(MergeState.FAST_FORWARD, ours, theirs, base, commit=theirs,
                                tree_hash=self.graph.tree_of(theirs))

        if base is None and not allow_unrelated:
            msg = f'No common ancestor found for merging {theirs} into {target_name}'
            raise MergeError(msg)

        try:
            result = merge_trees(
                self.objects,
                self.graph.tree_of(base) if base is not None else None,
                self.graph.tree_of(ours),
                self.graph.tree_of(theirs),
                line_merge=line_merge,
            )
        except ObjectStoreError as e:
            msg = 'Error merging trees'
            raise MergeAbortedError(msg, e) from e

        if result.conflicts:
            logger.debug('Merge %s into %s: %d conflicts', theirs, target_name, len(result.conflicts))
            return MergeOutcome(MergeState.NEEDS_RESOLUTION, ours, theirs, base, conflicts=result.conflicts,
                                records=result.records)

        try:
            merge_commit = self.graph.commit(
                result.tree_hash,
                [ours, theirs],
                author,
                message or f'Merge {theirs} into {target_name}',
                timestamp,
                allow_empty=True,
            )
        except ObjectStoreError as e:
            msg = 'Error writing merge commit'
            raise MergeAbortedError(msg, e) from e

        self.refs.update(target_name, ours, merge_commit)
        logger.debug('Merge %s into %s: resolved as %s', theirs, target_name, merge_commit)
        return MergeOutcome(MergeState.RESOLVED, ours, theirs, base, commit=merge_commit,
                            tree_hash=result.tree_hash, records=result.records)
