"""Path-level differences between snapshots."""

from collections.abc import Mapping
from dataclasses import dataclass, field

from .objects import TreeRecord


@dataclass(frozen=True)
class Diff:
    """A class representing a difference at a single path."""

    path: str
    old: TreeRecord | None
    new: TreeRecord | None


@dataclass(frozen=True)
class AddedDiff(Diff):
    """A path that only exists in the newer snapshot."""


@dataclass(frozen=True)
class RemovedDiff(Diff):
    """A path that only exists in the older snapshot."""


@dataclass(frozen=True)
class ModifiedDiff(Diff):
    """A path whose content or mode changed."""


@dataclass
class Status:
    """The state of the working tree and index relative to HEAD."""

    staged: list[Diff] = field(default_factory=list)
    unstaged: list[Diff] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    def is_clean(self) -> bool:
        """True when nothing is staged, modified or conflicted. Untracked files are ignored."""
        return not (self.staged or self.unstaged or self.conflicts)


def diff_records(old: Mapping[str, TreeRecord], new: Mapping[str, TreeRecord]) -> list[Diff]:
    """Compare two flat path listings, returning the differences sorted by path."""
    diffs: list[Diff] = []
    for path in sorted(set(old) | set(new)):
        old_record = old.get(path)
        new_record = new.get(path)
        if old_record is None:
            diffs.append(AddedDiff(path, None, new_record))
        elif new_record is None:
            diffs.append(RemovedDiff(path, old_record, None))
        elif old_record.hash != new_record.hash or old_record.mode != new_record.mode:
            diffs.append(ModifiedDiff(path, old_record, new_record))
    return diffs
