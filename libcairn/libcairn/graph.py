"""The commit DAG: commit creation, merge bases and history walks.

Commits are addressed by digest and loaded through the object store on demand, so a
traversal never holds more than the commits it has visited."""

import heapq
import itertools
import logging
from collections import deque
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .exceptions import EmptyCommitError
from .object_store import ObjectStore
from .objects import Commit
from .ref import HashRef

logger = logging.getLogger(__name__)


class WalkOrder(Enum):
    CHRONOLOGICAL = 'chronological'
    TOPOLOGICAL = 'topological'


@dataclass
class LogEntry:
    """A class representing a log entry for a branch or commit history."""

    commit_ref: HashRef
    commit: Commit


class CommitGraph:
    def __init__(self, objects: ObjectStore) -> None:
        self.objects = objects
        # Generation numbers never change because commits are immutable
        self._generations: dict[str, int] = {}

    def load(self, commit_hash: str) -> Commit:
        return self.objects.load_commit(commit_hash)

    def commit(self, tree_hash: str, parents: Sequence[str], author: str, message: str,
               timestamp: int | None = None, *, allow_empty: bool = False) -> HashRef:
        """Write a new commit object.

        :param tree_hash: The tree the commit snapshots.
        :param parents: Parent commits, first parent first. They must already be stored.
        :param author: The commit author.
        :param message: The commit message.
        :param timestamp: Seconds since the epoch. Defaults to now.
        :param allow_empty: Allow a single-parent commit that does not change the tree.
        :return: The commit digest.
        :raises ValueError: If author or message is empty, or a parent is repeated.
        :raises ObjectNotFoundError: If the tree or a parent does not exist.
        :raises ObjectTypeError: If the tree or a parent has the wrong kind.
        :raises EmptyCommitError: If the commit would not change its sole parent's tree."""
        if not author:
            msg = 'Author is required'
            raise ValueError(msg)
        if not message:
            msg = 'Commit message is required'
            raise ValueError(msg)
        if len(set(parents)) != len(parents):
            msg = 'Duplicate parent commits'
            raise ValueError(msg)

        self.objects.load_tree(tree_hash)
        parent_commits = [self.load(parent) for parent in parents]

        if len(parent_commits) == 1 and parent_commits[0].tree_hash == tree_hash and not allow_empty:
            msg = 'Nothing to commit: tree is unchanged from the parent commit'
            raise EmptyCommitError(msg)

        if timestamp is None:
            timestamp = int(datetime.now().timestamp())

        commit = Commit(tree_hash, author, message, timestamp, tuple(parents))
        commit_hash = self.objects.put_object(commit)
        logger.debug('Created commit %s (tree %s, parents %s)', commit_hash, tree_hash, list(parents))
        return commit_hash

    def generation(self, commit_hash: str) -> int:
        """Length of the longest path from a root commit, counting the commit itself."""
        if commit_hash in self._generations:
            return self._generations[commit_hash]

        stack = [commit_hash]
        while stack:
            current = stack[-1]
            if current in self._generations:
                stack.pop()
                continue
            parents = self.load(current).parents
            pending = [parent for parent in parents if parent not in self._generations]
            if pending:
                stack.extend(pending)
                continue
            self._generations[current] = 1 + max((self._generations[p] for p in parents), default=0)
            stack.pop()

        return self._generations[commit_hash]

    def ancestors(self, commit_hash: str) -> set[HashRef]:
        """All commits reachable from commit_hash, including itself, found breadth-first."""
        seen = {HashRef(commit_hash)}
        queue = deque([commit_hash])
        while queue:
            for parent in self.load(queue.popleft()).parents:
                if parent not in seen:
                    seen.add(HashRef(parent))
                    queue.append(parent)
        return seen

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Check whether ancestor is reachable from descendant (a commit is its own ancestor)."""
        if ancestor == descendant:
            return True

        target_generation = self.generation(ancestor)
        seen = {descendant}
        queue = deque([descendant])
        while queue:
            current = queue.popleft()
            if current == ancestor:
                return True
            # Nothing below the ancestor's generation can lead back up to it
            if self.generation(current) <= target_generation:
                continue
            for parent in self.load(current).parents:
                if parent not in seen:
                    seen.add(parent)
                    queue.append(parent)
        return False

    def merge_base(self, commit_a: str, commit_b: str) -> HashRef | None:
        """Find the most recent common ancestor of two commits.

        Among all common ancestors the one with the greatest generation number wins; ties
        go to the newest timestamp, then to the smallest digest.

        :return: The merge base, or None if the histories are disjoint."""
        if commit_a == commit_b:
            self.load(commit_a)
            return HashRef(commit_a)

        ancestors_a = self.ancestors(commit_a)
        if commit_b in ancestors_a:
            return HashRef(commit_b)
        ancestors_b = self.ancestors(commit_b)
        if commit_a in ancestors_b:
            return HashRef(commit_a)

        common = ancestors_a & ancestors_b
        if not common:
            return None

        return min(common, key=lambda c: (-self.generation(c), -self.load(c).timestamp, c))

    def walk(self, starts: Iterable[str], order: WalkOrder = WalkOrder.CHRONOLOGICAL) -> Iterator[LogEntry]:
        """Lazily yield every commit reachable from starts exactly once.

        Each call starts a fresh traversal."""
        if order == WalkOrder.TOPOLOGICAL:
            return self._walk_topological(starts)
        return self._walk_chronological(starts)

    def _walk_chronological(self, starts: Iterable[str]) -> Iterator[LogEntry]:
        counter = itertools.count()
        heap: list[tuple[int, int, str, Commit]] = []
        seen: set[str] = set()

        for start in starts:
            if start not in seen:
                seen.add(start)
                commit = self.load(start)
                heapq.heappush(heap, (-commit.timestamp, next(counter), start, commit))

        while heap:
            _, _, commit_hash, commit = heapq.heappop(heap)
            yield LogEntry(HashRef(commit_hash), commit)
            for parent in commit.parents:
                if parent not in seen:
                    seen.add(parent)
                    parent_commit = self.load(parent)
                    heapq.heappush(heap, (-parent_commit.timestamp, next(counter), parent, parent_commit))

    def _walk_topological(self, starts: Iterable[str]) -> Iterator[LogEntry]:
        # First pass: collect the reachable commits and count children inside that set
        commits: dict[str, Commit] = {}
        child_counts: dict[str, int] = {}
        order = itertools.count()
        discovered: dict[str, int] = {}
        queue = deque()
        for start in starts:
            if start not in discovered:
                discovered[start] = next(order)
                queue.append(start)

        while queue:
            current = queue.popleft()
            commit = self.load(current)
            commits[current] = commit
            child_counts.setdefault(current, 0)
            for parent in commit.parents:
                child_counts[parent] = child_counts.get(parent, 0) + 1
                if parent not in discovered:
                    discovered[parent] = next(order)
                    queue.append(parent)

        ready = [(-commits[c].timestamp, discovered[c], c) for c, count in child_counts.items() if count == 0]
        heapq.heapify(ready)
        while ready:
            _, _, commit_hash = heapq.heappop(ready)
            commit = commits[commit_hash]
            yield LogEntry(HashRef(commit_hash), commit)
            for parent in commit.parents:
                child_counts[parent] -= 1
                if child_counts[parent] == 0:
                    heapq.heappush(ready, (-commits[parent].timestamp, discovered[parent], parent))

    def tree_of(self, commit_hash: str) -> HashRef:
        return HashRef(self.load(commit_hash).tree_hash)
