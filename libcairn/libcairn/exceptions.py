"""Exception hierarchy for libcairn."""

from collections.abc import Sequence


class CairnError(Exception):
    """Base class for all libcairn errors."""


class ObjectStoreError(CairnError):
    """Exception raised for object store errors."""


class ObjectNotFoundError(ObjectStoreError):
    """Exception raised when an object is not present in the object store."""

    def __init__(self, digest: str) -> None:
        super().__init__(f'Object {digest} not found')
        self.digest = digest


class CorruptObjectError(ObjectStoreError):
    """Exception raised when a stored object cannot be decoded."""


class ObjectTypeError(ObjectStoreError):
    """Exception raised when an object has a different kind than the one requested."""


class RefError(CairnError):
    """Exception raised for invalid or unresolvable references."""


class ReferenceNotFoundError(RefError):
    """Exception raised when a reference does not exist."""

    def __init__(self, name: str, msg: str | None = None) -> None:
        super().__init__(msg or f'Reference "{name}" does not exist')
        self.name = name


class ReferenceCycleError(RefError):
    """Exception raised when a chain of symbolic references does not terminate."""

    def __init__(self, chain: Sequence[str]) -> None:
        super().__init__(f'Symbolic reference cycle: {" -> ".join(chain)}')
        self.chain = list(chain)


class RefConflictError(RefError):
    """Exception raised when a compare-and-swap reference update loses a race.

    The caller is expected to re-read the reference and retry."""

    def __init__(self, name: str, expected: object, actual: object, msg: str | None = None) -> None:
        super().__init__(msg or f'Reference "{name}" is {actual!r}, expected {expected!r}')
        self.name = name
        self.expected = expected
        self.actual = actual


class StagingError(CairnError):
    """Exception raised for index errors."""


class PathNotStagedError(StagingError):
    """Exception raised when a path is not present in the index."""

    def __init__(self, path: str) -> None:
        super().__init__(f'Path "{path}" is not staged')
        self.path = path


class CommitError(CairnError):
    """Exception raised when a commit cannot be created."""


class EmptyCommitError(CommitError):
    """Exception raised when a commit would not change the tree of its sole parent."""


class MergeError(CairnError):
    """Exception raised for merge-related errors."""


class MergeConflictError(MergeError):
    """Exception raised when unresolved merge conflicts block an operation."""

    def __init__(self, paths: Sequence[str]) -> None:
        super().__init__(f'Unresolved merge conflicts: {", ".join(paths)}')
        self.paths = list(paths)


class MergeAbortedError(MergeError):
    """Exception raised when a merge is aborted because of a lower-level failure."""

    def __init__(self, msg: str, cause: BaseException) -> None:
        super().__init__(f'{msg}: {cause}')
        self.cause = cause


class RepositoryError(CairnError):
    """Exception raised for repository-related errors."""


class RepositoryNotFoundError(RepositoryError):
    """Exception raised when a repository is not found."""
