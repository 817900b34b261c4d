"""libcairn: a local, content-addressed version-control engine."""

import logging

from .objects import AnnotatedTag, Blob, Commit, ObjectKind, Tree, TreeRecord, TreeRecordType

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ['AnnotatedTag', 'Blob', 'Commit', 'ObjectKind', 'Tree', 'TreeRecord', 'TreeRecordType']
