"""Constants used throughout libcairn."""

import string

DEFAULT_REPO_DIR = '.cairn'
DEFAULT_BRANCH = 'main'

OBJECTS_SUBDIR = 'objects'
REFS_DIR = 'refs'
HEADS_DIR = 'heads'
TAGS_DIR = 'tags'
HEAD_FILE = 'HEAD'
INDEX_FILE = 'index'
MERGE_STATE_FILE = 'MERGE_STATE'
LOCK_SUFFIX = '.lock'

HASH_LENGTH = 40
HASH_CHARSET = frozenset(string.hexdigits.lower())

# Symbolic references may be chained (HEAD -> heads/main), but never deeper than this.
MAX_SYMREF_DEPTH = 5

FILE_MODE = 0o100644
EXECUTABLE_MODE = 0o100755
TREE_MODE = 0o040000

COMPRESSION_LEVEL = 6
INDEX_VERSION = 1

SYMREF_PREFIX = 'ref: '
