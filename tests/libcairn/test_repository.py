from pathlib import Path

from libcairn.constants import DEFAULT_BRANCH, EXECUTABLE_MODE, HASH_LENGTH
from libcairn.diff import AddedDiff, ModifiedDiff, RemovedDiff
from libcairn.exceptions import (EmptyCommitError, MergeConflictError, MergeError, PathNotStagedError,
                                 RefConflictError, RepositoryNotFoundError, StagingError)
from libcairn.graph import WalkOrder
from libcairn.merge import MergeState
from libcairn.plumbing import hash_object, hash_string, load_commit, read_blob
from libcairn.ref import HashRef, RefError, SymRef, write_ref
from libcairn.repository import Repository, RepositoryError, Tag, branch_ref
from libcairn.trees import flatten_tree
from pytest import MonkeyPatch, raises


def _write(repo: Repository, files: dict[str, str]) -> None:
    for path, content in files.items():
        file = repo.working_dir / path
        file.parent.mkdir(parents=True, exist_ok=True)
        file.write_text(content)


def _read(repo: Repository, path: str) -> str:
    return (repo.working_dir / path).read_text()


def _commit_files(repo: Repository, files: dict[str, str], message: str = 'Update') -> HashRef:
    _write(repo, files)
    return repo.commit_working_dir('John Doe', message)


def _diverge(repo: Repository, base: dict[str, str], ours: dict[str, str],
             theirs: dict[str, str]) -> tuple[HashRef, HashRef]:
    """Commit base on main, theirs on a new 'feature' branch and ours on main, ending on main."""
    _commit_files(repo, base, 'Base')
    repo.add_branch('feature')
    ours_commit = _commit_files(repo, ours, 'Ours')
    repo.checkout('feature')
    theirs_commit = _commit_files(repo, theirs, 'Theirs')
    repo.checkout(DEFAULT_BRANCH)
    return ours_commit, theirs_commit


def test_init_with_custom_repo_dir(temp_repo_dir: Path) -> None:
    custom_repo_dir = '.custom_cairn'
    repo = Repository(temp_repo_dir, custom_repo_dir)

    assert repo.repo_dir.name == custom_repo_dir
    assert str(repo.repo_dir) == custom_repo_dir

    repo.init()
    assert repo.exists()
    assert (temp_repo_dir / custom_repo_dir).exists()


def test_init_layout(temp_repo: Repository) -> None:
    assert temp_repo.objects_dir().is_dir()
    assert temp_repo.heads_dir().is_dir()
    assert temp_repo.tags_dir().is_dir()
    assert temp_repo.head_file().read_text() == f'ref: heads/{DEFAULT_BRANCH}\n'
    assert temp_repo.head_ref() == branch_ref(DEFAULT_BRANCH)
    assert temp_repo.head_commit() is None
    assert temp_repo.current_branch() == DEFAULT_BRANCH
    assert temp_repo.branches() == [DEFAULT_BRANCH]


def test_init_twice(temp_repo: Repository) -> None:
    with raises(RepositoryError, match='already exists'):
        temp_repo.init()


def test_operations_require_repo(temp_repo_dir: Path) -> None:
    repo = Repository(temp_repo_dir)

    with raises(RepositoryNotFoundError):
        repo.head_ref()
    with raises(RepositoryNotFoundError):
        repo.commit('John Doe', 'Nothing here')


def test_delete_repo(temp_repo: Repository) -> None:
    temp_repo.delete_repo()

    assert not temp_repo.exists()


def test_commit(temp_repo: Repository) -> None:
    temp_file = temp_repo.working_dir / 'test_file.txt'
    temp_file.write_text('This is a test file for commit.')

    author, message = 'John Doe', 'Initial commit'

    commit_ref = temp_repo.commit_working_dir(author, message)
    commit = load_commit(temp_repo.objects_dir(), commit_ref)

    assert commit.author == author
    assert commit.message == message
    assert commit.parents == ()

    # HEAD keeps pointing to the branch and the branch points to the commit
    assert temp_repo.head_ref() == branch_ref(DEFAULT_BRANCH)
    assert temp_repo.head_commit() == commit_ref

    commit_object = temp_repo.objects_dir() / commit_ref[:2] / commit_ref
    assert commit_object.exists()


def test_commit_with_parent(temp_repo: Repository) -> None:
    objects_dir = temp_repo.objects_dir()

    first_commit_ref = _commit_files(temp_repo, {'test_file.txt': 'Initial commit content'}, 'First commit')
    first_commit = load_commit(objects_dir, first_commit_ref)

    assert first_commit_ref == hash_object(first_commit)

    second_commit_ref = _commit_files(temp_repo, {'test_file.txt': 'Second commit content'}, 'Second commit')
    second_commit = load_commit(objects_dir, second_commit_ref)

    assert second_commit_ref == hash_object(second_commit)
    assert temp_repo.head_commit() == second_commit_ref
    assert second_commit.parent == first_commit_ref


def test_commit_requires_author_and_message(temp_repo: Repository) -> None:
    with raises(ValueError, match='Author is required'):
        temp_repo.commit_working_dir('', 'Message')
    with raises(ValueError, match='Commit message is required'):
        temp_repo.commit('John Doe', '')


def test_empty_commit(temp_repo: Repository) -> None:
    first = _commit_files(temp_repo, {'a.txt': 'a'})

    with raises(EmptyCommitError):
        temp_repo.commit('John Doe', 'Nothing changed')

    second = temp_repo.commit('John Doe', 'Nothing changed', allow_empty=True)
    assert load_commit(temp_repo.objects_dir(), second).parent == first


def test_commit_lost_race(temp_repo: Repository, monkeypatch: MonkeyPatch) -> None:
    first = _commit_files(temp_repo, {'a.txt': 'a'})
    concurrent = temp_repo.graph.commit(temp_repo.graph.tree_of(first), [first], 'Jane Roe', 'Elsewhere',
                                        allow_empty=True)
    create_commit = temp_repo.graph.commit

    def commit_then_move_branch(*args: object, **kwargs: object) -> HashRef:
        commit_ref = create_commit(*args, **kwargs)
        temp_repo.update_ref(f'heads/{DEFAULT_BRANCH}', concurrent)
        return commit_ref

    monkeypatch.setattr(temp_repo.graph, 'commit', commit_then_move_branch)
    _write(temp_repo, {'a.txt': 'b'})
    temp_repo.stage('a.txt')

    with raises(RefConflictError):
        temp_repo.commit('John Doe', 'Loses the race')

    assert temp_repo.head_commit() == concurrent


def test_commit_on_empty_head(temp_repo: Repository) -> None:
    _commit_files(temp_repo, {'a.txt': 'a'})
    write_ref(temp_repo.head_file(), None)

    orphan = _commit_files(temp_repo, {'a.txt': 'orphan'})

    assert load_commit(temp_repo.objects_dir(), orphan).parents == ()
    assert temp_repo.head_ref() == orphan


def test_save_file_content(temp_repo: Repository) -> None:
    file = temp_repo.working_dir / 'data.bin'
    file.write_bytes(b'\x00\x01\x02')

    blob = temp_repo.save_file_content(file)

    assert read_blob(temp_repo.objects_dir(), blob.hash) == b'\x00\x01\x02'
    with raises(ValueError):
        temp_repo.save_file_content(temp_repo.working_dir / 'missing.bin')


def test_stage_and_status(temp_repo: Repository) -> None:
    _commit_files(temp_repo, {'tracked.txt': 'v1', 'doomed.txt': 'bye'})

    _write(temp_repo, {'tracked.txt': 'v2', 'new.txt': 'new', 'untracked.txt': '?'})
    (temp_repo.working_dir / 'doomed.txt').unlink()
    temp_repo.stage('new.txt')

    status = temp_repo.status()

    assert [(type(diff), diff.path) for diff in status.staged] == [(AddedDiff, 'new.txt')]
    assert [(type(diff), diff.path) for diff in status.unstaged] == [(RemovedDiff, 'doomed.txt'),
                                                                      (ModifiedDiff, 'tracked.txt')]
    assert status.untracked == ['untracked.txt']
    assert not status.is_clean()

    assert temp_repo.stage('doomed.txt') is None
    temp_repo.stage('tracked.txt')

    status = temp_repo.status()
    assert [(type(diff), diff.path) for diff in status.staged] == [(RemovedDiff, 'doomed.txt'),
                                                                    (AddedDiff, 'new.txt'),
                                                                    (ModifiedDiff, 'tracked.txt')]
    assert status.unstaged == []


def test_stage_explicit_content(temp_repo: Repository) -> None:
    blob_hash = temp_repo.stage('virtual.txt', b'never on disk')

    assert blob_hash == hash_string('never on disk')
    assert temp_repo.index.paths() == ['virtual.txt']
    assert not (temp_repo.working_dir / 'virtual.txt').exists()


def test_stage_missing_path(temp_repo: Repository) -> None:
    with raises(StagingError):
        temp_repo.stage('nowhere.txt')


def test_stage_rejects_repository_internals(temp_repo: Repository) -> None:
    with raises(ValueError):
        temp_repo.stage('.cairn/HEAD')
    with raises(ValueError):
        temp_repo.stage('../outside.txt')


def test_unstage(temp_repo: Repository) -> None:
    _write(temp_repo, {'a.txt': 'a'})
    temp_repo.stage('a.txt')

    temp_repo.unstage('a.txt')

    assert temp_repo.index.paths() == []
    with raises(PathNotStagedError):
        temp_repo.unstage('a.txt')


def test_executable_bit_is_committed(temp_repo: Repository) -> None:
    script = temp_repo.working_dir / 'bin' / 'run.sh'
    script.parent.mkdir()
    script.write_text('#!/bin/sh\n')
    script.chmod(0o755)

    commit_ref = temp_repo.commit_working_dir('John Doe', 'Add script')
    tree = temp_repo.objects.load_tree(temp_repo.graph.tree_of(commit_ref))
    subtree = temp_repo.objects.load_tree(tree.records['bin'].hash)

    assert subtree.records['run.sh'].mode == EXECUTABLE_MODE


def test_nested_directories(temp_repo: Repository) -> None:
    files = {'README.md': 'readme', 'src/app.py': 'app', 'src/lib/util.py': 'util'}
    commit_ref = _commit_files(temp_repo, files)

    tree = temp_repo.objects.load_tree(temp_repo.graph.tree_of(commit_ref))

    assert sorted(tree.records) == ['README.md', 'src']


def test_branches(temp_repo: Repository) -> None:
    first = _commit_files(temp_repo, {'a.txt': 'a'})

    temp_repo.add_branch('feature')
    temp_repo.add_branch('empty-start', first)

    assert temp_repo.branches() == ['empty-start', 'feature', DEFAULT_BRANCH]
    assert temp_repo.branch_exists(SymRef('feature'))
    assert temp_repo.resolve_ref('feature') == first

    with raises(RepositoryError, match='already exists'):
        temp_repo.add_branch('feature')
    with raises(ValueError, match='Branch name is required'):
        temp_repo.add_branch('')

    temp_repo.delete_branch('feature')
    assert not temp_repo.branch_exists(SymRef('feature'))


def test_delete_branch_errors(temp_repo: Repository) -> None:
    with raises(RepositoryError, match='does not exist'):
        temp_repo.delete_branch('missing')
    with raises(RepositoryError, match='last branch'):
        temp_repo.delete_branch(DEFAULT_BRANCH)

    temp_repo.add_branch('other')
    with raises(RepositoryError, match='checked-out'):
        temp_repo.delete_branch(DEFAULT_BRANCH)


def test_lightweight_tag(temp_repo: Repository) -> None:
    commit_ref = _commit_files(temp_repo, {'a.txt': 'a'})

    tag = temp_repo.create_tag('v1.0', DEFAULT_BRANCH)

    assert tag == Tag('v1.0', commit_ref)
    assert temp_repo.tag_exists('v1.0')
    assert temp_repo.list_tags() == [Tag('v1.0', commit_ref)]
    assert temp_repo.resolve_ref('v1.0') == commit_ref

    with raises(RepositoryError, match='already exists'):
        temp_repo.create_tag('v1.0', commit_ref)

    temp_repo.delete_tag('v1.0')
    assert temp_repo.list_tags() == []


def test_annotated_tag(temp_repo: Repository) -> None:
    commit_ref = _commit_files(temp_repo, {'a.txt': 'a'})

    tag = temp_repo.create_tag('release', commit_ref, message='First release', tagger='Jane Roe')

    assert tag.target == commit_ref
    assert tag.annotation is not None
    tag_object = temp_repo.objects.load_tag(tag.annotation)
    assert tag_object.target == commit_ref
    assert tag_object.message == 'First release'
    assert temp_repo.ref_store.read('tags/release') == tag.annotation
    assert temp_repo.resolve_ref('release') == commit_ref
    assert temp_repo.list_tags() == [tag]


def test_tag_errors(temp_repo: Repository) -> None:
    _commit_files(temp_repo, {'a.txt': 'a'})

    with raises(RepositoryError, match='Cannot resolve target'):
        temp_repo.create_tag('broken', 'deadbeef')
    with raises(ValueError, match='Tagger is required'):
        temp_repo.create_tag('annotated', DEFAULT_BRANCH, message='No tagger')
    with raises(RepositoryError, match='does not exist'):
        temp_repo.delete_tag('missing')


def test_resolve_ref(temp_repo: Repository) -> None:
    commit_ref = _commit_files(temp_repo, {'a.txt': 'a'})

    assert temp_repo.resolve_ref('HEAD') == commit_ref
    assert temp_repo.resolve_ref('head') == commit_ref
    assert temp_repo.resolve_ref(DEFAULT_BRANCH) == commit_ref
    assert temp_repo.resolve_ref(f'heads/{DEFAULT_BRANCH}') == commit_ref
    assert temp_repo.resolve_ref(branch_ref(DEFAULT_BRANCH)) == commit_ref
    assert temp_repo.resolve_ref(str(commit_ref)) == commit_ref
    assert temp_repo.resolve_ref(None) is None

    with raises(RefError):
        temp_repo.resolve_ref('invalid_reference_string')
    with raises(RefError):
        temp_repo.resolve_ref('g' * HASH_LENGTH)


def test_update_ref(temp_repo: Repository) -> None:
    first = _commit_files(temp_repo, {'a.txt': 'a'})
    second = _commit_files(temp_repo, {'a.txt': 'b'})

    temp_repo.update_ref(f'heads/{DEFAULT_BRANCH}', first, expected=second)
    assert temp_repo.head_commit() == first

    with raises(RefConflictError):
        temp_repo.update_ref(f'heads/{DEFAULT_BRANCH}', second, expected=second)
    with raises(RepositoryError, match='does not exist'):
        temp_repo.update_ref('heads/missing', first)


def test_refs(temp_repo: Repository) -> None:
    commit_ref = _commit_files(temp_repo, {'a.txt': 'a'})
    temp_repo.create_tag('v1', commit_ref)

    assert temp_repo.refs() == [SymRef(f'heads/{DEFAULT_BRANCH}'), SymRef('tags/v1')]


def test_log(temp_repo: Repository) -> None:
    commits = [_commit_files(temp_repo, {'a.txt': f'version {i}'}, f'Commit {i}') for i in range(3)]

    history = list(temp_repo.log())

    assert [entry.commit_ref for entry in history] == list(reversed(commits))
    assert [entry.commit.message for entry in history] == ['Commit 2', 'Commit 1', 'Commit 0']
    assert [entry.commit_ref for entry in temp_repo.log(commits[1], WalkOrder.TOPOLOGICAL)] == commits[1::-1]


def test_log_on_unborn_branch(temp_repo: Repository) -> None:
    assert list(temp_repo.log()) == []


def test_log_with_corrupted_commit(temp_repo: Repository) -> None:
    commit_ref = _commit_files(temp_repo, {'a.txt': 'a'})
    (temp_repo.objects_dir() / commit_ref[:2] / commit_ref).write_bytes(b'garbage')

    with raises(RepositoryError):
        list(temp_repo.log())


def test_diff_commits(temp_repo: Repository) -> None:
    first = _commit_files(temp_repo, {'keep.txt': 'same', 'edit.txt': 'before', 'drop.txt': 'gone soon'})
    _write(temp_repo, {'edit.txt': 'after', 'add.txt': 'new'})
    (temp_repo.working_dir / 'drop.txt').unlink()
    second = temp_repo.commit_working_dir('John Doe', 'Second')

    diffs = temp_repo.diff_commits(first, second)

    assert [(type(diff), diff.path) for diff in diffs] == [
        (AddedDiff, 'add.txt'),
        (RemovedDiff, 'drop.txt'),
        (ModifiedDiff, 'edit.txt'),
    ]
    assert temp_repo.diff_commits(second, second) == []


def test_diff_commits_with_corrupted_tree(temp_repo: Repository) -> None:
    first = _commit_files(temp_repo, {'a.txt': 'a'})
    second = _commit_files(temp_repo, {'a.txt': 'b'})
    tree_hash = temp_repo.graph.tree_of(second)
    (temp_repo.objects_dir() / tree_hash[:2] / tree_hash).write_bytes(b'garbage')

    with raises(RepositoryError, match='Error loading tree'):
        temp_repo.diff_commits(first, second)


def test_merge_base(temp_repo: Repository) -> None:
    base = _commit_files(temp_repo, {'a.txt': 'a'})
    temp_repo.add_branch('feature')
    _commit_files(temp_repo, {'a.txt': 'main'})

    assert temp_repo.merge_base(DEFAULT_BRANCH, 'feature') == base
    with raises(RepositoryError):
        temp_repo.merge_base(DEFAULT_BRANCH, 'no-such-branch')


def test_checkout_branch(temp_repo: Repository) -> None:
    _commit_files(temp_repo, {'a.txt': 'a'})
    temp_repo.add_branch('feature')
    temp_repo.checkout('feature')
    feature_commit = _commit_files(temp_repo, {'b/c.txt': 'c'})

    temp_repo.checkout(DEFAULT_BRANCH)

    assert temp_repo.current_branch() == DEFAULT_BRANCH
    assert not (temp_repo.working_dir / 'b').exists()
    assert temp_repo.index.paths() == ['a.txt']

    temp_repo.checkout('feature')

    assert temp_repo.head_commit() == feature_commit
    assert _read(temp_repo, 'b/c.txt') == 'c'
    assert temp_repo.status().is_clean()


def test_checkout_detached(temp_repo: Repository) -> None:
    first = _commit_files(temp_repo, {'a.txt': 'first'})
    _commit_files(temp_repo, {'a.txt': 'second'})

    temp_repo.checkout(first)

    assert temp_repo.head_ref() == first
    assert temp_repo.current_branch() is None
    assert _read(temp_repo, 'a.txt') == 'first'

    detached = _commit_files(temp_repo, {'a.txt': 'detached'})
    assert temp_repo.head_ref() == detached


def test_checkout_refuses_local_changes(temp_repo: Repository) -> None:
    _commit_files(temp_repo, {'a.txt': 'a'})
    temp_repo.add_branch('feature')
    _write(temp_repo, {'a.txt': 'dirty'})

    with raises(RepositoryError, match='uncommitted changes'):
        temp_repo.checkout('feature')

    temp_repo.checkout('feature', force=True)
    assert _read(temp_repo, 'a.txt') == 'a'


def test_checkout_refuses_to_overwrite_untracked(temp_repo: Repository) -> None:
    _commit_files(temp_repo, {'a.txt': 'a'})
    temp_repo.add_branch('feature')
    temp_repo.checkout('feature')
    _commit_files(temp_repo, {'b.txt': 'tracked on feature'})
    temp_repo.checkout(DEFAULT_BRANCH)
    _write(temp_repo, {'b.txt': 'precious'})

    with raises(RepositoryError, match='untracked'):
        temp_repo.checkout('feature')

    assert _read(temp_repo, 'b.txt') == 'precious'


def test_merge_fast_forward(temp_repo: Repository) -> None:
    base = _commit_files(temp_repo, {'a.txt': 'a'})
    temp_repo.add_branch('feature')
    temp_repo.checkout('feature')
    feature_commit = _commit_files(temp_repo, {'b.txt': 'b'})
    temp_repo.checkout(DEFAULT_BRANCH)

    outcome = temp_repo.merge('feature', 'Jane Roe')

    assert outcome.state == MergeState.FAST_FORWARD
    assert outcome.base == base
    assert temp_repo.head_commit() == feature_commit
    assert _read(temp_repo, 'b.txt') == 'b'
    assert temp_repo.status().is_clean()


def test_merge_up_to_date(temp_repo: Repository) -> None:
    commit_ref = _commit_files(temp_repo, {'a.txt': 'a'})
    temp_repo.add_branch('feature')

    outcome = temp_repo.merge('feature', 'Jane Roe')

    assert outcome.state == MergeState.UP_TO_DATE
    assert temp_repo.head_commit() == commit_ref


def test_merge_clean(temp_repo: Repository) -> None:
    ours, theirs = _diverge(temp_repo, base={'a.txt': 'one\ntwo\n'}, ours={'a.txt': 'ONE\ntwo\n'},
                            theirs={'b.txt': 'b'})

    outcome = temp_repo.merge('feature', 'Jane Roe')

    assert outcome.state == MergeState.RESOLVED
    merge_commit = load_commit(temp_repo.objects_dir(), temp_repo.head_commit())
    assert merge_commit.parents == (ours, theirs)
    assert merge_commit.message == 'Merge feature'
    assert _read(temp_repo, 'a.txt') == 'ONE\ntwo\n'
    assert _read(temp_repo, 'b.txt') == 'b'
    assert temp_repo.status().is_clean()


def test_merge_conflict_and_resolution(temp_repo: Repository) -> None:
    ours, theirs = _diverge(temp_repo,
                            base={'a.txt': 'line1\nshared\nline3\n', 'b.txt': 'b'},
                            ours={'a.txt': 'line1\nours\nline3\n'},
                            theirs={'a.txt': 'line1\ntheirs\nline3\n', 'c.txt': 'c'})

    outcome = temp_repo.merge('feature', 'Jane Roe')

    assert outcome.state == MergeState.NEEDS_RESOLUTION
    assert outcome.conflict_paths == ['a.txt']
    assert temp_repo.head_commit() == ours
    assert _read(temp_repo, 'a.txt') == 'line1\n<<<<<<< ours\nours\n=======\ntheirs\n>>>>>>> theirs\nline3\n'
    assert _read(temp_repo, 'c.txt') == 'c'
    assert temp_repo.status().conflicts == ['a.txt']
    assert temp_repo.pending_merge().theirs == theirs

    with raises(MergeConflictError) as exc_info:
        temp_repo.commit('Jane Roe', 'Too early')
    assert exc_info.value.paths == ['a.txt']
    with raises(RepositoryError, match='already in progress'):
        temp_repo.merge('feature', 'Jane Roe')

    _write(temp_repo, {'a.txt': 'line1\nboth\nline3\n'})
    temp_repo.stage('a.txt')
    merge_ref = temp_repo.commit('Jane Roe', 'Merge feature')

    merge_commit = load_commit(temp_repo.objects_dir(), merge_ref)
    assert merge_commit.parents == (ours, theirs)
    assert temp_repo.pending_merge() is None
    assert temp_repo.status().is_clean()
    assert temp_repo.merge_base(DEFAULT_BRANCH, 'feature') == theirs


def test_merge_both_changed_without_overlap(temp_repo: Repository) -> None:
    ours, _ = _diverge(temp_repo, base={'a.txt': 'one\ntwo\nthree\n'}, ours={'a.txt': 'ONE\ntwo\nthree\n'},
                       theirs={'a.txt': 'one\ntwo\nTHREE\n'})

    outcome = temp_repo.merge('feature', 'Jane Roe')

    assert outcome.state == MergeState.NEEDS_RESOLUTION
    assert outcome.conflict_paths == ['a.txt']
    assert temp_repo.head_commit() == ours
    assert _read(temp_repo, 'a.txt') == 'ONE\ntwo\nTHREE\n'
    assert temp_repo.status().conflicts == ['a.txt']

    temp_repo.abort_merge()
    outcome = temp_repo.merge('feature', 'Jane Roe', line_merge=True)

    assert outcome.state == MergeState.RESOLVED
    assert _read(temp_repo, 'a.txt') == 'ONE\ntwo\nTHREE\n'
    assert temp_repo.status().is_clean()


def test_merge_file_replaced_by_directory(temp_repo: Repository) -> None:
    _commit_files(temp_repo, {'a': 'base\n'})
    temp_repo.add_branch('feature')
    ours = _commit_files(temp_repo, {'a': 'ours\n'})
    temp_repo.checkout('feature')
    (temp_repo.working_dir / 'a').unlink()
    _commit_files(temp_repo, {'a/b': 'b\n'})
    temp_repo.checkout(DEFAULT_BRANCH)

    outcome = temp_repo.merge('feature', 'Jane Roe')

    assert outcome.state == MergeState.NEEDS_RESOLUTION
    assert outcome.conflict_paths == ['a', 'a/b']
    assert temp_repo.head_commit() == ours
    assert _read(temp_repo, 'a') == 'ours\n'
    assert temp_repo.index.paths() == ['a']
    temp_repo.index.build_tree()

    temp_repo.abort_merge()
    assert _read(temp_repo, 'a') == 'ours\n'
    assert temp_repo.status().is_clean()


def test_commit_names_with_line_separators(temp_repo: Repository) -> None:
    temp_repo.stage('notes\x1cdraft.txt', b'draft')
    temp_repo.stage('a\rb', b'carriage')
    commit_ref = temp_repo.commit('Jane Roe', 'Odd names')

    tree_hash = temp_repo.graph.tree_of(commit_ref)
    assert sorted(flatten_tree(temp_repo.objects, tree_hash)) == ['a\rb', 'notes\x1cdraft.txt']
    assert [entry.commit_ref for entry in temp_repo.log()] == [commit_ref]


def test_abort_merge(temp_repo: Repository) -> None:
    ours, _ = _diverge(temp_repo, base={'a.txt': 'base\n'}, ours={'a.txt': 'ours\n'},
                       theirs={'a.txt': 'theirs\n', 'c.txt': 'c'})
    temp_repo.merge('feature', 'Jane Roe')

    temp_repo.abort_merge()

    assert temp_repo.pending_merge() is None
    assert temp_repo.head_commit() == ours
    assert _read(temp_repo, 'a.txt') == 'ours\n'
    assert not (temp_repo.working_dir / 'c.txt').exists()
    assert temp_repo.status().is_clean()

    with raises(RepositoryError, match='No merge in progress'):
        temp_repo.abort_merge()


def test_merge_refuses_local_changes(temp_repo: Repository) -> None:
    _diverge(temp_repo, base={'a.txt': 'a'}, ours={'a.txt': 'ours'}, theirs={'b.txt': 'b'})
    _write(temp_repo, {'a.txt': 'uncommitted'})

    with raises(RepositoryError, match='uncommitted changes'):
        temp_repo.merge('feature', 'Jane Roe')


def test_merge_unrelated_histories(temp_repo: Repository) -> None:
    _commit_files(temp_repo, {'a.txt': 'a'})
    temp_repo.add_branch('orphan')
    write_ref(temp_repo.heads_dir() / 'orphan', None)
    temp_repo.checkout('orphan', force=True)
    _commit_files(temp_repo, {'b.txt': 'b'})
    temp_repo.checkout(DEFAULT_BRANCH)

    with raises(MergeError, match='No common ancestor'):
        temp_repo.merge('orphan', 'Jane Roe')

    outcome = temp_repo.merge('orphan', 'Jane Roe', allow_unrelated=True)
    assert outcome.state == MergeState.RESOLVED
    assert _read(temp_repo, 'b.txt') == 'b'


def test_merge_unknown_branch(temp_repo: Repository) -> None:
    _commit_files(temp_repo, {'a.txt': 'a'})

    with raises(MergeError):
        temp_repo.merge('no-such-branch', 'Jane Roe')


def test_stage_all_resolves_conflicts(temp_repo: Repository) -> None:
    _diverge(temp_repo, base={'a.txt': 'base\n', 'b.txt': 'base\n'}, ours={'a.txt': 'ours\n', 'b.txt': 'ours\n'},
             theirs={'a.txt': 'theirs\n', 'b.txt': 'theirs\n'})
    outcome = temp_repo.merge('feature', 'Jane Roe')
    assert outcome.conflict_paths == ['a.txt', 'b.txt']

    _write(temp_repo, {'a.txt': 'merged\n', 'b.txt': 'merged\n'})
    temp_repo.stage_all()

    assert temp_repo.status().conflicts == []
    merge_ref = temp_repo.commit('Jane Roe', 'Merge feature')
    assert len(load_commit(temp_repo.objects_dir(), merge_ref).parents) == 2
