from __future__ import annotations

import textwrap
import threading
from pathlib import Path

import pytest

from conftest import CALC_SOURCE, CalcRepo, run_git
from selfheal.config import GitSettings
from selfheal.errors import GitConflictError, GitError, MergeConflictError
from selfheal.tools.diffs import make_diff
from selfheal.tools.vcs import GitOperations, repository_lock

FIXED_SOURCE = CALC_SOURCE.replace('eval("+".join(str(v) for v in values))', "sum(values)")


def test_requires_a_repository(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        GitOperations(tmp_path)


def test_discover_walks_up_to_the_repository(calc_repo: CalcRepo) -> None:
    git = GitOperations.discover(calc_repo.root / "app")

    assert git.root == calc_repo.root.resolve()
    assert git.current_branch() == "main"
    assert git.head_hash() == calc_repo.head()


def test_status_reports_modified_and_untracked_files(calc_repo: CalcRepo) -> None:
    git = GitOperations(calc_repo.root)
    calc_repo.calc_path.write_text(FIXED_SOURCE, encoding="utf-8")
    (calc_repo.root / "scratch.txt").write_text("notes\n", encoding="utf-8")

    paths = {path for _, path in git.get_status()}

    assert paths == {"app/calc.py", "scratch.txt"}
    assert not git.is_working_directory_clean()
    calc_repo.git("checkout", "--", "app/calc.py")
    assert git.is_working_directory_clean()
    assert not git.is_working_directory_clean(include_untracked=True)


def test_history_and_branch_listing(calc_repo: CalcRepo) -> None:
    git = GitOperations(calc_repo.root)
    calc_repo.calc_path.write_text(FIXED_SOURCE, encoding="utf-8")
    commit = git.commit("fix: use sum")

    history = git.get_commit_history(limit=5)
    assert [entry.hash for entry in history][:1] == [commit]
    assert history[0].message == "fix: use sum"
    assert history[0].files_changed == ["app/calc.py"]
    assert history[0].author == GitSettings().author_name

    branches = {branch.name: branch for branch in git.get_branches()}
    assert branches["main"].is_current
    assert branches["main"].head == commit


def test_isolation_and_backup_branch_names(calc_repo: CalcRepo) -> None:
    git = GitOperations(calc_repo.root, GitSettings(branch_prefix="heal", backup_prefix="safety"))

    name = git.create_isolated_branch("issue1", "patch1")
    backup = git.create_backup_branch()
    second_backup = git.create_backup_branch()

    assert name == "heal/issue-issue1/patch-patch1"
    assert git.branch_exists(name)
    assert backup.startswith("safety/main/")
    assert second_backup != backup
    assert git.last_backup_branch == second_backup
    with pytest.raises(GitError):
        git.create_isolated_branch("issue1", "patch1")


def test_apply_patch_and_diff_between_commits(calc_repo: CalcRepo) -> None:
    git = GitOperations(calc_repo.root)
    base = git.head_hash()

    git.apply_patch(make_diff(CALC_SOURCE, FIXED_SOURCE, "app/calc.py"))
    commit = git.commit("fix: use sum")

    assert calc_repo.calc_path.read_text(encoding="utf-8") == FIXED_SOURCE
    assert git.last_backup_branch is not None
    diff = git.diff(base, commit)
    assert "+    return sum(values)" in diff
    assert git.diff(commit, commit) == ""


def test_conflicting_patch_raises_and_leaves_tree_clean(calc_repo: CalcRepo) -> None:
    git = GitOperations(calc_repo.root)
    stale = textwrap.dedent(
        """
        --- a/app/calc.py
        +++ b/app/calc.py
        @@ -4,2 +4,2 @@
         def total(numbers):
        -    return reduce(add, numbers)
        +    return sum(numbers)
        """
    ).lstrip()

    with pytest.raises(GitConflictError) as excinfo:
        git.apply_patch(stale)

    assert excinfo.value.kind.value == "GitConflict"
    assert git.is_working_directory_clean()
    assert calc_repo.calc_path.read_text(encoding="utf-8") == CALC_SOURCE


def test_patch_against_diverged_file_restores_the_working_tree(calc_repo: CalcRepo) -> None:
    git = GitOperations(calc_repo.root)
    diff = make_diff(CALC_SOURCE, FIXED_SOURCE, "app/calc.py")
    diverged = CALC_SOURCE.replace('eval("+".join(str(v) for v in values))', "math.fsum(values)")
    calc_repo.calc_path.write_text(diverged, encoding="utf-8")
    git.commit("diverge")

    with pytest.raises(GitConflictError):
        git.apply_patch(diff)

    assert git.is_working_directory_clean(include_untracked=True)
    assert calc_repo.calc_path.read_text(encoding="utf-8") == diverged


def test_cherry_pick_conflict_is_aborted(calc_repo: CalcRepo) -> None:
    git = GitOperations(calc_repo.root)
    run_git(calc_repo.root, "checkout", "--quiet", "-b", "feature")
    calc_repo.calc_path.write_text(FIXED_SOURCE, encoding="utf-8")
    feature_commit = git.commit("feature change")
    git.checkout("main")
    calc_repo.calc_path.write_text(
        CALC_SOURCE.replace('eval("+".join(str(v) for v in values))', "math.fsum(values)"),
        encoding="utf-8",
    )
    main_commit = git.commit("main change")

    with pytest.raises(MergeConflictError):
        git.cherry_pick(feature_commit)

    assert git.head_hash() == main_commit
    assert git.is_working_directory_clean(include_untracked=True)


def test_reset_to_commit_takes_a_backup_first(calc_repo: CalcRepo) -> None:
    git = GitOperations(calc_repo.root)
    base = git.head_hash()
    calc_repo.calc_path.write_text(FIXED_SOURCE, encoding="utf-8")
    fixed = git.commit("fix")

    git.reset_to_commit(base)

    assert git.head_hash() == base
    assert calc_repo.calc_path.read_text(encoding="utf-8") == CALC_SOURCE
    assert calc_repo.git("rev-parse", git.last_backup_branch).strip() == fixed


def test_init_and_commit_baseline(tmp_path: Path) -> None:
    (tmp_path / "main.py").write_text("print('hi')\n", encoding="utf-8")

    git = GitOperations.init(tmp_path)
    first = git.commit_baseline("baseline")
    second = git.commit_baseline("baseline")

    assert first is not None
    assert second == first
    assert git.is_working_directory_clean(include_untracked=True)


def test_repository_lock_is_shared_per_repository(calc_repo: CalcRepo, tmp_path: Path) -> None:
    first = GitOperations(calc_repo.root)
    second = GitOperations(calc_repo.root / "app" / "..")
    other_root = tmp_path / "other"
    other_root.mkdir()
    run_git(other_root, "init", "--quiet")

    assert first.lock is second.lock
    assert repository_lock(calc_repo.root / "app" / "..") is first.lock
    assert repository_lock(other_root) is not first.lock

    holding = threading.Event()
    release = threading.Event()

    def _hold() -> None:
        with first.lock:
            holding.set()
            release.wait(5)

    holder = threading.Thread(target=_hold)
    holder.start()
    try:
        assert holding.wait(5)
        assert second.lock.acquire(timeout=0.1) is False
        assert repository_lock(other_root).acquire(timeout=0.1) is True
        repository_lock(other_root).release()
    finally:
        release.set()
        holder.join(5)
    assert second.lock.acquire(timeout=1)
    second.lock.release()


def test_concurrent_commits_through_separate_handles_are_serialised(calc_repo: CalcRepo) -> None:
    handles = [GitOperations(calc_repo.root) for _ in range(4)]
    start = threading.Barrier(len(handles))
    failures: list[BaseException] = []

    def _commit(number: int, git: GitOperations) -> None:
        start.wait(5)
        try:
            (calc_repo.root / f"note-{number}.txt").write_text(f"{number}\n", encoding="utf-8")
            git.commit(f"Add note {number}", files=[f"note-{number}.txt"])
        except BaseException as error:
            failures.append(error)
            raise

    threads = [threading.Thread(target=_commit, args=(number, git)) for number, git in enumerate(handles)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(30)

    assert failures == []
    subjects = calc_repo.git("log", "--pretty=%s", "-4").split("\n")
    assert sorted(subject for subject in subjects if subject) == [f"Add note {number}" for number in range(4)]
    assert calc_repo.status() == ""
