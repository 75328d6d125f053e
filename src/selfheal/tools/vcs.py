"""Git operations used to isolate, commit and revert repairs.

Every mutating call on a repository runs under a re-entrant lock shared by all
:class:`GitOperations` instances pointing at the same resolved path, so one
working tree is never mutated concurrently. Risky mutations (apply, reset,
cherry-pick) first create a ``backup/<base>/<timestamp>`` branch at ``HEAD``.
"""

from __future__ import annotations

import logging
import subprocess
import tempfile
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Sequence, Tuple

from ..config import GitSettings
from ..errors import GitConflictError, GitError, MergeConflictError
from ..storage.schema import BranchInfo, GitCommit
from ..telemetry import emit_event
from .diffs import parse_unified_diff

LOGGER = logging.getLogger(__name__)

_REPO_LOCKS: Dict[Path, threading.RLock] = {}
_REGISTRY_LOCK = threading.Lock()
_LOCK_CONTENTION_MARKERS = ("index.lock", "Unable to create", "another git process")
_FIELD = "\x1f"
_RECORD = "\x1e"


def repository_lock(root: Path) -> threading.RLock:
    """Return the process-wide lock guarding mutations of ``root``."""
    key = Path(root).resolve()
    with _REGISTRY_LOCK:
        lock = _REPO_LOCKS.get(key)
        if lock is None:
            lock = threading.RLock()
            _REPO_LOCKS[key] = lock
        return lock


class GitOperations:
    """Wrapper around the ``git`` CLI for one working tree."""

    def __init__(self, root: Path | str, settings: GitSettings | None = None) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")
        self.settings = settings or GitSettings()
        self._lock = repository_lock(self.root)
        self.last_backup_branch: str | None = None

    @classmethod
    def discover(cls, start: Path | str | None = None, settings: GitSettings | None = None) -> "GitOperations":
        """Locate the nearest git repository starting from ``start``."""

        path = Path(start or Path.cwd()).resolve()
        for candidate in (path, *path.parents):
            if (candidate / ".git").exists():
                return cls(candidate, settings)
        raise GitError(f"Unable to locate a git repository from {path}")

    @classmethod
    def init(cls, root: Path | str, settings: GitSettings | None = None) -> "GitOperations":
        """Create an empty repository at ``root`` and wrap it."""

        path = Path(root).resolve()
        process = subprocess.run(["git", "init", "--quiet", str(path)], capture_output=True, text=True, check=False)
        if process.returncode != 0:
            raise GitError(f"git init failed: {process.stderr.strip()}", details={"root": str(path)})
        return cls(path, settings)

    def commit_baseline(self, message: str) -> str | None:
        """Commit every pending change, untracked files included, and return ``HEAD``."""

        with self._lock:
            if self.is_working_directory_clean(include_untracked=True):
                return self.head_hash()
            return self.commit(message)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = [
            "git",
            "-c",
            f"user.name={self.settings.author_name}",
            "-c",
            f"user.email={self.settings.author_email}",
            *args,
        ]
        attempts = max(1, self.settings.lock_retries + 1)
        for attempt in range(attempts):
            process = subprocess.run(
                command,
                cwd=self.root,
                capture_output=True,
                text=False,
                check=False,
            )
            stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
            stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
            result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
            contended = result.returncode != 0 and any(marker in stderr for marker in _LOCK_CONTENTION_MARKERS)
            if not contended or attempt == attempts - 1:
                break
            delay = self.settings.lock_backoff * (2**attempt)
            LOGGER.info("git index lock busy in %s; retrying in %.2fs", self.root, delay)
            time.sleep(delay)
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}", details={"args": list(args)})
        return result

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # -------------------------------------------------------------- queries
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def head_hash(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def branch_exists(self, name: str) -> bool:
        result = self._run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return result.returncode == 0

    def get_status(self, *, include_untracked: bool = True) -> List[Tuple[str, str]]:
        """Return ``(code, path)`` pairs from ``git status --porcelain``."""

        args = ["status", "--porcelain", "-z"]
        args.append("--untracked-files=all" if include_untracked else "--untracked-files=no")
        result = self._run_git(args)
        entries: List[Tuple[str, str]] = []
        chunks = [chunk for chunk in result.stdout.split("\0") if chunk]
        index = 0
        while index < len(chunks):
            chunk = chunks[index]
            code, path = chunk[:2], chunk[3:]
            entries.append((code, path))
            # Renames and copies carry the source path as an extra entry.
            if code[:1] in {"R", "C"}:
                index += 1
            index += 1
        return entries

    def is_working_directory_clean(self, *, include_untracked: bool = False) -> bool:
        return not self.get_status(include_untracked=include_untracked)

    def get_commit_history(self, limit: int = 10) -> List[GitCommit]:
        if self.head_hash() is None:
            return []
        fmt = _RECORD + _FIELD.join(["%H", "%an", "%ae", "%aI", "%s"])
        result = self._run_git(["log", f"-n{int(limit)}", f"--pretty=format:{fmt}", "--name-only"])
        commits: List[GitCommit] = []
        for record in result.stdout.split(_RECORD):
            if not record.strip():
                continue
            header, _, files_block = record.partition("\n")
            fields = header.split(_FIELD)
            if len(fields) != 5:
                continue
            commits.append(
                GitCommit(
                    hash=fields[0],
                    author=fields[1],
                    email=fields[2],
                    timestamp=datetime.fromisoformat(fields[3]),
                    message=fields[4],
                    files_changed=[line.strip() for line in files_block.splitlines() if line.strip()],
                )
            )
        return commits

    def get_branches(self) -> List[BranchInfo]:
        fmt = _FIELD.join(["%(refname:short)", "%(objectname)", "%(HEAD)", "%(upstream:short)"])
        result = self._run_git(["for-each-ref", f"--format={fmt}", "refs/heads"])
        branches: List[BranchInfo] = []
        for line in result.stdout.splitlines():
            fields = line.split(_FIELD)
            if len(fields) != 4:
                continue
            name, head, marker, upstream = fields
            ahead = behind = 0
            if upstream:
                counts = self._run_git(
                    ["rev-list", "--left-right", "--count", f"{name}...{upstream}"],
                    check=False,
                )
                if counts.returncode == 0:
                    left, _, right = counts.stdout.strip().partition("\t")
                    ahead, behind = int(left or 0), int(right or 0)
            branches.append(
                BranchInfo(
                    name=name,
                    is_current=marker.strip() == "*",
                    head=head,
                    upstream=upstream or None,
                    ahead=ahead,
                    behind=behind,
                )
            )
        return branches

    def diff(self, base: str, target: str = "HEAD", *paths: str) -> str:
        args = ["diff", "--full-index", base, target]
        if paths:
            args.extend(["--", *paths])
        return self._run_git(args).stdout

    # ------------------------------------------------------------- branches
    def isolation_branch_name(self, issue_id: str, patch_id: str) -> str:
        return f"{self.settings.branch_prefix}/issue-{issue_id}/patch-{patch_id}"

    def create_isolated_branch(self, issue_id: str, patch_id: str, *, start_point: str = "HEAD") -> str:
        name = self.isolation_branch_name(issue_id, patch_id)
        with self._lock:
            if self.branch_exists(name):
                raise GitError(f"Isolation branch already exists: {name}", details={"branch": name})
            self._run_git(["branch", name, start_point])
        return name

    def checkout(self, branch: str) -> None:
        with self._lock:
            self._run_git(["checkout", "--quiet", branch])

    def delete_branch(self, name: str, *, force: bool = True) -> None:
        with self._lock:
            self._run_git(["branch", "-D" if force else "-d", name])

    def create_backup_branch(self, base: str | None = None) -> str:
        """Snapshot ``HEAD`` as ``backup/<base>/<timestamp>`` and return the name."""

        with self._lock:
            if self.head_hash() is None:
                raise GitError("Cannot create a backup branch without any commits.")
            base_name = base or self.current_branch() or "detached"
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            name = f"{self.settings.backup_prefix}/{base_name}/{stamp}"
            counter = 1
            while self.branch_exists(name):
                name = f"{self.settings.backup_prefix}/{base_name}/{stamp}-{counter}"
                counter += 1
            self._run_git(["branch", name, "HEAD"])
            self.last_backup_branch = name
        emit_event("git_backup_created", repo=self.root, branch=name)
        return name

    # ------------------------------------------------------------ mutations
    def _snapshot_paths(self, paths: Sequence[str]) -> Dict[str, bytes | None]:
        snapshot: Dict[str, bytes | None] = {}
        for relative in paths:
            target = self.root / relative
            snapshot[relative] = target.read_bytes() if target.is_file() else None
        return snapshot

    def _restore_paths(self, snapshot: Dict[str, bytes | None]) -> None:
        for relative, content in snapshot.items():
            target = self.root / relative
            if content is None:
                if target.exists():
                    target.unlink()
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
        if snapshot:
            self._run_git(["reset", "--quiet", "--", *snapshot.keys()], check=False)

    def apply_patch(self, diff: str, *, three_way: bool = True, backup: bool = True) -> None:
        """Apply ``diff`` to the working tree.

        Raises :class:`GitConflictError` when the patch does not apply; the
        touched files are restored to their previous content first.
        """

        files, _ = parse_unified_diff(diff)
        touched = sorted({path for item in files for path in (item.old_path, item.new_path) if path})
        with self._lock:
            if backup:
                self.create_backup_branch()
            snapshot = self._snapshot_paths(touched)
            with tempfile.NamedTemporaryFile("w", encoding="utf-8", suffix=".patch", delete=False) as handle:
                handle.write(diff if diff.endswith("\n") else diff + "\n")
                temp_path = Path(handle.name)
            try:
                args = ["apply", "--whitespace=nowarn"]
                if three_way:
                    args.append("--3way")
                args.append(str(temp_path))
                result = self._run_git(args, check=False)
                if result.returncode != 0:
                    self._restore_paths(snapshot)
                    message = result.stderr.strip() or result.stdout.strip() or "patch does not apply"
                    emit_event("git_apply_conflict", repo=self.root, paths=touched, message=message)
                    raise GitConflictError(
                        f"Patch does not apply cleanly: {message}",
                        details={"paths": touched, "stderr": result.stderr},
                    )
            finally:
                temp_path.unlink(missing_ok=True)

    def commit(
        self,
        message: str,
        files: Sequence[str] | None = None,
        author: Tuple[str, str] | None = None,
    ) -> str:
        """Stage ``files`` (or everything) and commit; return the new hash."""

        name, email = author or (self.settings.author_name, self.settings.author_email)
        with self._lock:
            if files:
                self._run_git(["add", "-A", "--", *files])
            else:
                self._run_git(["add", "-A"])
            self._run_git(["commit", "--quiet", "-m", message, "--author", f"{name} <{email}>"])
            head = self.head_hash()
        if head is None:
            raise GitError("Commit did not produce a HEAD.")
        return head

    def reset_to_commit(self, commit: str, *, hard: bool = True) -> None:
        with self._lock:
            self.create_backup_branch()
            self._run_git(["reset", "--hard" if hard else "--soft", commit])

    def cherry_pick(self, commit: str) -> None:
        with self._lock:
            self.create_backup_branch()
            result = self._run_git(["cherry-pick", commit], check=False)
            if result.returncode != 0:
                self._run_git(["cherry-pick", "--abort"], check=False)
                message = result.stderr.strip() or result.stdout.strip() or "cherry-pick failed"
                raise MergeConflictError(
                    f"Cherry-pick of {commit} conflicted: {message}",
                    details={"commit": commit},
                )


__all__ = ["GitOperations", "repository_lock"]
