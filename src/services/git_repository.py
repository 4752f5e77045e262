"""Thin subprocess wrapper around the git commands shared state needs."""

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_AUTHOR_NAME = "colony"
DEFAULT_AUTHOR_EMAIL = "colony@localhost"


class GitError(Exception):
    """Raised when a git command exits non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str):
        self.command = " ".join(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(f"git {self.command} failed ({returncode}): {self.stderr}")


class GitConflictError(GitError):
    """Raised when a pull leaves conflicting changes in the working tree."""


class GitRepository:
    """A git working tree rooted at ``path``."""

    def __init__(self, path: Path, branch: str = "main", timeout: float = 60.0):
        if path is None:
            raise ValueError("path is required")
        if not branch:
            raise ValueError("branch is required")
        self.path = Path(path)
        self.branch = branch
        self.timeout = timeout

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["git", *args]
        logger.debug(f"Running {' '.join(cmd)} in {self.path}")
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(self.path),
                text=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise GitError(list(args), -1, str(e)) from e
        if check and proc.returncode != 0:
            raise GitError(list(args), proc.returncode, proc.stderr or proc.stdout or "")
        return proc

    def is_initialized(self) -> bool:
        return (self.path / ".git").exists()

    def init(self) -> bool:
        """Create the repository with an empty first commit. Returns False if it existed."""
        self.path.mkdir(parents=True, exist_ok=True)
        if self.is_initialized():
            return False

        self._run("init")
        self._run("symbolic-ref", "HEAD", f"refs/heads/{self.branch}")
        if self._run("config", "user.email", check=False).returncode != 0:
            self._run("config", "user.email", DEFAULT_AUTHOR_EMAIL)
        if self._run("config", "user.name", check=False).returncode != 0:
            self._run("config", "user.name", DEFAULT_AUTHOR_NAME)
        self._run("commit", "--allow-empty", "-m", "Initialize colony state")
        logger.info(f"Initialized state repository at {self.path}")
        return True

    def ensure_remote(self, url: str, name: str = "origin") -> None:
        if not url:
            raise ValueError("url is required")
        current = self._run("remote", "get-url", name, check=False)
        if current.returncode != 0:
            self._run("remote", "add", name, url)
        elif current.stdout.strip() != url:
            self._run("remote", "set-url", name, url)

    def exclude(self, patterns: list[str]) -> None:
        """Add patterns to the repository-local exclude file."""
        exclude_path = self.path / ".git" / "info" / "exclude"
        exclude_path.parent.mkdir(parents=True, exist_ok=True)
        existing = []
        if exclude_path.exists():
            existing = exclude_path.read_text(encoding="utf-8").splitlines()
        missing = [p for p in patterns if p not in existing]
        if missing:
            with open(exclude_path, "a", encoding="utf-8") as f:
                f.write("".join(f"{p}\n" for p in missing))

    def has_remote(self, name: str = "origin") -> bool:
        return self._run("remote", "get-url", name, check=False).returncode == 0

    def add(self, paths: list[Path]) -> None:
        if not paths:
            return
        self._run("add", "--", *[str(Path(p).relative_to(self.path)) for p in paths])

    def commit(self, message: str) -> bool:
        """Commit staged changes. Returns False when there was nothing to commit."""
        if not message:
            raise ValueError("message is required")
        if self._run("diff", "--cached", "--quiet", check=False).returncode == 0:
            return False
        self._run("commit", "-m", message)
        return True

    def push(self, remote: str = "origin") -> None:
        self._run("push", remote, self.branch)

    def pull(self, remote: str = "origin") -> None:
        proc = self._run(
            "pull", "--no-rebase", "--no-edit", "--allow-unrelated-histories",
            remote, self.branch, check=False,
        )
        if proc.returncode == 0:
            return
        output = f"{proc.stdout}\n{proc.stderr}"
        if "CONFLICT" in output or self._has_unmerged_paths():
            raise GitConflictError(["pull", remote, self.branch], proc.returncode, output)
        raise GitError(["pull", remote, self.branch], proc.returncode, proc.stderr)

    def head(self) -> str:
        return self._run("rev-parse", "HEAD").stdout.strip()

    def _has_unmerged_paths(self) -> bool:
        proc = self._run("diff", "--name-only", "--diff-filter=U", check=False)
        return proc.returncode == 0 and bool(proc.stdout.strip())
