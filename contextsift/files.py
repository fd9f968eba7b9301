"""Collecting candidate files from the workspace."""

import logging
import subprocess
from collections.abc import Iterable
from pathlib import Path

from .ranking.symbols import is_supported_path
from .ranking.types import CandidateFile

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 1024 * 1024  # 1MB


def get_workspace_files(workspace: Path) -> list[Path]:
    """Get all tracked files in the workspace."""
    files: list[Path] = []
    # Try git first
    try:
        p = subprocess.run(
            ["git", "ls-files"],
            cwd=workspace,
            capture_output=True,
            text=True,
            check=True,
        )
        files = [workspace / f for f in p.stdout.splitlines()]
        files = [f for f in files if f.is_file()]
    except (OSError, subprocess.CalledProcessError):
        # not a git repo: walk, skipping hidden files/dirs
        files = [
            f
            for f in workspace.rglob("*")
            if f.is_file()
            and not any(p.startswith(".") for p in f.relative_to(workspace).parts)
        ]
    return sorted(files)


def read_candidate(path: Path, root: Path) -> CandidateFile | None:
    """Read a file as a candidate, or None for binaries and oversized files."""
    try:
        rel = path.relative_to(root).as_posix()
    except ValueError:
        rel = path.as_posix()
    if not is_supported_path(rel):
        return None
    try:
        if path.stat().st_size > MAX_FILE_SIZE:
            logger.debug(f"Skipping large file {rel}")
            return None
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"Skipping unreadable file {rel}: {e}")
        return None
    if "\x00" in content:
        return None
    return CandidateFile(rel, content)


def collect_candidates(paths: Iterable[Path], root: Path | None = None) -> list[CandidateFile]:
    """Candidate files from files and directories, relative to `root`."""
    root = (root or Path.cwd()).resolve()
    candidates: dict[str, CandidateFile] = {}
    for path in paths:
        path = path.resolve()
        targets = get_workspace_files(path) if path.is_dir() else [path]
        for target in targets:
            candidate = read_candidate(target, root)
            if candidate is not None:
                candidates[candidate.path] = candidate
    logger.debug(f"Collected {len(candidates)} candidate files")
    return list(candidates.values())
