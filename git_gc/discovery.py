"""Find the git repositories below a root directory."""

from __future__ import annotations

import logging
import os
from pathlib import Path

log = logging.getLogger(__name__)

METADATA_DIR = ".git"
HIDDEN_PREFIX = "."


class DiscoveryError(Exception):
    """Raised when the root directory cannot be enumerated."""


def resolve_root(root: str | Path | None) -> Path:
    """Expand ``~`` and environment variables in *root* and make it absolute.

    An empty or missing root means the user's home directory.
    """
    if not root:
        return Path.home().resolve()
    expanded = os.path.expanduser(os.path.expandvars(str(root)))
    return Path(expanded).resolve()


def is_repository(path: str | Path, metadata_dir: str = METADATA_DIR) -> bool:
    """True if *path* directly contains git metadata.

    ``.git`` may be a directory or, for worktrees and submodules, a file.
    """
    return os.path.exists(os.path.join(path, metadata_dir))


def find_repositories(
    root: str | Path | None = None,
    metadata_dir: str = METADATA_DIR,
    hidden_prefix: str = HIDDEN_PREFIX,
) -> list[str]:
    """Return every repository directory under *root*, sorted by path.

    Directories whose name starts with *hidden_prefix* are pruned before the
    walk descends into them, so repositories inside them are never found.
    The root itself is always walked. Any error while walking the tree
    aborts the whole enumeration with :class:`DiscoveryError`.
    """
    root_path = resolve_root(root)
    if not root_path.exists():
        raise DiscoveryError(f"root dir '{root_path}' does not exist")
    if not root_path.is_dir():
        raise DiscoveryError(f"root dir '{root_path}' is not a directory")

    def _fail(err: OSError) -> None:
        raise DiscoveryError(f"cannot traverse '{err.filename}': {err.strerror}") from err

    found: set[str] = set()
    log.info("Searching for repositories under %s", root_path)

    for dirpath, dirnames, _filenames in os.walk(root_path, onerror=_fail):
        # Prune in place so os.walk never descends into hidden directories
        dirnames[:] = [d for d in dirnames if not d.startswith(hidden_prefix)]

        # Only the root can be hidden here; it is walked but never a candidate
        if os.path.basename(dirpath).startswith(hidden_prefix):
            continue
        if is_repository(dirpath, metadata_dir):
            found.add(os.path.normpath(dirpath))

    repos = sorted(found)
    log.info("Found %d repositories under %s", len(repos), root_path)
    return repos
