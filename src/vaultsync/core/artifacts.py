"""Generated sync artifacts.

The engine produces sibling files next to a note when it cannot decide
which copy wins:
- `stem.remote.ext`: remote copy that collided with an untracked local file
- `stem.sync-conflict-YYYYMMDD-HHMMSS.ext`: side-by-side conflict file
- `stem.pre-merge-local.ext` / `stem.pre-merge-remote.ext`: sides saved
  before an auto-merge

This module maps variant paths back to their canonical path.
"""

from __future__ import annotations

import re
from datetime import datetime

REMOTE_SUFFIX = ".remote"
CONFLICT_STEM_RE = re.compile(r"^(.*)\.sync-conflict-\d{8}-\d{6}$")
RESTORED_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"


def normalize_path(path: str) -> str:
    """Normalize separators: backslashes to '/', no leading or doubled slashes."""
    path = path.replace("\\", "/").lstrip("/")
    return re.sub(r"/+", "/", path)


def escapes_root(path: str) -> bool:
    """True if a `..` segment could take the path outside the vault."""
    return ".." in normalize_path(path).split("/")


def split_path(path: str) -> tuple[str, str]:
    """Split a normalized path into (directory, file name)."""
    path = normalize_path(path)
    directory, _, name = path.rpartition("/")
    return directory, name


def split_name(name: str) -> tuple[str, str]:
    """Split a file name into (stem, extension with dot)."""
    dot = name.rfind(".")
    if dot < 0:
        return name, ""
    return name[:dot], name[dot:]


def join_path(directory: str, name: str) -> str:
    return normalize_path(f"{directory}/{name}") if directory else normalize_path(name)


def strip_generated_suffixes(path: str) -> str:
    """Strip every `.remote` and `.sync-conflict-*` suffix from the stem.

    Args:
        path: Vault-relative path.

    Returns:
        The canonical path. Unchanged when no suffix applies, or when
        stripping would leave an empty stem.
    """
    directory, name = split_path(path)
    original_stem, ext = split_name(name)
    stem = original_stem
    changed = False
    while True:
        if stem.endswith(REMOTE_SUFFIX):
            stem = stem[: -len(REMOTE_SUFFIX)]
            changed = True
            continue
        match = CONFLICT_STEM_RE.match(stem)
        if match:
            stem = match.group(1)
            changed = True
            continue
        break

    if not changed or not stem:
        stem = original_stem
    return join_path(directory, f"{stem}{ext}")


def canonical_path_for_variant(path: str) -> str | None:
    """Return the canonical path of a generated variant, or None for a regular file."""
    canonical = strip_generated_suffixes(path)
    if canonical == normalize_path(path):
        return None
    return canonical


def is_generated_artifact_path(path: str) -> bool:
    return canonical_path_for_variant(path) is not None


def remote_variant_path(path: str) -> str:
    """Path for a remote copy that collided with an untracked local file."""
    directory, name = split_path(path)
    stem, ext = split_name(name)
    return join_path(directory, f"{stem}{REMOTE_SUFFIX}{ext}")


def conflict_file_path(path: str, when: datetime) -> str:
    """Sibling path for a side-by-side conflict copy.

    Args:
        path: Canonical path of the conflicted file.
        when: Timestamp embedded in the name.

    Returns:
        `stem.sync-conflict-YYYYMMDD-HHMMSS.ext` next to the original.
    """
    directory, name = split_path(path)
    stem, ext = split_name(name)
    stamp = when.strftime("%Y%m%d-%H%M%S")
    return join_path(directory, f"{stem}.sync-conflict-{stamp}{ext}")


def pre_merge_paths(path: str) -> tuple[str, str]:
    """Paths where the local and remote sides are saved before a merge."""
    directory, name = split_path(path)
    stem, ext = split_name(name)
    return (
        join_path(directory, f"{stem}.pre-merge-local{ext}"),
        join_path(directory, f"{stem}.pre-merge-remote{ext}"),
    )


def restored_file_path(path: str, when: datetime) -> str:
    """Sibling path for a restored revision: `stem.restored-<ts>.ext`."""
    directory, name = split_path(path)
    stem, ext = split_name(name)
    stamp = when.strftime(RESTORED_TIMESTAMP_FORMAT)
    return join_path(directory, f"{stem}.restored-{stamp}{ext}")


TEXT_EXTENSIONS = frozenset({".md", ".txt", ".json", ".canvas", ".csv", ".js", ".ts"})


def is_text_candidate(path: str, mime_type: str | None = None) -> bool:
    """Whether two copies of path can be combined with conflict markers."""
    _, ext = split_name(split_path(path)[1])
    if ext.lower() in TEXT_EXTENSIONS:
        return True
    if mime_type:
        mime = mime_type.lower()
        return mime.startswith("text/") or "json" in mime or "xml" in mime
    return False
