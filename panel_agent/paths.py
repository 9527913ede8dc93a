"""
panel-agent Path Resolver
Confines remote directory requests to a sandbox root.

Paths from the panel always use "/" and are treated as relative to the
sandbox root, so "/" and "" both mean the root itself. Containment is a
component-wise prefix check, never a string-prefix check: "/srv/game-evil"
is not inside "/srv/game".

Nothing here raises for bad input. An invalid path and a path outside the
sandbox both come back as None, and callers report them as "does not exist".
"""

import os
from typing import Dict, List, Optional


def _split(path: str) -> List[str]:
    # Keep the leading drive/anchor component, drop empty trailing ones ("/" -> [""])
    parts = os.path.normpath(path).split(os.sep)
    return parts[:1] + [part for part in parts[1:] if part]


def _components(path: str) -> List[str]:
    return _split(os.path.normcase(path))


def is_contained(path: str, root: str) -> bool:
    """True if every non-empty component of ``root`` matches ``path`` at the same index."""
    path_parts = _components(path)
    root_parts = _components(root)
    if len(path_parts) < len(root_parts):
        return False
    for index, part in enumerate(root_parts):
        if part and path_parts[index] != part:
            return False
    return True


def resolve(raw: str, root: str) -> Optional[str]:
    """
    Join a peer-supplied path onto ``root``.

    Returns the absolute, symlink-free path, or None if the input is not a
    usable path or lands outside the sandbox.
    """
    if not isinstance(raw, str) or '\0' in raw:
        return None
    try:
        real_root = os.path.realpath(root)
        local = raw.replace('/', os.sep).lstrip(os.sep)
        candidate = os.path.realpath(os.path.join(real_root, local))
    except (OSError, ValueError):
        return None
    if not is_contained(candidate, real_root):
        return None
    return candidate


def to_relative(path: str, root: str) -> str:
    """Sandbox-relative, "/"-separated form of ``path``. For display only."""
    return '/'.join(_split(path)[len(_split(root)):])


def list_directory(path: str, root: str) -> List[Dict]:
    """
    Immediate children of ``path``: directories first, then files, each by name.

    Item format: {"type": "dir"|"file", "name": str, "path": str, "size": int}
    ("size" only on files). Symlinks are listed by what they point at, and
    skipped when that target lies outside ``root``.
    """
    real_root = os.path.realpath(root)
    dirs = []
    files = []
    with os.scandir(path) as entries:
        for entry in entries:
            if entry.is_symlink() and not is_contained(os.path.realpath(entry.path), real_root):
                continue
            relative = to_relative(os.path.join(path, entry.name), root)
            try:
                if entry.is_dir():
                    dirs.append({"type": "dir", "name": entry.name, "path": relative})
                elif entry.is_file():
                    files.append({
                        "type": "file",
                        "name": entry.name,
                        "path": relative,
                        "size": entry.stat().st_size,
                    })
            except OSError:
                # Vanished or unreadable between scandir and stat
                continue
    dirs.sort(key=lambda item: item["name"])
    files.sort(key=lambda item: item["name"])
    return dirs + files
