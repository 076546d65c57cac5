import logging
import os
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger(__name__)


def matches_pattern(file_path: str, pattern: str) -> bool:
    """
    Match a relative path against the restricted include-glob dialect.

    ``dir/**/*.ext`` means "under dir/ and ending in .ext"; ``**/*.ext`` and
    ``*.ext`` mean "ending in .ext"; anything else is a substring match.
    """
    if pattern.startswith("**/"):
        pattern = pattern[3:]

    parts = pattern.split("/**/")
    if len(parts) == 2:
        dir_prefix, file_suffix = parts
        return file_path.startswith(dir_prefix + "/") and file_path.endswith(file_suffix.replace("*", "", 1))

    if pattern.startswith("*"):
        return file_path.endswith(pattern[1:])

    return pattern in file_path


def is_excluded(relative_path: str, exclude_patterns: Iterable[str]) -> bool:
    """
    Check a relative path against the exclude list.

    A bare name (``build``) matches a whole path segment, so ``api/rebuild.js``
    is kept while ``build/app.js`` is dropped. An entry containing ``/``
    (``tools/graph-builder``) is a substring match on the path.
    """
    wrapped = f"/{relative_path}/"
    for pattern in exclude_patterns:
        if "/" in pattern.strip("/"):
            if pattern in relative_path:
                return True
        elif f"/{pattern.strip('/')}/" in wrapped:
            return True
    return False


def discover_files(root: Path, include_patterns: List[str], exclude_patterns: List[str]) -> List[str]:
    """
    Walk ``root`` and return matching files as sorted, ``/``-separated relative paths.

    Excluded paths are pruned before descending, so nothing beneath an
    excluded directory is ever returned.
    """
    root = Path(root)
    files = []

    def on_error(error: OSError) -> None:
        logger.warning(f"⚠️  Could not read directory: {error.filename}")

    for current, dirs, file_names in os.walk(root, onerror=on_error):
        rel_dir = Path(current).relative_to(root).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir

        # Filter directories (in place, sorted for a deterministic walk)
        dirs[:] = sorted(
            d for d in dirs if not is_excluded(f"{rel_dir}/{d}" if rel_dir else d, exclude_patterns)
        )

        for file_name in sorted(file_names):
            rel_path = f"{rel_dir}/{file_name}" if rel_dir else file_name
            if is_excluded(rel_path, exclude_patterns):
                continue
            if any(matches_pattern(rel_path, pattern) for pattern in include_patterns):
                files.append(rel_path)

    return sorted(files)
