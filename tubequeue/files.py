import logging
import os
import shutil
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)


def move_files_with_prefix(path_tmp, path_dest, prefix: str) -> List[Path]:
    """
    Move every regular file in `path_tmp` whose name starts with `prefix`
    into `path_dest`.

    Each file is copied first, and the scratch copy is only removed when its
    resolved path still lies inside `path_tmp`; otherwise the delete is
    skipped with a warning and the copy in `path_dest` is left in place.
    Returns the destination paths written. Per-file failures are logged and
    do not stop the remaining files.
    """
    scratch = Path(path_tmp)
    dest = Path(path_dest)
    scratch_real = scratch.resolve()
    moved = []

    if not prefix:
        logger.warning("Refusing to move files with an empty prefix from %s", scratch)
        return moved

    for entry in sorted(scratch.iterdir()):
        if not entry.name.startswith(prefix) or not entry.is_file():
            continue
        target = dest / entry.name
        try:
            shutil.copy2(entry, target)
        except OSError as e:
            logger.error("Could not copy %s to %s: %s", entry, target, e)
            continue
        moved.append(target)

        real = entry.resolve()
        if not _is_within(real, scratch_real):
            logger.warning("Skipped deletion for file outside %s: %s -> %s", scratch, entry, real)
            continue
        try:
            os.remove(real)
        except OSError as e:
            logger.warning("Copied %s but could not remove it: %s", entry, e)
    return moved


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True
