"""Snapshot of an original file before it is rewritten in place."""

import shutil
import tempfile
from pathlib import Path

from loguru import logger

from exif_ai.errors import BackupError


def backup_path_for(path: Path) -> Path:
    """
    Return the backup location: the full file name plus ".bak".

    Examples:
        >>> backup_path_for(Path("photos/IMG_0001.jpg")).name
        'IMG_0001.jpg.bak'

    """
    return path.with_name(f"{path.name}.bak")


def backup_original(path: Path) -> Path:
    """
    Copy `path` to its backup location unless a backup already exists.

    An existing backup is never overwritten: it holds the oldest known original.

    Raises:
        BackupError: The copy could not be completed; the target must not be modified

    """
    backup = backup_path_for(path)
    if backup.exists():
        logger.info("backup_exists", backup=str(backup))
        return backup

    tmp_name = None
    try:
        with tempfile.NamedTemporaryFile(
            dir=path.parent, prefix=f".{backup.name}.", suffix=".tmp", delete=False
        ) as tmp, path.open("rb") as src:
            tmp_name = tmp.name
            shutil.copyfileobj(src, tmp)
        shutil.copystat(path, tmp_name)
        Path(tmp_name).replace(backup)
    except OSError as exc:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
        msg = f"failed to back up {path}: {exc}"
        raise BackupError(msg) from exc

    logger.info("backup_created", backup=str(backup))
    return backup
