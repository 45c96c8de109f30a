"""tar.gz archives of persistent instance directories."""

import asyncio
import shutil
import tarfile
from pathlib import Path


def _create(source_dir: str, archive_path: str) -> int:
    Path(archive_path).parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive_path, "w:gz") as tar:
        # Archive members are relative to the directory root
        tar.add(source_dir, arcname=".")
    return Path(archive_path).stat().st_size


def _extract(archive_path: str, target_dir: str) -> None:
    Path(target_dir).mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive_path, "r:gz") as tar:
        tar.extractall(target_dir, filter="data")


def _wipe(directory: str) -> None:
    path = Path(directory)
    if not path.exists():
        path.mkdir(parents=True)
        return
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()


async def create_archive(source_dir: str, archive_path: str) -> int:
    """Pack ``source_dir`` into ``archive_path``; returns the archive size in bytes."""
    return await asyncio.to_thread(_create, source_dir, archive_path)


async def extract_archive(archive_path: str, target_dir: str) -> None:
    await asyncio.to_thread(_extract, archive_path, target_dir)


async def wipe_directory(directory: str) -> None:
    """Remove the directory's contents, keeping (or creating) the directory."""
    await asyncio.to_thread(_wipe, directory)


async def remove_tree(directory: str) -> None:
    await asyncio.to_thread(shutil.rmtree, directory, True)


def _remove_path(path: str) -> None:
    target = Path(path)
    if target.is_dir() and not target.is_symlink():
        shutil.rmtree(target)
    else:
        target.unlink(missing_ok=True)


async def remove_path(path: str) -> None:
    """Remove a directory tree or a single file (disk images); missing is fine."""
    await asyncio.to_thread(_remove_path, path)
