"""Zip packaging of source trees and build output."""

import asyncio
import zipfile
from pathlib import Path

EXCLUDED_DIRS = frozenset({".git", "node_modules", ".next", "__pycache__", ".venv", "venv", ".smartdeploy"})


def _write_zip(source: Path, destination: Path, extra_files: dict[str, str], exclude: frozenset[str]) -> int:
    count = 0
    with zipfile.ZipFile(destination, "w", zipfile.ZIP_DEFLATED) as archive:
        for path in sorted(source.rglob("*")):
            relative = path.relative_to(source)
            if any(part in exclude for part in relative.parts):
                continue
            if path.is_file() and relative.as_posix() not in extra_files:
                archive.write(path, relative.as_posix())
                count += 1
        for name, content in extra_files.items():
            archive.writestr(name, content)
            count += 1
    return count


async def create_archive(
    source: Path,
    destination: Path,
    extra_files: dict[str, str] | None = None,
    exclude: frozenset[str] = EXCLUDED_DIRS,
) -> int:
    """Zip ``source`` into ``destination``. Returns the number of entries.

    ``extra_files`` (archive path -> content) are added or replace files
    from the tree.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    return await asyncio.to_thread(_write_zip, source, destination, extra_files or {}, exclude)
