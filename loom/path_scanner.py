"""One-shot listing of recordings that already exist when watching starts."""
from __future__ import annotations

from pathlib import Path


def has_extension(name: str, extension: str) -> bool:
    return name.lower().endswith(extension.lower())


def scan(directory: Path | str, extension: str = ".mp4") -> set[str]:
    """Return the names of ``extension`` files directly under ``directory``.

    An unreadable or missing directory yields an empty set; the watcher still
    starts and creates the directory afterwards.
    """

    root = Path(directory)
    known: set[str] = set()
    try:
        entries = list(root.iterdir())
    except OSError as exc:
        print(f"[scanner] cannot list {root}: {exc}", flush=True)
        return known
    for entry in entries:
        if not has_extension(entry.name, extension):
            continue
        try:
            if not entry.is_file():
                continue
        except OSError:
            continue
        known.add(entry.name)
    print(f"[scanner] Scanned {len(known)} existing {extension} files in {root}", flush=True)
    return known
