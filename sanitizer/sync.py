import os
import shutil
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from .utils import audit

MAX_FILE_SIZE = 10 * 1024 * 1024
BINARY_SNIFF_BYTES = 8192
PROJECT_INTERNAL_DIR = ".claude"

Transform = Callable[[str], str]


@dataclass(frozen=True)
class FileEntry:
    path: Path
    relative: str  # forward-slash separated, relative to the walk root
    size: int
    mode: int


def normalize_relative(path) -> str:
    return str(path).replace("\\", "/")


def is_excluded_path(relative, skip_paths: Sequence[str]) -> bool:
    """Match exact name, leading ``skip/`` prefix, or an interior ``/skip/`` segment."""
    relative = normalize_relative(relative)
    for skip in skip_paths:
        skip = normalize_relative(skip).strip("/")
        if not skip:
            continue
        if (
            relative == skip
            or relative.startswith(skip + "/")
            or ("/" + skip + "/") in relative
        ):
            return True
    return False


def is_binary(path) -> bool:
    """A null byte in the first 8 KiB marks a file binary; unreadable counts as binary."""
    try:
        with open(path, "rb") as fh:
            chunk = fh.read(BINARY_SNIFF_BYTES)
    except OSError:
        return True
    return b"\x00" in chunk


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def iter_files(src_root, skip_paths: Sequence[str] = (), prune: Sequence = ()) -> Iterator[FileEntry]:
    """Lazily yield regular, non-symlink files under ``src_root`` within the size ceiling.

    Directories in ``prune`` (absolute paths) are never descended into.
    """
    root = Path(src_root).resolve()
    pruned = []
    for item in prune:
        try:
            pruned.append(Path(item).resolve())
        except OSError:
            continue

    for dirpath, dirnames, filenames in os.walk(root, onerror=None, followlinks=False):
        current = Path(dirpath)
        rel_dir = normalize_relative(os.path.relpath(current, root))
        if rel_dir == ".":
            rel_dir = ""

        kept = []
        for name in sorted(dirnames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            child = current / name
            if is_excluded_path(rel + "/", skip_paths):
                continue
            if any(child == p or _is_within(child, p) for p in pruned):
                continue
            kept.append(name)
        dirnames[:] = kept

        for name in sorted(filenames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if is_excluded_path(rel, skip_paths):
                continue
            path = current / name
            try:
                info = os.lstat(path)
            except OSError:
                continue
            if stat.S_ISLNK(info.st_mode) or not stat.S_ISREG(info.st_mode):
                continue
            if info.st_size > MAX_FILE_SIZE:
                continue
            yield FileEntry(path=path, relative=rel, size=info.st_size, mode=info.st_mode)


def iter_project_files(project_root, skip_paths: Sequence[str] = (), prune: Sequence = ()) -> Iterator[FileEntry]:
    """Files eligible for in-place sanitizing: non-empty text outside ``.claude``."""
    for entry in iter_files(project_root, skip_paths, prune):
        if entry.relative == PROJECT_INTERNAL_DIR or entry.relative.startswith(PROJECT_INTERNAL_DIR + "/"):
            continue
        if entry.size == 0:
            continue
        if is_binary(entry.path):
            continue
        yield entry


def project_entry(path, project_root, skip_paths: Sequence[str] = ()) -> Optional[FileEntry]:
    """Return the entry for one file if it is eligible for sanitizing, else None."""
    root = Path(project_root).resolve()
    try:
        target = Path(path)
        if not target.is_absolute():
            target = root / target
        target = Path(os.path.abspath(target))
        target = target.parent.resolve() / target.name
        info = os.lstat(target)
    except OSError:
        return None
    if not _is_within(target, root):
        return None
    if stat.S_ISLNK(info.st_mode) or not stat.S_ISREG(info.st_mode):
        return None
    if info.st_size == 0 or info.st_size > MAX_FILE_SIZE:
        return None
    rel = normalize_relative(os.path.relpath(target, root))
    if rel == PROJECT_INTERNAL_DIR or rel.startswith(PROJECT_INTERNAL_DIR + "/"):
        return None
    if is_excluded_path(rel, skip_paths):
        return None
    if is_binary(target):
        return None
    return FileEntry(path=target, relative=rel, size=info.st_size, mode=info.st_mode)


def read_text(path) -> str:
    # surrogateescape keeps non-UTF-8 bytes intact through a decode/encode cycle.
    with open(path, "rb") as fh:
        return fh.read().decode("utf-8", errors="surrogateescape")


def write_text(path, content, mode=None):
    with open(path, "wb") as fh:
        fh.write(content.encode("utf-8", errors="surrogateescape"))
    if mode is not None:
        os.chmod(path, stat.S_IMODE(mode))


def mirror_file(entry: FileEntry, dst_root, transform: Optional[Transform] = None) -> Path:
    """Materialize one file under ``dst_root``; binary files are copied verbatim."""
    target = Path(dst_root) / entry.relative
    target.parent.mkdir(parents=True, exist_ok=True)

    if is_binary(entry.path):
        shutil.copyfile(entry.path, target)
        os.chmod(target, stat.S_IMODE(entry.mode))
        return target

    try:
        content = read_text(entry.path)
    except OSError:
        shutil.copyfile(entry.path, target)
        return target

    if transform is not None:
        content = transform(content)
    write_text(target, content, entry.mode)
    return target


def sync_tree(src_root, dst_root, skip_paths: Sequence[str] = (), transform: Optional[Transform] = None) -> int:
    """Mirror ``src_root`` into ``dst_root`` applying ``transform`` to text files.

    Best-effort: a file that fails is skipped and the walk continues.
    Returns the number of files written.
    """
    dst = Path(dst_root)
    dst.mkdir(parents=True, exist_ok=True)
    written = 0
    for entry in iter_files(src_root, skip_paths, prune=(dst,)):
        try:
            mirror_file(entry, dst, transform)
            written += 1
        except OSError as exc:
            audit("SYNC", f"Skipped {entry.relative}: {exc}", "WARNING")
    audit("SYNC", f"{written} file(s) mirrored into {dst}", "INFO")
    return written
