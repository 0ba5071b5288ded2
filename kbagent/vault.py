from __future__ import annotations

import os
import re
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional


NOTE_EXT = ".md"
_WINDOWS_ANCHOR_RE = re.compile(r"^[a-zA-Z]:")


class VaultPathError(ValueError):
    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(message)


def _has_windows_anchor(path_text: str) -> bool:
    s = path_text.strip()
    return bool(_WINDOWS_ANCHOR_RE.match(s)) or s.startswith("\\\\") or s.startswith("//")


def normalize_rel_path(raw: str, *, require_note: bool = True) -> str:
    """
    Canonical vault-relative POSIX path.

    Absolute or drive-anchored paths, '..' segments and hidden segments are
    rejected. With require_note the path must name a markdown note; a missing
    extension is filled in.
    """
    if not isinstance(raw, str) or not raw.strip():
        raise VaultPathError("invalid_arguments", "path must be a non-empty string")
    text = raw.strip().replace("\\", "/")
    if text.startswith("/") or _has_windows_anchor(raw):
        raise VaultPathError("path_denied", f"Absolute or anchored paths are not allowed: {raw}")

    parts = [p for p in PurePosixPath(text).parts if p not in ("", ".")]
    if not parts:
        if require_note:
            raise VaultPathError("invalid_arguments", "path must name a note")
        return ""
    for part in parts:
        if part == "..":
            raise VaultPathError("path_denied", f"Path escapes the vault: {raw}")
        if part.startswith("."):
            raise VaultPathError("path_denied", f"Hidden paths are not allowed: {raw}")

    rel = "/".join(parts)
    if require_note:
        suffix = PurePosixPath(rel).suffix.lower()
        if not suffix:
            rel = f"{rel}{NOTE_EXT}"
        elif suffix != NOTE_EXT:
            raise VaultPathError("path_denied", f"Only {NOTE_EXT} notes can be accessed: {raw}")
    return rel


@dataclass(frozen=True)
class FolderEntry:
    path: str
    kind: str
    size: int


class VaultStore:
    """Plain-file access to a vault directory. Reads always go to disk."""

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()

    def resolve(self, rel_path: str) -> Path:
        candidate = Path(os.path.abspath(str(self.root / rel_path)))
        try:
            candidate.relative_to(self.root)
        except ValueError as exc:
            raise VaultPathError("path_denied", f"Path escapes the vault: {rel_path}") from exc
        if candidate.exists():
            real = candidate.resolve()
            try:
                real.relative_to(self.root)
            except ValueError as exc:
                raise VaultPathError("path_denied", f"Symlink escapes the vault: {rel_path}") from exc
        return candidate

    def exists(self, rel_path: str) -> bool:
        return self.resolve(rel_path).is_file()

    def read_bytes(self, rel_path: str) -> Optional[bytes]:
        path = self.resolve(rel_path)
        if not path.is_file():
            return None
        with path.open("rb") as f:
            return f.read()

    def read_text(self, rel_path: str) -> Optional[str]:
        data = self.read_bytes(rel_path)
        if data is None:
            return None
        return data.decode("utf-8", errors="replace")

    def write_text(self, rel_path: str, content: str) -> None:
        self.write_bytes(rel_path, content.encode("utf-8"))

    def write_bytes(self, rel_path: str, data: bytes) -> None:
        """Atomic replace: temp file in the same directory, fsync, rename."""
        path = self.resolve(rel_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".kbagent-", suffix=".tmp", dir=str(path.parent))
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, str(path))
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def delete(self, rel_path: str) -> None:
        path = self.resolve(rel_path)
        if path.is_file():
            path.unlink()

    def iter_note_paths(self, folder: str = "") -> Iterator[str]:
        base = self.resolve(folder) if folder else self.root
        if not base.is_dir():
            return
        for dirpath, dirnames, filenames in os.walk(str(base)):
            dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
            for name in sorted(filenames):
                if name.startswith(".") or not name.lower().endswith(NOTE_EXT):
                    continue
                full = Path(dirpath) / name
                yield full.relative_to(self.root).as_posix()

    def note_count(self) -> int:
        return sum(1 for _ in self.iter_note_paths())

    def list_folder(self, folder: str = "") -> List[FolderEntry]:
        base = self.resolve(folder) if folder else self.root
        if not base.is_dir():
            raise VaultPathError("not_found", f"Folder does not exist: {folder or '/'}")
        entries: List[FolderEntry] = []
        for child in sorted(base.iterdir(), key=lambda p: p.name.lower()):
            if child.name.startswith("."):
                continue
            rel = child.relative_to(self.root).as_posix()
            if child.is_dir():
                entries.append(FolderEntry(path=rel, kind="folder", size=0))
            elif child.suffix.lower() == NOTE_EXT:
                entries.append(FolderEntry(path=rel, kind="note", size=child.stat().st_size))
        return entries

    def read_dotfile(self, rel_path: str) -> Optional[str]:
        """Read vault configuration files such as AGENTS.md or .kbagent/rules."""
        path = self.root / rel_path
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8", errors="replace")


class _FinalizeGate:
    """Shared access for readers, exclusive access while a commit is being finalized."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._readers = 0
        self._finalizing = False

    @contextmanager
    def reading(self) -> Iterator[None]:
        with self._cond:
            while self._finalizing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def finalizing(self) -> Iterator[None]:
        with self._cond:
            while self._finalizing:
                self._cond.wait()
            self._finalizing = True
            while self._readers > 0:
                self._cond.wait()
        try:
            yield
        finally:
            with self._cond:
                self._finalizing = False
                self._cond.notify_all()


class VaultLock:
    """
    One exclusive write lock per vault plus the finalize gate.

    The lock is per vault rather than per file because a single logical edit
    may touch several notes.
    """

    def __init__(self) -> None:
        self._write = threading.Lock()
        self._gate = _FinalizeGate()

    @contextmanager
    def writing(self) -> Iterator[None]:
        with self._write:
            yield

    def reading(self):
        return self._gate.reading()

    def finalizing(self):
        return self._gate.finalizing()


_LOCKS: Dict[str, VaultLock] = {}
_LOCKS_GUARD = threading.Lock()


def vault_lock_for(root: Path) -> VaultLock:
    key = str(root.resolve())
    with _LOCKS_GUARD:
        lock = _LOCKS.get(key)
        if lock is None:
            lock = VaultLock()
            _LOCKS[key] = lock
        return lock
