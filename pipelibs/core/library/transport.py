"""
Version-control transports.

The provider only needs two operations from a transport:

    resolve_revision(location, version) -> revision id
    fetch(location, revision) -> tar archive bytes of the tree

Transports raise ``TransportError`` when the remote cannot be reached (the
caller may retry) and ``RevisionNotFound`` when the remote answered but does
not know the version or revision (not worth retrying).
"""

import hashlib
import io
import logging
import os
import re
import subprocess
import tarfile
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from pipelibs.core.config import settings

_log = logging.getLogger(__name__)

_SHA_RE = re.compile(r"^[0-9a-f]{40}([0-9a-f]{24})?$")


class TransportError(Exception):
    """Remote unavailable (network, auth, missing executable)."""

    pass


class RevisionNotFound(Exception):
    """Remote reachable but the version token or revision does not exist."""

    pass


class VcsTransport(Protocol):
    def resolve_revision(self, location: str, version: str | None) -> str: ...

    def fetch(self, location: str, revision: str) -> bytes: ...


# ---------------------------------------------------------------------------
# Tree archives
# ---------------------------------------------------------------------------


def pack_tree(files: Mapping[str, bytes]) -> bytes:
    """Deterministic tar of *files* (sorted, zero mtimes)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for path in sorted(files):
            data = files[path]
            info = tarfile.TarInfo(name=path)
            info.size = len(data)
            info.mtime = 0
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def unpack_tree(data: bytes) -> dict[str, bytes]:
    """Regular files of a tar archive, keyed by normalized relative path."""
    files: dict[str, bytes] = {}
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            path = member.name.replace("\\", "/")
            parts = [p for p in path.split("/") if p not in ("", ".")]
            if not parts or ".." in parts or path.startswith("/"):
                _log.warning("Skipping unsafe archive member %r", member.name)
                continue
            fh = tar.extractfile(member)
            if fh is None:
                continue
            files["/".join(parts)] = fh.read()
    return files


def tree_digest(files: Mapping[str, bytes]) -> str:
    """Content address of a file tree: sha256 over sorted (path, content)."""
    h = hashlib.sha256()
    for path in sorted(files):
        h.update(path.encode("utf-8"))
        h.update(b"\0")
        h.update(hashlib.sha256(files[path]).digest())
    return h.hexdigest()


def read_directory(root: Path) -> dict[str, bytes]:
    files: dict[str, bytes] = {}
    for p in sorted(root.rglob("*")):
        if not p.is_file():
            continue
        rel = p.relative_to(root).as_posix()
        if rel.split("/", 1)[0] in (".git", ".svn", ".hg"):
            continue
        files[rel] = p.read_bytes()
    return files


# ---------------------------------------------------------------------------
# Local snapshots
# ---------------------------------------------------------------------------


class LocalDirectoryTransport:
    """
    Pinned local snapshots.

    ``location`` is a library tree on disk. With a version token, the tree is
    ``location/<version>`` (a directory of version-named trees). Revision ids
    are content digests; trees handed out once stay fetchable by digest even if
    the directory changes afterwards.
    """

    def __init__(self) -> None:
        self._retained: dict[tuple[str, str], bytes] = {}
        self._lock = threading.Lock()

    def _tree_dir(self, location: str, version: str | None) -> Path:
        root = Path(location)
        if not root.is_dir():
            raise TransportError(f"Library directory '{location}' is not available")
        if not version:
            return root
        candidate = root / version
        if candidate.is_dir() and candidate.resolve().parent == root.resolve():
            return candidate
        raise RevisionNotFound(f"No snapshot '{version}' under '{location}'")

    def resolve_revision(self, location: str, version: str | None) -> str:
        if version and _is_digest(version):
            with self._lock:
                if (location, version) in self._retained:
                    return version
        files = read_directory(self._tree_dir(location, version))
        revision = tree_digest(files)
        with self._lock:
            self._retained[(location, revision)] = pack_tree(files)
        return revision

    def fetch(self, location: str, revision: str) -> bytes:
        with self._lock:
            data = self._retained.get((location, revision))
        if data is not None:
            return data
        files = read_directory(self._tree_dir(location, None))
        if tree_digest(files) != revision:
            raise RevisionNotFound(f"Snapshot {revision} of '{location}' is gone")
        return pack_tree(files)


def _is_digest(token: str) -> bool:
    return len(token) == 64 and all(c in "0123456789abcdef" for c in token)


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------


class GitTransport:
    """
    Git over the CLI: ``ls-remote`` to resolve, a bare mirror per remote plus
    ``git archive`` to fetch.
    """

    def __init__(self, mirror_root: str | Path | None = None) -> None:
        self._mirror_root = Path(mirror_root or Path(settings.LIBRARY_CACHE_DIR) / "git")
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _git(self, args: list[str], cwd: Path | None = None) -> bytes:
        try:
            completed = subprocess.run(
                [settings.GIT_EXECUTABLE, *args],
                cwd=cwd,
                capture_output=True,
                timeout=settings.GIT_TIMEOUT_SECONDS,
                check=False,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except FileNotFoundError as e:
            raise TransportError(f"git executable not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise TransportError(f"git {args[0]} timed out") from e
        if completed.returncode != 0:
            err = completed.stderr.decode("utf-8", errors="replace").strip()
            raise subprocess.CalledProcessError(
                completed.returncode, args, output=completed.stdout, stderr=err
            )
        return completed.stdout

    def _lock_for(self, location: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(location, threading.Lock())

    def resolve_revision(self, location: str, version: str | None) -> str:
        if version and _SHA_RE.match(version):
            return version
        ref = version or "HEAD"
        patterns = (
            ["HEAD"]
            if ref == "HEAD"
            else [f"refs/heads/{ref}", f"refs/tags/{ref}", f"refs/tags/{ref}^{{}}"]
        )
        try:
            out = self._git(["ls-remote", location, *patterns])
        except subprocess.CalledProcessError as e:
            raise TransportError(f"ls-remote {location} failed: {e.stderr}") from e
        refs: dict[str, str] = {}
        for line in out.decode("utf-8", errors="replace").splitlines():
            sha, _, name = line.partition("\t")
            if sha and name:
                refs[name.strip()] = sha.strip()
        # Annotated tags: prefer the peeled commit.
        for name in (f"refs/tags/{ref}^{{}}", f"refs/heads/{ref}", f"refs/tags/{ref}", "HEAD"):
            if name in refs:
                return refs[name]
        raise RevisionNotFound(f"No branch or tag '{ref}' in {location}")

    def _mirror(self, location: str) -> Path:
        digest = hashlib.sha1(location.encode("utf-8"), usedforsecurity=False).hexdigest()
        path = self._mirror_root / digest
        if not (path / "HEAD").exists():
            path.mkdir(parents=True, exist_ok=True)
            try:
                self._git(["init", "--bare", "--quiet", str(path)])
            except subprocess.CalledProcessError as e:
                raise TransportError(f"Cannot create mirror for {location}: {e.stderr}") from e
        return path

    def _has_commit(self, mirror: Path, revision: str) -> bool:
        try:
            self._git(["cat-file", "-e", f"{revision}^{{commit}}"], cwd=mirror)
            return True
        except subprocess.CalledProcessError:
            return False

    def fetch(self, location: str, revision: str) -> bytes:
        with self._lock_for(location):
            mirror = self._mirror(location)
            if not self._has_commit(mirror, revision):
                _log.info("Fetching %s into mirror %s", location, mirror.name)
                try:
                    self._git(
                        [
                            "fetch",
                            "--quiet",
                            "--prune",
                            location,
                            "+refs/heads/*:refs/heads/*",
                            "+refs/tags/*:refs/tags/*",
                        ],
                        cwd=mirror,
                    )
                except subprocess.CalledProcessError as e:
                    raise TransportError(f"fetch {location} failed: {e.stderr}") from e
                if not self._has_commit(mirror, revision):
                    raise RevisionNotFound(f"Revision {revision} not found in {location}")
            try:
                return self._git(["archive", "--format=tar", revision], cwd=mirror)
            except subprocess.CalledProcessError as e:
                raise TransportError(f"archive {revision} failed: {e.stderr}") from e
