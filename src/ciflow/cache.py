# cache.py
from __future__ import annotations

import hashlib
import io
import json
import tarfile
import uuid
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .errors import CacheError
from .model import CacheEntry, CacheSpec

# Cache entries are content-addressed:
#
#   key = <scope>-sha256(version, scope, agent labels, cached paths,
#                        sha256 of every key file)
#
# and the payload is a tar.gz of the cached paths relative to the agent
# workdir. Two writers of one key write the same bytes, so the store can be
# last-writer-wins.

DEFAULT_CACHE_DIR = ".ciflow/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".ciflow/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]
KEY_VERSION = 1  # bump when the key payload changes shape

_CHUNK = 1 << 20


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _canonical(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _file_digest(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def _relpath(p: Path, root: Path) -> str:
    return p.resolve().relative_to(root).as_posix()


def _excluded(rel: str, globs: Iterable[str] = DEFAULT_CACHE_EXCLUDES) -> bool:
    return any(Path(rel).match(g) for g in globs)


def _files(path: Path) -> List[Path]:
    """path itself if it is a file, else every file below it in sorted order."""
    if path.is_file():
        return [path]
    return [p for p in sorted(path.rglob("*")) if p.is_file()]


def _expand(root: Path, patterns: Iterable[str]) -> Tuple[List[Path], List[str]]:
    """
    Resolve key-file patterns ("Cargo.lock", "crates/", "**/Cargo.toml").

    Returns (existing paths without duplicates, patterns that matched nothing).
    """
    found: Dict[Path, None] = {}
    unmatched: List[str] = []
    for pat in (p.strip() for p in patterns):
        if not pat:
            continue
        direct = root / pat
        hits = [direct] if direct.exists() else sorted(root.glob(pat))
        if not hits:
            unmatched.append(pat)
        for h in hits:
            found.setdefault(h.resolve(), None)
    return list(found), sorted(unmatched)


def _hash_inputs(root: Path, patterns: Iterable[str]) -> Tuple[str, Dict]:
    """
    Digest of the key files: relative path plus content hash of each file.
    Patterns that match nothing are part of the digest, so creating the
    file later moves the key.
    """
    paths, unmatched = _expand(root, patterns)
    fingerprints = []
    for p in paths:
        for f in _files(p):
            rel = _relpath(f, root)
            if not _excluded(rel):
                fingerprints.append((rel, _file_digest(f)))
    fingerprints.sort()
    manifest = {"files": [list(fp) for fp in fingerprints], "unmatched": unmatched}
    return _digest(_canonical(manifest)), manifest


def compute_cache_key(
    spec: CacheSpec,
    labels: Iterable[str],
    *,
    workdir: str | Path = ".",
) -> Tuple[str, Dict]:
    """Returns (cache_key, manifest) where manifest explains the key."""
    root = Path(workdir).resolve()
    inputs_hash, inputs_manifest = _hash_inputs(root, spec.key_files)

    payload = {
        "v": KEY_VERSION,
        "scope": spec.scope,
        "labels": sorted(labels),
        "paths": sorted(spec.paths),
        "inputs_hash": inputs_hash,
    }
    key = f"{spec.scope}-{_digest(_canonical(payload))}"
    return key, {"key": key, "payload": payload, "inputs": inputs_manifest}


# ---------------------------------------------------------------------
# Payload packing
# ---------------------------------------------------------------------

def pack_paths(workdir: str | Path, paths: Iterable[str]) -> bytes:
    """tar.gz the given files/dirs (relative to workdir), skipping excludes."""
    root = Path(workdir).resolve()
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            src = (root / entry).resolve()
            if not src.exists():
                continue
            for f in _files(src):
                rel = _relpath(f, root)
                if not _excluded(rel):
                    tar.add(str(f), arcname=rel, recursive=False)
    return buf.getvalue()


def unpack_payload(payload: bytes, workdir: str | Path) -> List[str]:
    """Restore is "overwrite by extraction". Returns restored member names."""
    root = Path(workdir).resolve()
    root.mkdir(parents=True, exist_ok=True)
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r:gz") as tar:
        names = tar.getnames()
        tar.extractall(path=str(root), filter="data")
    return names


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class CacheStore(Protocol):
    def get(self, key: str) -> Optional[bytes]:
        ...

    def put(self, key: str, payload: bytes) -> str:
        """Store payload; returns a payload reference."""
        ...


class FileCacheStore:
    """One <key>.tar.gz per entry under a local directory."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def artifact_path(self, key: str) -> Path:
        return self.root / f"{key}.tar.gz"

    def get(self, key: str) -> Optional[bytes]:
        art = self.artifact_path(key)
        if not art.exists():
            return None
        return art.read_bytes()

    def put(self, key: str, payload: bytes) -> str:
        art = self.artifact_path(key)
        tmp = art.with_name(f"{art.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_bytes(payload)
        try:
            tmp.replace(art)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
        return str(art)

    def prune(self, keep: int = 20) -> int:
        """Keep only the newest N artifacts (by mtime). Returns removed count."""
        arts = sorted(self.root.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in arts[keep:]:
            p.unlink(missing_ok=True)
        return max(0, len(arts) - keep)


class RedisCacheStore:
    """Cache payloads stored as Redis strings under a key prefix."""

    def __init__(self, client, prefix: str = "ciflow:cache:", ttl_seconds: Optional[int] = None):
        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kw) -> "RedisCacheStore":
        import redis

        return cls(redis.Redis.from_url(url), **kw)

    def get(self, key: str) -> Optional[bytes]:
        return self.client.get(self.prefix + key)

    def put(self, key: str, payload: bytes) -> str:
        self.client.set(self.prefix + key, payload, ex=self.ttl_seconds)
        return self.prefix + key


# ---------------------------------------------------------------------
# Restore / save used by the step executor
# ---------------------------------------------------------------------

def restore(store: CacheStore, spec: CacheSpec, labels: Iterable[str], workdir: str | Path) -> Tuple[str, Optional[CacheEntry]]:
    """
    Look up and restore a cache scope. A miss returns (key, None).
    Store or extraction failures raise CacheError.
    """
    key, _manifest = compute_cache_key(spec, labels, workdir=workdir)
    try:
        payload = store.get(key)
    except Exception as e:
        raise CacheError(f"cache lookup failed: {e}", details={"key": key}) from e
    if payload is None:
        return key, None
    try:
        unpack_payload(payload, workdir)
    except (tarfile.TarError, OSError) as e:
        raise CacheError(f"cache exists but restore failed: {e}", details={"key": key}) from e
    return key, CacheEntry(key=key, scope=spec.scope, payload_ref=key)


def save(
    store: CacheStore,
    spec: CacheSpec,
    labels: Iterable[str],
    workdir: str | Path,
    key: Optional[str] = None,
) -> CacheEntry:
    """Pack and store spec.paths. Pass the key computed at restore time so
    files rewritten by the job (lockfiles) do not move the entry."""
    if key is None:
        key, _manifest = compute_cache_key(spec, labels, workdir=workdir)
    try:
        payload = pack_paths(workdir, spec.paths)
        ref = store.put(key, payload)
    except Exception as e:
        raise CacheError(f"cache write failed: {e}", details={"key": key}) from e
    return CacheEntry(key=key, scope=spec.scope, payload_ref=ref)

