# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import re
import shutil
import subprocess
import tarfile
import tempfile
import threading
import time
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import redis

from .errors import CacheError
from .model import CacheDirective, ExecutionContext
from .settings import CACHE_TTL

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Step-level caching around expensive build artifacts:
#   cache_key = job slug + "/" + sha256(
#       job name,
#       rendered key template,
#       fingerprint(inputs file contents, tool versions, platform),
#       salt,
#   )
#
# Cache artifact:
#   a tar.gz of the directive's paths. Paths under the job workdir are
#   stored under "work/", paths under the home directory under "home/".
#
# Stores are plain key/value blob stores. A key is written once; rotate the
# salt (or change inputs) to invalidate.
# ---------------------------------------------------------------------

KEY_VERSION = 1
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".ciflow/**",
    "**/__pycache__/**",
    "**/*.pyc",
    "**/.DS_Store",
]

_SLUG_RE = re.compile(r"[^A-Za-z0-9_.-]+")


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _matches_any_glob(rel: str, globs: List[str]) -> bool:
    rel_path = Path(rel)
    return any(rel_path.match(g) for g in globs)


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Iterable[str]) -> List[Path]:
    """
    Expand input patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "src/"
      - glob:      "**/Cargo.toml"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def tool_version(tool: str, env: Mapping[str, str] | None = None) -> Optional[str]:
    """
    Best-effort version discovery. Keep it simple and stable.
    """
    for cmd in ([tool, "--version"], [tool, "-V"], [tool, "version"]):
        try:
            completed = subprocess.run(
                cmd,
                text=True,
                capture_output=True,
                check=False,
                env=dict(env) if env is not None else None,
                timeout=30,
            )
        except (OSError, subprocess.SubprocessError):
            continue
        text = (completed.stdout or "").strip() or (completed.stderr or "").strip()
        if completed.returncode == 0 and text:
            # Normalize whitespace to make hashing stable
            return " ".join(text.split())
    return None


def hash_inputs(
    root: Path,
    inputs: Iterable[str],
    *,
    excludes: Optional[List[str]] = None,
) -> Tuple[str, Dict]:
    """
    Hash the declared input set deterministically from relative paths and
    file contents. Returns (digest, manifest).
    """
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    file_fps: List[Tuple[str, str]] = []

    for p in _resolve_globs(root, inputs):
        files = [p] if p.is_file() else list(_iter_files_under(p))
        for f in files:
            rel = _relpath(f, root)
            if _matches_any_glob(rel, exclude_globs):
                continue
            file_fps.append((rel, _hash_file_contents(f)))

    file_fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    payload = {"files": file_fps}
    return _sha256_str(_json_dumps_stable(payload)), payload


def compute_fingerprint(directive: CacheDirective, ctx: ExecutionContext) -> str:
    """Fingerprint of everything the cached artifact depends on."""
    inputs_hash, _ = hash_inputs(ctx.workdir, directive.inputs)
    tools = {t: tool_version(t, ctx.env) for t in directive.tools}
    return _sha256_str(_json_dumps_stable({
        "inputs": inputs_hash,
        "tools": tools,
        "platform": ctx.platform,
    }))


def render_key_template(template: str, ctx: ExecutionContext) -> str:
    try:
        return template.format_map({"job": ctx.job, "platform": ctx.platform, "env": dict(ctx.env)})
    except (KeyError, IndexError, ValueError, AttributeError) as e:
        raise CacheError(message=f"Cannot render cache key template {template!r}: {e}", job=ctx.job) from e


def compute_cache_key(job: str, fingerprint: str, salt: str = "", template: str = "") -> str:
    """
    Deterministic key for (job, fingerprint, salt, template).

    Identical inputs give the same key; any differing input gives a
    different digest. The job slug prefix keeps keys of different jobs apart
    in listings and on disk.
    """
    payload = {
        "v": KEY_VERSION,  # bump this if you change hashing format
        "job": job,
        "template": template,
        "fingerprint": fingerprint,
        "salt": salt,
    }
    slug = _SLUG_RE.sub("_", job).strip("._") or "job"
    return f"{slug}/{_sha256_str(_json_dumps_stable(payload))}"


def key_for_step(directive: CacheDirective, ctx: ExecutionContext) -> str:
    template = render_key_template(directive.key, ctx)
    return compute_cache_key(ctx.job, compute_fingerprint(directive, ctx), directive.salt, template)


# ---------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------

def _cache_path(entry: str, workdir: Path) -> Tuple[Path, str, Path]:
    """Return (absolute source, archive prefix, base dir) for one cache path."""
    if entry.startswith("~"):
        home = Path.home()
        src = Path(entry).expanduser()
        return src, "home", home
    return workdir / entry, "work", workdir


def pack_paths(paths: Iterable[str], workdir: Path, *, excludes: Optional[List[str]] = None) -> bytes:
    """Archive the given paths into a tar.gz blob. Missing paths are skipped."""
    exclude_globs = list(DEFAULT_CACHE_EXCLUDES) + list(excludes or [])
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for entry in paths:
            src, prefix, base = _cache_path(entry, workdir)
            if not src.exists():
                continue
            files = [src] if src.is_file() else list(_iter_files_under(src))
            for f in files:
                try:
                    rel = _relpath(f, base)
                except ValueError:
                    # outside its base (symlink escaping the tree)
                    continue
                if _matches_any_glob(rel, exclude_globs):
                    continue
                tar.add(str(f), arcname=f"{prefix}/{rel}", recursive=False)
    return buf.getvalue()


def unpack_blob(blob: bytes, workdir: Path) -> None:
    """Restore an archive produced by `pack_paths` (overwrite by extraction)."""
    with tempfile.TemporaryDirectory(prefix="ciflow-restore-") as tmp:
        tmp_p = Path(tmp)
        with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
            tar.extractall(path=tmp, filter="data")
        for prefix, base in (("work", workdir), ("home", Path.home())):
            src = tmp_p / prefix
            if src.is_dir():
                shutil.copytree(src, base, dirs_exist_ok=True)


# ---------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------

class CacheStore:
    """
    Key/value blob store.

    get(key) -> bytes | None
    put(key, blob) -> True if written, False if the key already existed

    Implementations raise CacheError on backend failure.
    """

    def get(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def put(self, key: str, blob: bytes) -> bool:
        raise NotImplementedError

    def prune(self, keep: int) -> int:
        """Evict least recently used entries beyond `keep` per job. Returns count removed."""
        return 0


class MemoryCacheStore(CacheStore):
    """Dict-backed store; shared safely between job threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: Dict[str, bytes] = {}
        self._access: Dict[str, float] = {}

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            blob = self._blobs.get(key)
            if blob is not None:
                self._access[key] = time.time()
            return blob

    def put(self, key: str, blob: bytes) -> bool:
        with self._lock:
            if key in self._blobs:
                return False
            self._blobs[key] = bytes(blob)
            self._access[key] = time.time()
            return True

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._blobs)

    def __len__(self) -> int:
        return len(self._blobs)

    def prune(self, keep: int) -> int:
        with self._lock:
            by_job: Dict[str, List[str]] = {}
            for k in self._blobs:
                by_job.setdefault(k.split("/", 1)[0], []).append(k)
            removed = 0
            for keys in by_job.values():
                keys.sort(key=lambda k: self._access[k], reverse=True)
                for k in keys[keep:]:
                    del self._blobs[k]
                    del self._access[k]
                    removed += 1
            return removed


class FileCacheStore(CacheStore):
    """
    File-based cache store:
      root/
        <job_slug>/
          <digest>.tar.gz
          <digest>.manifest.json

    Blobs are written to a temp file and hard-linked into place, so readers
    never see a partial artifact. Access time (mtime) is bumped on every hit
    and drives pruning.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def _paths(self, key: str) -> Tuple[Path, Path]:
        if ".." in key.split("/") or key.startswith("/"):
            raise CacheError(message=f"Invalid cache key: {key!r}")
        base = self.root / key
        return base.with_name(base.name + ".tar.gz"), base.with_name(base.name + ".manifest.json")

    def get(self, key: str) -> Optional[bytes]:
        art, _ = self._paths(key)
        try:
            blob = art.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(message=f"Cache read failed for key={key!r}: {e}") from e
        try:
            os.utime(art)
        except OSError:
            pass  # access time is advisory
        return blob

    def put(self, key: str, blob: bytes) -> bool:
        art, man = self._paths(key)
        if art.exists():
            return False
        tmp_name = None
        try:
            art.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=art.parent, prefix=".tmp-", delete=False) as tmp:
                tmp_name = tmp.name
                tmp.write(blob)
            # link() refuses an existing target: of racing writers, the first wins
            try:
                os.link(tmp_name, art)
            except FileExistsError:
                return False
            manifest = {"key": key, "size": len(blob), "sha256": _sha256_bytes(blob), "stored_at_unix": int(time.time())}
            man.write_text(json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8")
            return True
        except OSError as e:
            raise CacheError(message=f"Cache write failed for key={key!r}: {e}") from e
        finally:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)

    def prune(self, keep: int) -> int:
        """
        Keep only the N most recently used artifacts per job.
        """
        if not self.root.exists():
            return 0
        removed = 0
        for job_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            tars = sorted(job_dir.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
            for p in tars[keep:]:
                digest = p.name[: -len(".tar.gz")]
                p.unlink(missing_ok=True)
                (job_dir / f"{digest}.manifest.json").unlink(missing_ok=True)
                removed += 1
        return removed


class RedisCacheStore(CacheStore):
    """Redis-backed store. Writes use SET NX, so the first writer wins."""

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "ciflow:cache:",
        ttl: int | None = CACHE_TTL,
        client: "redis.Redis | None" = None,
    ) -> None:
        self._client = client if client is not None else redis.Redis.from_url(url)
        self.prefix = prefix
        self.ttl = ttl

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(self.prefix + key)
        except redis.RedisError as exc:
            raise CacheError(message=f"Redis GET failed for key={key!r}: {exc}") from exc

    def put(self, key: str, blob: bytes) -> bool:
        try:
            return bool(self._client.set(self.prefix + key, blob, nx=True, ex=self.ttl))
        except redis.RedisError as exc:
            raise CacheError(message=f"Redis SET failed for key={key!r}: {exc}") from exc


def open_store(url: str | Path) -> CacheStore:
    """Build a store from "redis://...", "memory://" or a directory path."""
    text = str(url)
    if text.startswith(("redis://", "rediss://", "unix://")):
        return RedisCacheStore(text)
    if text == "memory://":
        return MemoryCacheStore()
    return FileCacheStore(text)
