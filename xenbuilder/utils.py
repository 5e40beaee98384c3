"""Utility functions for xenbuilder."""

from __future__ import annotations

import hashlib
import tempfile
import time
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional, Tuple, TypeVar
from urllib.parse import urlparse
from urllib.request import pathname2url

import requests

from xenbuilder.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    DOWNLOADABLE_SCHEMES,
    DURATION_RE,
    DURATION_UNITS,
)
from xenbuilder.exceptions import BuildError, CancellationError

T = TypeVar("T")


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def parse_duration(raw: str) -> timedelta:
    """Parse a Go-style duration such as ``5s``, ``200m`` or ``1h30m``."""
    text = raw.strip()
    sign = 1.0
    if text[:1] in ("+", "-"):
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration '{raw}'")
    seconds = 0.0
    pos = 0
    for match in DURATION_RE.finditer(text):
        if match.start() != pos:
            raise ValueError(f"invalid duration '{raw}'")
        seconds += float(match.group(1)) * DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration '{raw}'")
    return timedelta(seconds=sign * seconds)


def parse_size_to_bytes(raw: str) -> int:
    """Convert a size like ``40G`` (or a plain byte count) to bytes."""
    match = DISK_SIZE_RE.match(raw.strip())
    if not match:
        raise BuildError(f"Invalid size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '20G')")
    value = int(match.group(1))
    suffix = match.group(2).upper()
    multipliers = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
    return value * multipliers[suffix]


def downloadable_url(raw: str) -> str:
    """Normalize a media location into an absolute URL that can be fetched.

    Bare paths are turned into ``file://`` URLs and must exist.
    """
    candidate = raw.strip()
    if not candidate:
        raise ValueError("empty URL")
    parsed = urlparse(candidate)
    scheme = parsed.scheme.lower()
    # Windows drive letters parse as one-letter schemes
    if len(scheme) == 1:
        scheme = ""
    if not scheme:
        path = Path(candidate).expanduser().resolve()
        if not path.exists():
            raise ValueError(f"file not found: {path}")
        return "file://" + pathname2url(str(path))
    if scheme not in DOWNLOADABLE_SCHEMES:
        raise ValueError(f"unsupported URL scheme: {parsed.scheme}")
    if scheme == "file":
        path = Path(parsed.netloc + parsed.path) if parsed.netloc else Path(parsed.path)
        if not path.is_absolute():
            path = path.resolve()
        if not path.exists():
            raise ValueError(f"file not found: {path}")
        return "file://" + pathname2url(str(path))
    if not parsed.netloc:
        raise ValueError(f"missing host in URL: {candidate}")
    return candidate


def file_checksum(path: Path, checksum_type: str) -> str:
    digest = hashlib.new(checksum_type)
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def bind_in_range(factory: Callable[[int], T], port_min: int, port_max: int) -> Tuple[T, int]:
    """Call ``factory(port)`` for each port in the inclusive range until one binds."""
    for port in range(port_min, port_max + 1):
        try:
            return factory(port), port
        except OSError:
            continue
    raise BuildError(f"No free port available in range {port_min}-{port_max}")


def download_file(
    url: str,
    destination: Path,
    label: str = "Downloading",
    should_stop: Optional[Callable[[], bool]] = None,
    session: Optional[requests.Session] = None,
) -> None:
    """Download a file with a progress line, stopping early when asked to."""
    log("INFO", f"{label}: {url}")
    http = session or requests.Session()
    try:
        response = http.get(url, stream=True, timeout=60, headers={"User-Agent": "xenbuilder/1.0"})
        response.raise_for_status()
    except requests.HTTPError as exc:
        raise BuildError(f"HTTP error downloading {url}: {exc}") from exc
    except requests.RequestException as exc:
        raise BuildError(f"Failed to download {url}: {exc}") from exc

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    ensure_directory(destination.parent)
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            for chunk in response.iter_content(chunk_size=1024 * 256):
                if should_stop is not None and should_stop():
                    raise CancellationError(f"Download of {url} cancelled")
                if not chunk:
                    continue
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    print(
                        f"\r  {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / (1024 * 1024):.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)
            tmp.flush()
        except Exception:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
        finally:
            response.close()
    tmp_path.replace(destination)
    elapsed = time.time() - start_time
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
