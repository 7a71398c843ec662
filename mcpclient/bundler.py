"""Reproducible tar.gz bundles of a source directory, honouring .mcpignore rules."""

from __future__ import annotations

import gzip
import hashlib
import os
import re
import tarfile
from dataclasses import dataclass
from typing import BinaryIO

__all__ = [
    "BundleError",
    "BundleResult",
    "Bundler",
    "glob_to_regex",
    "MAX_BUNDLE_SIZE",
    "DEFAULT_IGNORE_FILE",
    "DEFAULT_DIR_PERMS",
    "DEFAULT_FILE_PERMS",
    "NORMALIZED_TIME",
    "NORMALIZED_MTIME",
]

MAX_BUNDLE_SIZE = 1024 * 1024 * 1024  # 1 GiB of uncompressed content
DEFAULT_IGNORE_FILE = ".mcpignore"
DEFAULT_DIR_PERMS = 0o750
DEFAULT_FILE_PERMS = 0o640
NORMALIZED_TIME = "2000-01-01T00:00:00Z"
NORMALIZED_MTIME = 946684800  # NORMALIZED_TIME as a Unix timestamp

_ESCAPED = frozenset("(){}+^$|\\")


class BundleError(Exception):
    """Raised when a bundle cannot be built or an ignore rule is invalid."""


@dataclass(frozen=True)
class BundleResult:
    """Outcome of a bundle build."""

    path: str
    sha256: str  # "sha256:<hex>" of the compressed bundle
    uncompressed_size: int
    compressed_size: int
    file_count: int
    dir_count: int


@dataclass(frozen=True)
class _Entry:
    path: str  # slash-separated, relative to the source directory
    abs_path: str
    is_dir: bool
    size: int


class _HashingWriter:
    """Write-through wrapper that hashes everything written."""

    def __init__(self, raw: BinaryIO) -> None:
        self._raw = raw
        self.digest = hashlib.sha256()

    def write(self, data: bytes) -> int:
        self._raw.write(data)
        self.digest.update(data)
        return len(data)

    def flush(self) -> None:
        self._raw.flush()


def glob_to_regex(pattern: str) -> re.Pattern[str]:
    """Compile an ignore glob into an anchored regular expression.

    ``*`` and ``?`` stay within one path segment, ``**`` spans segments,
    a trailing ``/`` matches everything under a directory, and any other
    pattern also matches the contents of a directory of that name.
    """
    pattern = pattern.strip()
    out: list[str] = []
    pos = 0
    length = len(pattern)
    while pos < length:
        char = pattern[pos]
        if pattern.startswith("**", pos):
            out.append(".*")
            pos += 2
            if pos < length and pattern[pos] == "/":
                out.append("/")
                pos += 1
        elif char == "*":
            out.append("[^/]*")
            pos += 1
        elif char == "?":
            out.append("[^/]")
            pos += 1
        elif char == ".":
            out.append(r"\.")
            pos += 1
        elif char == "[":
            end = pattern.find("]", pos + 1)
            if end != -1:
                out.append(pattern[pos : end + 1])
                pos = end + 1
            else:
                out.append(r"\[")
                pos += 1
        elif char in _ESCAPED:
            out.append("\\" + char)
            pos += 1
        else:
            out.append(char)
            pos += 1

    suffix = ".*" if pattern.endswith("/") else "(/.*)?"
    try:
        return re.compile("^" + "".join(out) + suffix + r"\Z")
    except re.error as exc:
        raise BundleError(f"invalid glob pattern: {exc}") from exc


def _validate_source_dir(source_dir: str) -> None:
    if not os.path.exists(source_dir):
        raise BundleError(f"source directory does not exist: {source_dir}")
    if not os.path.isdir(source_dir):
        raise BundleError("source path is not a directory")
    try:
        os.listdir(source_dir)
    except OSError as exc:
        raise BundleError(f"failed to read directory: {exc}") from exc


def _validate_output_path(output_path: str) -> None:
    if not output_path:
        raise BundleError("output path cannot be empty")
    parent = os.path.dirname(output_path) or "."
    if not os.path.exists(parent):
        raise BundleError(f"output directory does not exist: {parent}")
    if not os.path.isdir(parent):
        raise BundleError("output parent path is not a directory")


class Bundler:
    """Builds byte-for-byte reproducible tar.gz bundles.

    Entries are sorted by path, carry fixed permissions and a fixed
    timestamp, and symbolic links are never followed or included.
    """

    def __init__(self, max_size: int = MAX_BUNDLE_SIZE) -> None:
        self.max_size = max_size
        self.ignore_rules: list[re.Pattern[str]] = []

    def load_ignore_file(self, ignore_file_path: str = "") -> None:
        """Add the rules of an ignore file; a missing file adds nothing."""
        path = ignore_file_path or DEFAULT_IGNORE_FILE
        try:
            with open(path, encoding="utf-8") as handle:
                lines = handle.read().splitlines()
        except FileNotFoundError:
            return
        except UnicodeDecodeError as exc:
            raise BundleError(f"error reading ignore file: {exc}") from exc
        except OSError as exc:
            raise BundleError(f"failed to open ignore file: {exc}") from exc

        for line_number, line in enumerate(lines, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                self.ignore_rules.append(glob_to_regex(line))
            except BundleError as exc:
                raise BundleError(f"invalid pattern on line {line_number}: {exc}") from exc

    def add_ignore_pattern(self, pattern: str) -> None:
        """Add one ignore glob; an empty pattern is ignored."""
        if not pattern:
            return
        try:
            self.ignore_rules.append(glob_to_regex(pattern))
        except BundleError as exc:
            raise BundleError(f"invalid pattern: {exc}") from exc

    def should_ignore(self, path: str) -> bool:
        """True when a slash-separated relative path matches any ignore rule."""
        return any(rule.search(path) for rule in self.ignore_rules)

    def _collect(self, source_dir: str) -> list[_Entry]:
        entries: list[_Entry] = []

        def walk(abs_dir: str, rel_dir: str) -> None:
            with os.scandir(abs_dir) as listing:
                children = sorted(listing, key=lambda child: child.name)
            for child in children:
                rel = f"{rel_dir}/{child.name}" if rel_dir else child.name
                if self.should_ignore(rel):
                    continue
                # Links could pull in data from outside the source tree.
                if child.is_symlink():
                    continue
                if child.is_dir(follow_symlinks=False):
                    entries.append(_Entry(rel, child.path, True, 0))
                    walk(child.path, rel)
                elif child.is_file(follow_symlinks=False):
                    size = child.stat(follow_symlinks=False).st_size
                    entries.append(_Entry(rel, child.path, False, size))

        try:
            walk(source_dir, "")
        except OSError as exc:
            raise BundleError(f"failed to collect files: {exc}") from exc
        entries.sort(key=lambda entry: entry.path)
        return entries

    @staticmethod
    def _header(entry: _Entry) -> tarfile.TarInfo:
        info = tarfile.TarInfo(entry.path + "/" if entry.is_dir else entry.path)
        info.mtime = NORMALIZED_MTIME
        info.uid = info.gid = 0
        info.uname = info.gname = ""
        if entry.is_dir:
            info.type = tarfile.DIRTYPE
            info.mode = DEFAULT_DIR_PERMS
        else:
            info.type = tarfile.REGTYPE
            info.mode = DEFAULT_FILE_PERMS
            info.size = entry.size
        return info

    def create(self, source_dir: str, output_path: str) -> BundleResult:
        """Bundle ``source_dir`` into ``output_path`` and describe the result."""
        try:
            _validate_source_dir(source_dir)
        except BundleError as exc:
            raise BundleError(f"invalid source directory: {exc}") from exc
        try:
            _validate_output_path(output_path)
        except BundleError as exc:
            raise BundleError(f"invalid output path: {exc}") from exc

        uncompressed = 0
        file_count = dir_count = 0
        try:
            raw = open(output_path, "wb")
        except OSError as exc:
            raise BundleError(f"failed to create output file: {exc}") from exc

        with raw:
            hashing = _HashingWriter(raw)
            with gzip.GzipFile(
                filename="", mode="wb", fileobj=hashing, mtime=0, compresslevel=6
            ) as compressed:  # type: ignore[arg-type]
                with tarfile.open(
                    fileobj=compressed, mode="w", format=tarfile.PAX_FORMAT
                ) as archive:
                    for entry in self._collect(source_dir):
                        header = self._header(entry)
                        if entry.is_dir:
                            try:
                                archive.addfile(header)
                            except OSError as exc:
                                raise BundleError(
                                    f"failed to write directory {entry.path}: {exc}"
                                ) from exc
                            dir_count += 1
                        else:
                            try:
                                with open(entry.abs_path, "rb") as source:
                                    archive.addfile(header, source)
                            except OSError as exc:
                                raise BundleError(
                                    f"failed to write file {entry.path}: {exc}"
                                ) from exc
                            file_count += 1
                            uncompressed += entry.size

                        if uncompressed > self.max_size:
                            raise BundleError(
                                f"bundle exceeds maximum size of {self.max_size} bytes"
                            )

        try:
            compressed_size = os.stat(output_path).st_size
        except OSError as exc:
            raise BundleError(f"failed to stat output file: {exc}") from exc

        return BundleResult(
            path=output_path,
            sha256=f"sha256:{hashing.digest.hexdigest()}",
            uncompressed_size=uncompressed,
            compressed_size=compressed_size,
            file_count=file_count,
            dir_count=dir_count,
        )