#!/usr/bin/env python3
"""
AI Digest - Codebase Aggregator for AI Assistants

Walks a project directory and writes every file into one Markdown digest
(or several size-bounded parts), ready to be pasted into an LLM session.

Architecture:
    CLI Args → Configuration → File Collection → Ignore Matching →
    Concurrent Classification/Formatting → Output Writer → Summary
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import (
    BinaryIO,
    Callable,
    Dict,
    FrozenSet,
    Iterator,
    List,
    Optional,
    Protocol,
    Sequence,
    TextIO,
    Tuple,
    Union,
)

from gitignore_parser import handle_negation, rule_from_pattern

# =============================================================================
# VERSION MANAGEMENT
# =============================================================================

__version__ = "1.0.0"


def get_version() -> str:
    """Get version from package metadata or fallback to hardcoded."""
    try:
        return version("ai-digest")
    except PackageNotFoundError:
        return __version__


# =============================================================================
# OPTIONAL DEPENDENCIES
# =============================================================================

try:
    import pyperclip
    HAS_PYPERCLIP = True
except ImportError:
    HAS_PYPERCLIP = False


# =============================================================================
# CONSTANTS
# =============================================================================

MB = 1024 * 1024

UTF8_BOM = b"\xef\xbb\xbf"

TEXT_FILE_TYPE = "text"


class Defaults:
    """Default configuration values."""
    OUTPUT_FILE = "codebase.md"
    IGNORE_FILE = ".aidigestignore"
    SETTINGS_FILE = "ai-digest.json"
    MAX_SIZE_MB = 10
    CHUNK_SIZE_MB = 1
    MAX_CONCURRENCY = 10
    SNIFF_LEN = 512
    LARGE_OUTPUT_BYTES = 10 * MB
    LISTED_FILES = 10


DEFAULT_IGNORES: Tuple[str, ...] = (
    # Node.js
    "node_modules", "package-lock.json", "npm-debug.log",
    # Yarn / pnpm / Bun / Deno
    "yarn.lock", "yarn-error.log", "pnpm-lock.yaml", "bun.lockb", "deno.lock",
    # PHP
    "vendor", "composer.lock",
    # Python
    "__pycache__", "*.pyc", "*.pyo", "*.pyd", ".Python",
    "pip-log.txt", "pip-delete-this-directory.txt",
    ".venv", "venv", "ENV", "env",
    # Godot
    ".godot", "*.import",
    # Ruby
    "Gemfile.lock", ".bundle",
    # Java / Gradle / Maven
    "target", "*.class", ".gradle", "build",
    "pom.xml.tag", "pom.xml.releaseBackup", "pom.xml.versionsBackup", "pom.xml.next",
    # .NET
    "bin", "obj", "*.suo", "*.user",
    # Go / Rust
    "go.sum", "Cargo.lock",
    # Version control
    ".git", ".svn", ".hg",
    # OS metadata
    ".DS_Store", "Thumbs.db",
    # Editors
    ".idea", ".vscode",
    # Environment variables
    ".env", ".env.local", ".env.development.local", ".env.test.local",
    ".env.production.local", "*.env", "*.env.*",
    # Framework output
    ".svelte-kit", ".next", ".nuxt", ".vuepress", ".cache", "dist", "tmp", ".turbo",
    # Our own output
    Defaults.OUTPUT_FILE, "codebase_part*.md",
)

# Indentation-significant or otherwise format-fragile languages
WHITESPACE_SENSITIVE_EXTENSIONS: FrozenSet[str] = frozenset({
    ".py", ".yaml", ".yml", ".jade", ".haml", ".slim",
    ".coffee", ".pug", ".styl", ".gd",
})

MARKDOWN_EXTENSIONS: FrozenSet[str] = frozenset({".md", ".markdown"})

BINARY_FILE_TYPES: Dict[str, str] = {
    # Images
    ".jpg": "Image", ".jpeg": "Image", ".png": "Image", ".gif": "Image",
    ".bmp": "Image", ".webp": "Image", ".ico": "Image",
    ".tif": "Image", ".tiff": "Image",
    ".svg": "SVG Image",
    # WebAssembly
    ".wasm": "WebAssembly",
    # Documents
    ".pdf": "PDF",
    ".doc": "Word Document", ".docx": "Word Document",
    ".xls": "Excel Spreadsheet", ".xlsx": "Excel Spreadsheet",
    ".ppt": "PowerPoint Presentation", ".pptx": "PowerPoint Presentation",
    # Archives
    ".zip": "Compressed Archive", ".rar": "Compressed Archive",
    ".7z": "Compressed Archive", ".gz": "Compressed Archive",
    ".tar": "Compressed Archive", ".bz2": "Compressed Archive",
    ".xz": "Compressed Archive",
    # Executables and libraries
    ".exe": "Executable",
    ".dll": "Dynamic-link Library",
    ".so": "Shared Object",
    ".dylib": "Dynamic Library",
}

# Magic prefixes checked against the first bytes of a file
CONTENT_SIGNATURES: Tuple[Tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"\x00\x00\x01\x00", "image/x-icon"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
    (b"%PDF-", "application/pdf"),
    (b"%!PS-Adobe-", "application/postscript"),
    (b"PK\x03\x04", "application/zip"),
    (b"\x1f\x8b\x08", "application/x-gzip"),
    (b"\xfd7zXZ\x00", "application/x-xz"),
    (b"7z\xbc\xaf\x27\x1c", "application/x-7z-compressed"),
    (b"Rar!\x1a\x07", "application/x-rar-compressed"),
    (b"\x00asm", "application/wasm"),
    (b"\x7fELF", "application/x-executable"),
    (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", "application/x-ole-storage"),
    (b"wOFF", "font/woff"),
    (b"wOF2", "font/woff2"),
    (b"OggS", "application/ogg"),
)

# Control bytes that never show up in text (WHATWG "binary data bytes")
BINARY_DATA_BYTES: FrozenSet[int] = frozenset(
    list(range(0x00, 0x09)) + [0x0B] + list(range(0x0E, 0x1B)) + list(range(0x1C, 0x20))
)

# Sniffed types whose content is not worth inlining; anything else is text.
# SVG stays out of this set: it is XML whatever the extension.
BINARY_CONTENT_TYPES: FrozenSet[str] = frozenset(
    [content_type for _, content_type in CONTENT_SIGNATURES if content_type != "application/postscript"]
    + ["image/webp", "audio/wave", "video/avi", "video/mp4", "application/octet-stream"]
)

_WHITESPACE_RUN = re.compile(r"[ \t\n\v\f\r]+")


# =============================================================================
# ERRORS
# =============================================================================

class DigestError(Exception):
    """Base error for digest failures."""


class ConfigError(DigestError):
    """Invalid configuration, raised before any file is processed."""


class InvalidTextError(DigestError):
    """Content is not valid UTF-8."""


# =============================================================================
# ENUMS AND DATA MODELS
# =============================================================================

class OutputMode(Enum):
    """Output persistence strategies."""
    SINGLE = auto()        # One digest file
    SPLIT = auto()         # Size-bounded parts with a UTF-8 BOM each


@dataclass(frozen=True)
class DigestConfig:
    """Immutable digest configuration."""
    input_dir: Path
    output_file: Path

    # Behavior flags
    use_default_ignores: bool = True
    remove_whitespace: bool = False
    show_output_files: bool = False

    # Ignore rules
    ignore_file: str = Defaults.IGNORE_FILE
    ignore_patterns: Tuple[str, ...] = ()

    # Output
    output_mode: OutputMode = OutputMode.SINGLE
    max_file_size: int = Defaults.MAX_SIZE_MB * MB
    output_pattern: Optional[str] = None
    chunk_size: int = Defaults.CHUNK_SIZE_MB * MB
    workers: int = Defaults.MAX_CONCURRENCY

    @property
    def split(self) -> bool:
        return self.output_mode is OutputMode.SPLIT

    def validate(self) -> None:
        """Reject settings that would make the run meaningless."""
        if self.max_file_size <= 0:
            raise ConfigError("max-size must be greater than 0")
        if self.chunk_size <= 0:
            raise ConfigError("chunk-size must be greater than 0")
        if self.workers <= 0:
            raise ConfigError("workers must be greater than 0")
        if self.output_pattern:
            try:
                self.output_pattern % 1
            except (TypeError, ValueError) as e:
                raise ConfigError(
                    f"invalid output pattern {self.output_pattern!r}: {e}"
                ) from e


@dataclass
class FileResult:
    """Outcome of processing one input file."""
    relative_path: str
    size: int = 0
    file_type: str = ""
    content: str = ""
    error: Optional[Exception] = None

    @property
    def is_binary(self) -> bool:
        return self.file_type != TEXT_FILE_TYPE


@dataclass
class RunStats:
    """Statistics for one digest run."""
    total_files: int = 0
    included_count: int = 0
    ignored_count: int = 0
    binary_count: int = 0
    error_count: int = 0
    total_size: int = 0
    included_files: List[str] = field(default_factory=list)

    # Split mode only
    artifact_count: int = 0
    artifacts: List[Tuple[Path, int]] = field(default_factory=list)
    average_artifact_size: int = 0
    smallest_artifact: Optional[Path] = None
    smallest_artifact_size: int = 0
    largest_artifact: Optional[Path] = None
    largest_artifact_size: int = 0


# =============================================================================
# IGNORE MATCHING
# =============================================================================

def normalize_path(path: Union[str, Path]) -> str:
    """Canonical forward-slash form of a relative path."""
    return str(path).replace(os.sep, "/").replace("\\", "/")


def compile_ignore_rules(
    patterns: Sequence[str],
    base_dir: Path,
    source: str = "<patterns>",
) -> Optional[Callable[[str], bool]]:
    """Compile gitignore-style lines into a matcher, or None if nothing compiles."""
    rules = []
    for counter, line in enumerate(patterns, start=1):
        rule = rule_from_pattern(
            line.rstrip("\r\n"), base_path=base_dir, source=(source, counter)
        )
        if rule:
            rules.append(rule)

    if not rules:
        return None
    if not any(r.negation for r in rules):
        return lambda file_path: any(r.match(file_path) for r in rules)
    # Later rules override earlier ones once negations are involved
    return lambda file_path: handle_negation(file_path, rules)


class IgnoreMatcher:
    """Decides whether a relative path is excluded from the digest."""

    def __init__(
        self,
        patterns: Optional[Sequence[str]] = None,
        use_default: bool = True,
        base_dir: Union[str, Path] = ".",
    ):
        self.base_dir = Path(base_dir).resolve()
        self.default_rules = (
            compile_ignore_rules(DEFAULT_IGNORES, self.base_dir, "<default>")
            if use_default else None
        )
        self.custom_rules = (
            compile_ignore_rules(patterns, self.base_dir, "<custom>")
            if patterns else None
        )

    def should_ignore(self, relative_path: Union[str, Path]) -> bool:
        """Check a path and every directory above it against the active rules."""
        path = normalize_path(relative_path).strip("/")
        if not path or (self.default_rules is None and self.custom_rules is None):
            return False

        # Anything below an ignored directory is ignored too, as in git
        parts = path.split("/")
        for depth in range(1, len(parts) + 1):
            candidate = str(self.base_dir / "/".join(parts[:depth]))
            if self.default_rules is not None and self.default_rules(candidate):
                return True
            if self.custom_rules is not None and self.custom_rules(candidate):
                return True
        return False


def load_ignore_patterns(root: Path, ignore_file: str) -> List[str]:
    """Read pattern lines from ``root/ignore_file``; a missing file yields none."""
    path = root / ignore_file
    if not path.is_file():
        return []
    logging.debug(f"Loading ignore patterns from {path}")
    try:
        return path.read_text(encoding="utf-8").splitlines()
    except UnicodeDecodeError as e:
        raise ConfigError(f"ignore file {path} is not valid UTF-8") from e


# =============================================================================
# FILE CLASSIFICATION
# =============================================================================

def file_extension(path: Union[str, Path]) -> str:
    """Suffix starting at the last dot of the final path element."""
    name = normalize_path(path).rsplit("/", 1)[-1]
    index = name.rfind(".")
    return name[index:] if index >= 0 else ""


def sniff_content_type(data: bytes) -> str:
    """Guess a MIME type from the leading bytes of a file."""
    for signature, content_type in CONTENT_SIGNATURES:
        if data.startswith(signature):
            return content_type

    if data[:4] == b"RIFF" and len(data) >= 12:
        kind = data[8:12]
        if kind == b"WEBP":
            return "image/webp"
        if kind == b"WAVE":
            return "audio/wave"
        if kind == b"AVI ":
            return "video/avi"
    if data[4:8] == b"ftyp":
        return "video/mp4"

    if data.startswith(b"\xfe\xff"):
        return "text/plain; charset=utf-16be"
    if data.startswith(b"\xff\xfe"):
        return "text/plain; charset=utf-16le"
    if data.startswith(UTF8_BOM):
        return "text/plain; charset=utf-8"

    head = data.lstrip(b" \t\n\r\x0c").lower()
    if head.startswith(b"<svg"):
        return "image/svg+xml"
    if head.startswith(b"<?xml"):
        return "text/xml; charset=utf-8"
    if head.startswith((b"<!doctype html", b"<html", b"<head", b"<body")):
        return "text/html; charset=utf-8"

    if any(byte in BINARY_DATA_BYTES for byte in data):
        return "application/octet-stream"
    return "text/plain; charset=utf-8"


def is_text_content_type(content_type: str) -> bool:
    return content_type.split(";", 1)[0].strip() not in BINARY_CONTENT_TYPES


def is_text_file(path: Union[str, Path]) -> bool:
    """Classify a file by sniffing at most its first 512 bytes.

    Only known binary signatures and control-byte prefixes are non-text;
    markup such as an inline ``<svg>`` stays text.
    Read errors propagate as ``OSError``.
    """
    with open(path, "rb") as f:
        head = f.read(Defaults.SNIFF_LEN)

    if file_extension(path).lower() == ".svg":
        return True
    return is_text_content_type(sniff_content_type(head))


def get_file_type(path: Union[str, Path]) -> str:
    """Human-readable label for a non-text file."""
    return BINARY_FILE_TYPES.get(file_extension(path).lower(), "Binary")


def should_treat_as_binary(path: Union[str, Path]) -> bool:
    """Known binary extensions win over a text-looking prefix (SVG excepted)."""
    ext = file_extension(path).lower()
    return ext in BINARY_FILE_TYPES and ext != ".svg"


# =============================================================================
# TEXT UTILITIES
# =============================================================================

def is_whitespace_sensitive(ext: str) -> bool:
    return ext.lower() in WHITESPACE_SENSITIVE_EXTENSIONS


def remove_whitespace(text: str) -> str:
    """Collapse whitespace runs to a single space and trim the ends."""
    return _WHITESPACE_RUN.sub(" ", text).strip()


def estimate_token_count(size_bytes: int) -> int:
    """Rough token estimate: four bytes per token."""
    return size_bytes // 4


# =============================================================================
# BLOCK FORMATTER
# =============================================================================

class BlockFormatter:
    """Renders one file as a self-contained Markdown block."""

    def __init__(self, remove_whitespace: bool = False):
        self.remove_whitespace = remove_whitespace

    def render_text(self, relative_path: str, raw: bytes) -> str:
        """Render text content in a fence tagged with the file extension."""
        if raw.startswith(UTF8_BOM):
            raw = raw[len(UTF8_BOM):]
        try:
            content = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidTextError(
                f"file {relative_path} contains invalid UTF-8 characters"
            ) from e

        ext = file_extension(relative_path)
        if self.remove_whitespace and not is_whitespace_sensitive(ext):
            content = remove_whitespace(content)

        # Four backticks so fences inside Markdown don't close the block early
        if ext.lower() in MARKDOWN_EXTENSIONS:
            return f"# {relative_path}\n\n````md\n{content}\n````\n\n"
        return f"# {relative_path}\n\n```{ext[1:]}\n{content}\n```\n\n"

    def render_binary(self, relative_path: str, file_type: str) -> str:
        if file_extension(relative_path).lower() == ".svg":
            description = f"This is a file of type: `{file_type}`"
        else:
            description = f"This is a binary file of type: `{file_type}`"
        return f"# {relative_path}\n\n{description}\n\n"


# =============================================================================
# FILE COLLECTOR
# =============================================================================

def _raise_walk_error(error: OSError) -> None:
    raise error


class FileCollector:
    """Walks the input tree and returns the paths that survive ignore rules."""

    def __init__(self, root: Path, matcher: IgnoreMatcher):
        self.root = root
        self.matcher = matcher

    def collect(self) -> Tuple[List[str], int]:
        """Return (relative paths, ignored count); any walk error aborts."""
        logging.info(f"Collecting files from {self.root}")
        paths: List[str] = []
        ignored = 0

        for dirpath, _dirnames, filenames in os.walk(self.root, onerror=_raise_walk_error):
            for name in filenames:
                relative = normalize_path(
                    os.path.relpath(os.path.join(dirpath, name), self.root)
                )
                if self.matcher.should_ignore(relative):
                    logging.debug(f"Ignored {relative}")
                    ignored += 1
                    continue
                paths.append(relative)

        logging.info(f"Found {len(paths)} files to process")
        return paths, ignored


# =============================================================================
# STATISTICS
# =============================================================================

class StatsTracker:
    """Thread-safe accumulator behind a single lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._stats = RunStats()

    def record_seen(self, count: int) -> None:
        with self._lock:
            self._stats.total_files += count

    def record_ignored(self, count: int = 1) -> None:
        with self._lock:
            self._stats.ignored_count += count

    def record_included(self, result: FileResult) -> None:
        with self._lock:
            self._stats.included_count += 1
            self._stats.included_files.append(result.relative_path)
            if result.is_binary:
                self._stats.binary_count += 1
            self._stats.total_size += result.size

    def record_error(self, result: FileResult) -> None:
        with self._lock:
            self._stats.error_count += 1

    def record_artifact(self, path: Path, size: int) -> None:
        """Running smallest/largest bookkeeping while parts are written."""
        with self._lock:
            stats = self._stats
            if stats.smallest_artifact_size == 0 or size < stats.smallest_artifact_size:
                stats.smallest_artifact = path
                stats.smallest_artifact_size = size
            if size > stats.largest_artifact_size:
                stats.largest_artifact = path
                stats.largest_artifact_size = size

    def finalize_artifacts(self, artifacts: Sequence[Tuple[Path, int]]) -> None:
        """Replace running artifact figures with sizes measured on disk."""
        with self._lock:
            stats = self._stats
            stats.artifacts = list(artifacts)
            stats.artifact_count = len(artifacts)
            if not artifacts:
                stats.average_artifact_size = 0
                stats.smallest_artifact, stats.smallest_artifact_size = None, 0
                stats.largest_artifact, stats.largest_artifact_size = None, 0
                return

            total = sum(size for _, size in artifacts)
            stats.average_artifact_size = total // len(artifacts)
            stats.smallest_artifact, stats.smallest_artifact_size = min(
                artifacts, key=lambda item: item[1]
            )
            stats.largest_artifact, stats.largest_artifact_size = max(
                artifacts, key=lambda item: item[1]
            )

    def snapshot(self) -> RunStats:
        with self._lock:
            return replace(
                self._stats,
                included_files=list(self._stats.included_files),
                artifacts=list(self._stats.artifacts),
            )


# =============================================================================
# OUTPUT WRITERS
# =============================================================================

class ArtifactWriter(Protocol):
    """Persistence strategy for formatted blocks."""

    def write(self, block: str) -> None: ...

    def close(self) -> None: ...

    def artifact_paths(self) -> List[Path]: ...


def _encode_block(block: str) -> bytes:
    try:
        return block.encode("utf-8")
    except UnicodeEncodeError as e:
        raise InvalidTextError("invalid UTF-8 content detected") from e


class SingleFileWriter:
    """Writes every block to one file through a fixed-size buffer."""

    def __init__(self, output_file: Path, chunk_size: int = Defaults.CHUNK_SIZE_MB * MB):
        self.output_file = output_file
        self._lock = threading.Lock()
        self._handle: Optional[BinaryIO] = open(output_file, "wb", buffering=chunk_size)

    def write(self, block: str) -> None:
        data = _encode_block(block)
        with self._lock:
            if self._handle is None:
                raise DigestError(f"writer for {self.output_file} is closed")
            self._handle.write(data)

    def close(self) -> None:
        with self._lock:
            if self._handle is None:
                return
            handle, self._handle = self._handle, None
            try:
                handle.flush()
            finally:
                handle.close()

    def artifact_paths(self) -> List[Path]:
        return [self.output_file]


class SplitFileWriter:
    """Writes blocks across numbered parts that stay under a byte ceiling.

    Each part starts with a UTF-8 BOM, which does not count towards the
    ceiling. A part is rotated before a block that would push it past the
    ceiling, unless the part is still empty: a block larger than the
    ceiling is written whole into its own part.
    """

    def __init__(
        self,
        output_file: Path,
        max_bytes: int,
        stats: StatsTracker,
        output_pattern: Optional[str] = None,
        chunk_size: int = Defaults.CHUNK_SIZE_MB * MB,
    ):
        self.output_file = output_file
        self.max_bytes = max_bytes
        self.stats = stats
        self.output_pattern = output_pattern
        self.chunk_size = chunk_size

        self._lock = threading.Lock()
        self._handle: Optional[BinaryIO] = None
        self._index = 0
        self._size = 0
        self._closed = False

    def path_for_index(self, index: int) -> Path:
        directory = self.output_file.parent
        if self.output_pattern:
            return directory / (self.output_pattern % index)
        stem, ext = os.path.splitext(self.output_file.name)
        return directory / f"{stem}_part{index}{ext}"

    def artifact_paths(self) -> List[Path]:
        return [self.path_for_index(i) for i in range(1, self._index + 1)]

    def write(self, block: str) -> None:
        with self._lock:
            if self._closed:
                raise DigestError(f"writer for {self.output_file} is closed")
            data = _encode_block(block)

            if self._handle is None or (
                self._size > 0 and self._size + len(data) > self.max_bytes
            ):
                self._open_next()

            self._handle.write(data)
            self._size += len(data)
            self.stats.record_artifact(self.path_for_index(self._index), self._size)

            # Bound buffered memory once the part is full
            if self._size >= self.max_bytes:
                self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._close_current()

            # Sizes on disk are authoritative, not the in-memory counters
            artifacts = [(path, path.stat().st_size) for path in self.artifact_paths()]
            self.stats.finalize_artifacts(artifacts)

    def _close_current(self) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            handle.flush()
        finally:
            handle.close()

    def _open_next(self) -> None:
        self._close_current()

        self._index += 1
        self._size = 0
        path = self.path_for_index(self._index)
        path.parent.mkdir(parents=True, exist_ok=True)

        handle = open(path, "wb", buffering=self.chunk_size)
        try:
            handle.write(UTF8_BOM)
        except OSError:
            handle.close()
            raise
        self._handle = handle
        logging.info(f"Created new file: {path}")


def create_writer(config: DigestConfig, stats: StatsTracker) -> ArtifactWriter:
    """Pick the output strategy once, from the configured mode."""
    if config.split:
        return SplitFileWriter(
            config.output_file,
            config.max_file_size,
            stats,
            output_pattern=config.output_pattern,
            chunk_size=config.chunk_size,
        )
    return SingleFileWriter(config.output_file, chunk_size=config.chunk_size)


# =============================================================================
# CONCURRENT DISPATCH
# =============================================================================

class FileDispatcher:
    """Classifies and formats files on a bounded thread pool."""

    def __init__(
        self,
        root: Path,
        formatter: BlockFormatter,
        workers: int = Defaults.MAX_CONCURRENCY,
    ):
        self.root = root
        self.formatter = formatter
        self.workers = workers

    def process(self, paths: Sequence[str]) -> Iterator[FileResult]:
        """Yield one result per path, in completion order."""
        if not paths:
            return

        with ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="ai-digest"
        ) as executor:
            futures = [executor.submit(self.process_file, path) for path in paths]
            try:
                for future in as_completed(futures):
                    yield future.result()
            finally:
                # Consumer gave up: drop whatever has not started yet
                for future in futures:
                    future.cancel()

    def process_file(self, relative_path: str) -> FileResult:
        """Stat, classify and format one file; failures stay with the file."""
        full_path = self.root / relative_path
        result = FileResult(relative_path=relative_path)
        try:
            result.size = full_path.stat().st_size
            if is_text_file(full_path) and not should_treat_as_binary(full_path):
                result.file_type = TEXT_FILE_TYPE
                result.content = self.formatter.render_text(
                    relative_path, full_path.read_bytes()
                )
            else:
                result.file_type = get_file_type(full_path)
                result.content = self.formatter.render_binary(
                    relative_path, result.file_type
                )
        except (OSError, InvalidTextError) as e:
            return FileResult(relative_path=relative_path, error=e)
        return result


# =============================================================================
# RUNNER
# =============================================================================

class DigestRunner:
    """Owns one run: matcher, writer, stats and worker pool."""

    def __init__(self, config: DigestConfig):
        config.validate()
        self.config = config
        self.stats = StatsTracker()
        self.matcher = IgnoreMatcher(
            config.ignore_patterns,
            use_default=config.use_default_ignores,
            base_dir=config.input_dir,
        )
        self.dispatcher = FileDispatcher(
            config.input_dir,
            BlockFormatter(config.remove_whitespace),
            workers=config.workers,
        )

        config.output_file.parent.mkdir(parents=True, exist_ok=True)
        self.writer = create_writer(config, self.stats)

    def run(self) -> RunStats:
        """Collect, process and write every file; the writer is always closed."""
        try:
            paths, ignored = FileCollector(self.config.input_dir, self.matcher).collect()
            self.stats.record_seen(len(paths) + ignored)
            self.stats.record_ignored(ignored)

            for result in self.dispatcher.process(paths):
                if result.error is not None:
                    logging.error(f"Error processing {result.relative_path}: {result.error}")
                    self.stats.record_error(result)
                    continue

                self.writer.write(result.content)
                self.stats.record_included(result)
        finally:
            self.writer.close()

        return self.stats.snapshot()

    def artifact_paths(self) -> List[Path]:
        return self.writer.artifact_paths()


# =============================================================================
# SETTINGS FILE
# =============================================================================

@dataclass
class Settings:
    """Persisted user settings (``ai-digest.json``)."""
    default_ignores: List[str] = field(default_factory=lambda: [
        "node_modules", ".git", "*.log", "*.swp", ".DS_Store",
        "Thumbs.db", "*.tmp", "*.temp", ".idea", ".vscode",
    ])
    ignore_file: str = Defaults.IGNORE_FILE

    def to_dict(self) -> Dict[str, object]:
        return {"defaultIgnores": list(self.default_ignores), "ignoreFile": self.ignore_file}

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "Settings":
        defaults = cls()
        ignores = data.get("defaultIgnores", defaults.default_ignores)
        ignore_file = data.get("ignoreFile", defaults.ignore_file)
        if not isinstance(ignores, list) or not all(isinstance(p, str) for p in ignores):
            raise ConfigError("defaultIgnores must be a list of strings")
        if not isinstance(ignore_file, str):
            raise ConfigError("ignoreFile must be a string")
        return cls(default_ignores=list(ignores), ignore_file=ignore_file)


class SettingsManager:
    """Loads and saves the JSON settings file."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else Path.cwd() / Defaults.SETTINGS_FILE

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Settings:
        """Read settings; a missing file yields the defaults."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return Settings()
        except OSError as e:
            raise ConfigError(f"failed to read config file: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"failed to parse config file: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError("failed to parse config file: expected a JSON object")
        return Settings.from_dict(data)

    def save(self, settings: Settings) -> None:
        self.path.write_text(
            json.dumps(settings.to_dict(), indent=2) + "\n", encoding="utf-8"
        )

    def init(self) -> None:
        if self.exists():
            raise ConfigError(f"config file already exists: {self.path}")
        self.save(Settings())

    def show(self) -> str:
        return json.dumps(self.load().to_dict(), indent=2)


# =============================================================================
# CONFIGURATION BUILDER
# =============================================================================

class ConfigBuilder:
    """Builds DigestConfig from CLI arguments."""

    @staticmethod
    def from_args(args: argparse.Namespace) -> DigestConfig:
        """Create config from parsed arguments."""
        root = Path(args.input).resolve()
        if not root.is_dir():
            raise ConfigError(f"input directory does not exist: {args.input}")

        if args.split and args.clipboard:
            raise ConfigError("--clipboard cannot be combined with --split")

        # Settings only contribute when the file is really there
        manager = SettingsManager(args.config)
        settings = manager.load() if manager.exists() else None

        ignore_file = args.ignore_file
        if ignore_file is None:
            ignore_file = settings.ignore_file if settings else Defaults.IGNORE_FILE

        patterns: List[str] = list(settings.default_ignores) if settings else []
        patterns.extend(load_ignore_patterns(root, ignore_file))

        config = DigestConfig(
            input_dir=root,
            output_file=Path(args.output).resolve(),
            use_default_ignores=args.use_default_ignores,
            remove_whitespace=args.whitespace_removal,
            show_output_files=args.show_output_files,
            ignore_file=ignore_file,
            ignore_patterns=tuple(patterns),
            output_mode=OutputMode.SPLIT if args.split else OutputMode.SINGLE,
            max_file_size=args.max_size * MB,
            output_pattern=args.output_pattern or None,
            chunk_size=args.chunk_size * MB,
            workers=args.workers,
        )
        config.validate()
        return config


# =============================================================================
# SUMMARY
# =============================================================================

def _mb(size: int) -> float:
    return size / MB


class SummaryPrinter:
    """Renders run statistics for the console."""

    def __init__(self, config: DigestConfig, stream: Optional[TextIO] = None):
        self.config = config
        self.stream = stream if stream is not None else sys.stderr

    def render(self, stats: RunStats) -> None:
        if self.config.split:
            self.print_split(stats)
        else:
            self.print_single(stats)

    def _emit(self, line: str = "") -> None:
        print(line, file=self.stream)

    def print_single(self, stats: RunStats) -> None:
        self._emit("\n📊 Processing Summary")
        self._emit("═" * 19)

        self._emit("\n📁 File Statistics")
        self._emit(f"   • Total Files Scanned:     {stats.total_files:5d}")
        self._emit(f"   • Files in Output:         {stats.included_count:5d}")
        self._emit(f"   • Files Ignored:           {stats.ignored_count:5d}")
        self._emit(f"   • Binary/SVG Files:        {stats.binary_count:5d}")
        if stats.error_count:
            self._emit(f"   • Files With Errors:       {stats.error_count:5d}")

        self._emit("\n💾 Size Analysis")
        self._emit(f"   • Total Size:              {_mb(stats.total_size):.2f} MB")

        self._inclusion_rate(stats)

        self._emit("\n🔤 Token Estimation")
        if stats.total_size > Defaults.LARGE_OUTPUT_BYTES:
            self._emit("   ⚠️  Output exceeds recommended size (10 MB)")
            self._emit("   ⚠️  Token estimation skipped")
            self._emit(f"   💡 Tip: Add more patterns to {self.config.ignore_file} to reduce size")
        else:
            self._emit(f"   • Estimated Tokens:        {estimate_token_count(stats.total_size):5d}")
            self._emit("   📝 Note: Token count may vary ±20% across AI models")

        self._included_files(stats)

        self._emit("\n✨ Process Complete")
        if stats.total_size > Defaults.LARGE_OUTPUT_BYTES:
            self._emit("   ⚠️  Warning: Large output file size")
        else:
            self._emit("   ✅ Output generated successfully")

    def print_split(self, stats: RunStats) -> None:
        self._emit("\n📊 Split Processing Summary")
        self._emit("═" * 27)

        self._emit("\n📁 Output Files")
        self._emit(f"   • Number of Files:         {stats.artifact_count}")
        self._emit(f"   • Average File Size:       {_mb(stats.average_artifact_size):.2f} MB")

        if stats.artifact_count:
            self._emit("\n📏 Size Distribution")
            self._emit(
                f"   • Smallest File:           {stats.smallest_artifact.name} "
                f"({_mb(stats.smallest_artifact_size):.2f} MB)"
            )
            self._emit(
                f"   • Largest File:            {stats.largest_artifact.name} "
                f"({_mb(stats.largest_artifact_size):.2f} MB)"
            )

        self._emit("\n🔍 Processing Details")
        self._emit(f"   • Total Files Processed:   {stats.total_files}")
        self._emit(f"   • Files Included:          {stats.included_count}")
        self._emit(f"   • Files Ignored:           {stats.ignored_count}")
        self._emit(f"   • Binary/SVG Files:        {stats.binary_count}")
        if stats.error_count:
            self._emit(f"   • Files With Errors:       {stats.error_count}")

        self._emit("\n💾 Total Size")
        self._emit(f"   • Combined Size:           {_mb(stats.total_size):.2f} MB")

        self._inclusion_rate(stats)
        self._included_files(stats)

        self._emit("\n✨ Process Complete")
        self._emit("   ✅ Output files generated successfully")

    def _inclusion_rate(self, stats: RunStats) -> None:
        self._emit("\n🎯 Processing Effectiveness")
        if stats.total_files > 0:
            rate = stats.included_count / stats.total_files * 100
            self._emit(f"   • Inclusion Rate:          {rate:5.1f}%")

    def _included_files(self, stats: RunStats) -> None:
        if not self.config.show_output_files or not stats.included_files:
            return
        self._emit("\n📋 Included Files")
        self._emit("   Files processed and included in output:")
        for i, name in enumerate(stats.included_files[:Defaults.LISTED_FILES], start=1):
            self._emit(f"   {i:2d}. {name}")
        remaining = len(stats.included_files) - Defaults.LISTED_FILES
        if remaining > 0:
            self._emit(f"   ... and {remaining} more files")


# =============================================================================
# CLIPBOARD
# =============================================================================

def copy_to_clipboard(path: Path) -> bool:
    """Copy a finished digest to the clipboard."""
    if not HAS_PYPERCLIP:
        print("⚠️ pyperclip not installed, digest left in file only", file=sys.stderr)
        return False

    content = path.read_text(encoding="utf-8")
    try:
        pyperclip.copy(content)
    except pyperclip.PyperclipException as e:
        print(f"❌ Clipboard error: {e}", file=sys.stderr)
        return False
    print(f"✅ {len(content):,} chars copied to clipboard", file=sys.stderr)
    return True


# =============================================================================
# CLI PARSER
# =============================================================================

def create_parser() -> argparse.ArgumentParser:
    """Create argument parser."""
    parser = argparse.ArgumentParser(
        prog="ai-digest",
        description="AI Digest - Code aggregation tool for AI assistants",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ai-digest digest -i /path/to/project -o output.md
  ai-digest digest -i /path/to/project -o output.md --split --max-size 5
  ai-digest digest -i /path/to/project -o output.md --split --output-pattern "part_%d.md"
  ai-digest config init
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")

    # digest
    digest = commands.add_parser(
        "digest",
        help="Create a digest of your codebase",
        description="Create a digest of your codebase in one or more Markdown files.",
    )
    digest.set_defaults(handler=run_digest)

    io_group = digest.add_argument_group("Input/Output")
    io_group.add_argument("-i", "--input", default=".", help="Input directory containing the codebase")
    io_group.add_argument("-o", "--output", default=Defaults.OUTPUT_FILE, help="Output markdown file path")
    io_group.add_argument("--clipboard", action="store_true", help="Also copy the digest to the clipboard")

    filt = digest.add_argument_group("Filtering")
    filt.add_argument(
        "--no-default-ignores",
        dest="use_default_ignores",
        action="store_false",
        help="Disable default ignore patterns",
    )
    filt.add_argument("--ignore-file", metavar="NAME", help=f"Custom ignore file name (default: {Defaults.IGNORE_FILE})")
    filt.add_argument("--config", metavar="FILE", help=f"Settings file (default: ./{Defaults.SETTINGS_FILE})")

    fmt = digest.add_argument_group("Formatting")
    fmt.add_argument("--whitespace-removal", action="store_true", help="Enable whitespace removal for non-sensitive files")
    fmt.add_argument("--show-output-files", action="store_true", help="Display a list of files included in the output")

    split = digest.add_argument_group("Splitting")
    split.add_argument("--split", action="store_true", help="Split output into multiple files")
    split.add_argument("--max-size", type=int, default=Defaults.MAX_SIZE_MB, metavar="MB", help="Maximum size of each output file in MB (only used with --split)")
    split.add_argument("--output-pattern", metavar="PATTERN", help="Pattern for split output files (e.g. 'part_%%d.md')")
    split.add_argument("--chunk-size", type=int, default=Defaults.CHUNK_SIZE_MB, metavar="MB", help="Size of write buffers in MB")
    split.add_argument("--workers", type=int, default=Defaults.MAX_CONCURRENCY, metavar="N", help="Files processed concurrently")

    digest.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")

    # config
    config = commands.add_parser("config", help="Manage AI Digest configuration")
    config_commands = config.add_subparsers(dest="config_command", metavar="ACTION")
    for name, handler, help_text in (
        ("show", show_config, "Show current configuration"),
        ("init", init_config, "Initialize configuration file"),
    ):
        sub = config_commands.add_parser(name, help=help_text)
        sub.add_argument("--config", metavar="FILE", help=f"Settings file (default: ./{Defaults.SETTINGS_FILE})")
        sub.set_defaults(handler=handler)

    return parser


# =============================================================================
# COMMANDS
# =============================================================================

def run_digest(args: argparse.Namespace) -> int:
    """Run the digest command."""
    config = ConfigBuilder.from_args(args)
    runner = DigestRunner(config)
    stats = runner.run()

    SummaryPrinter(config).render(stats)

    if config.split:
        for path, size in stats.artifacts:
            print(f"📄 {path} ({_mb(size):.2f} MB)", file=sys.stderr)
    else:
        print(f"\n✅ Written to {config.output_file}", file=sys.stderr)
        if args.clipboard:
            copy_to_clipboard(config.output_file)
    return 0


def show_config(args: argparse.Namespace) -> int:
    manager = SettingsManager(args.config)
    if not manager.exists():
        print("No configuration file found. Using default settings:")
    print(manager.show())
    return 0


def init_config(args: argparse.Namespace) -> int:
    manager = SettingsManager(args.config)
    manager.init()
    print(f"Created config file: {manager.path.resolve()}")
    print("You can now modify this file or use 'ai-digest config show' to view it")
    return 0


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(levelname)s: %(message)s",
        stream=sys.stderr,
    )

    parser = create_parser()
    args = parser.parse_args(argv)

    if getattr(args, "verbose", False) or os.environ.get("DEBUG"):
        logging.getLogger().setLevel(logging.DEBUG)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1

    try:
        return handler(args)
    except KeyboardInterrupt:
        print("\n⚠️ Interrupted", file=sys.stderr)
        return 130
    except (DigestError, OSError) as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logging.exception("Critical error")
        print(f"❌ Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
