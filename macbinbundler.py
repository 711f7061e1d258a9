#!/usr/bin/env python3
"""macbinbundler - make a macOS executable or dynamic library relocatable.

This module collects every non-system dynamic library that a binary
transitively depends on and copies them into one flat folder beside the
output. It then rewrites the install names, dependency references and
LC_RPATH entries, so the bundle keeps resolving wherever it is moved. Every
binary it touches is ad-hoc re-signed at the end.

The pipeline runs in strictly ordered passes over a dependency tree:

    build graph -> resolve symlinks -> assign identities/destinations
                -> copy -> rewrite metadata -> sign

Usage (CLI):
    # Bundle an executable into dist/, creating the folder if needed
    macbinbundler -i build/pdftoppm -o dist/pdftoppm -c

    # Bundle a dylib, putting its dependencies under Frameworks/
    macbinbundler -i libfoo.dylib -o dist -p Frameworks -l DEBUG

Usage (API):
    from macbinbundler import BinaryBundler, bundle_binary

    root = bundle_binary("build/pdftoppm", "dist", create_output=True)

    bundler = BinaryBundler("build/pdftoppm", "dist", dry_run=True)
    tree = bundler.run()
    print(tree.format_tree())
"""

import argparse
import datetime
import enum
import logging
import os
import shutil
import stat
import struct
import subprocess
import sys
import tomllib
from collections.abc import Iterator
from pathlib import Path, PurePosixPath

from dotenv import find_dotenv, load_dotenv
from macholib.mach_o import MH_DYLIB, MH_EXECUTE, MH_OBJECT
from macholib.MachO import MachO

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Library roots that ship with the OS; never bundled or rewritten
SYSTEM_LIBRARY_PREFIXES = ("/usr/lib", "/System/Library")

# Load-time path variables
RPATH_PREFIX = "@rpath/"
LOADER_PATH = "@loader_path"
EXECUTABLE_PATH = "@executable_path"

# Default folder (relative to the output directory) for bundled libraries
DEFAULT_LIBS_PATH = "libs"

# Lines following an LC_RPATH marker that may carry its `path` field
RPATH_SEARCH_WINDOW = 3

# install_name_tool wording when -add_rpath hits an existing entry
RPATH_EXISTS_MARKERS = ("file already has LC_RPATH", "would duplicate path")

# Environment variable names
ENV_LIBS_PATH = "MACBINBUNDLER_LIBS_PATH"
ENV_LOG_LEVEL = "MACBINBUNDLER_LOG_LEVEL"

# Extra level below DEBUG for dumping the dependency tree
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"]
DEFAULT_LOG_LEVEL = "INFO"

# Mach-O magic numbers for a single-architecture image
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
}

# Universal (fat) binary magic numbers
FAT_MAGIC_NUMBERS = {
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM
    b"\xca\xfe\xba\xbf",  # FAT_MAGIC_64
    b"\xbf\xba\xfe\xca",  # FAT_CIGAM_64
}

# Static library (ar archive) signature
AR_MAGIC = b"!<arch>\n"


# ----------------------------------------------------------------------------
# Environment and configuration file support


def _load_dotenv() -> None:
    """Load MACBINBUNDLER_* overrides from a .env file, if one exists.

    The file is searched from the current directory upwards.
    """
    load_dotenv(find_dotenv(usecwd=True))


_load_dotenv()


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .macbinbundler.toml in current directory
    3. macbinbundler.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If an explicit path is missing or any
            config file cannot be parsed

    Example .macbinbundler.toml:
        [bundle]
        libs_path = "Frameworks"
        log_level = "DEBUG"
        create_output = true
        exclude = ["/opt/homebrew/opt/llvm/lib"]
    """
    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".macbinbundler.toml",
            cwd / "macbinbundler.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
                return data
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigurationError(
                    f"Cannot read config file {path}: {e}"
                ) from e

    return {}


def _config_section(config: dict[str, object], section: str) -> dict:
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return {}
    return section_config


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: str | None = None,
) -> str | None:
    """Get a string value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "bundle")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    value = _config_section(config, section).get(key, default)
    if value is None or isinstance(value, str):
        return value
    return default


def get_config_flag(
    config: dict[str, object], section: str, key: str, default: bool = False
) -> bool:
    """Get a boolean value from config, ignoring values of other types."""
    value = _config_section(config, section).get(key, default)
    if isinstance(value, bool):
        return value
    return default


def get_config_list(
    config: dict[str, object], section: str, key: str
) -> list[str]:
    """Get a list of strings from config; non-string items are dropped."""
    value = _config_section(config, section).get(key, [])
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


# ----------------------------------------------------------------------------
# Error handling


class BundlerError(Exception):
    """Base exception class for macbinbundler errors."""


class PathError(BundlerError):
    """Exception raised when an input or output path is invalid."""


class ConfigurationError(BundlerError):
    """Exception raised when configuration is invalid."""


class ToolsetInvocationError(BundlerError):
    """Exception raised when an external tool fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        message = f"Command '{command}' failed with return code {returncode}"
        if output and output.strip():
            message = f"{message}: {output.strip()}"
        super().__init__(message)


class ParseError(BundlerError):
    """Exception raised when tool output lacks an expected structure."""


class RpathNotFoundError(ParseError):
    """Exception raised when a binary declares no usable LC_RPATH entry."""


class ResolutionError(BundlerError):
    """Exception raised when an @rpath reference matches no file.

    Attributes:
        binary: The binary holding the reference
        reference: The unresolved reference
        candidates: Every directory or file that was tried, in order
    """

    def __init__(self, binary: Path, reference: str, candidates: list[Path]):
        self.binary = binary
        self.reference = reference
        self.candidates = candidates
        tried = "".join(f"\n    {c}" for c in candidates) or " (none)"
        super().__init__(
            f"Cannot resolve {reference} for {binary}; tried:{tried}"
        )


class UnrecognizedReferenceError(BundlerError):
    """Exception raised when a dependency line has an unsupported shape."""

    def __init__(self, binary: Path, reference: str):
        self.binary = binary
        self.reference = reference
        super().__init__(
            f"Unrecognized library reference '{reference}' in {binary}"
        )


class RelocationError(BundlerError):
    """Exception raised when rewriting binary metadata fails."""


class SigningError(BundlerError):
    """Exception raised when ad-hoc signing fails."""


# ----------------------------------------------------------------------------
# Logging configuration


class CustomFormatter(logging.Formatter):
    """Custom logging formatting class with color support."""

    class color:
        """Text colors for terminal output."""

        white = "\x1b[97;20m"
        grey = "\x1b[38;20m"
        green = "\x1b[32;20m"
        cyan = "\x1b[36;20m"
        yellow = "\x1b[33;20m"
        red = "\x1b[31;20m"
        bold_red = "\x1b[31;1m"
        reset = "\x1b[0m"

    cfmt = (
        f"{color.white}%(delta)s{color.reset} - "
        f"{{}}%(levelname)s{color.reset} - "
        f"{color.white}%(name)s.%(funcName)s{color.reset} - "
        f"{color.grey}%(message)s{color.reset}"
    )

    FORMATS = {
        TRACE: cfmt.format(color.cyan),
        logging.DEBUG: cfmt.format(color.grey),
        logging.INFO: cfmt.format(color.green),
        logging.WARNING: cfmt.format(color.yellow),
        logging.ERROR: cfmt.format(color.red),
        logging.CRITICAL: cfmt.format(color.bold_red),
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self.fmt = (
            "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
        )

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with color if enabled."""
        if not self.use_color:
            log_fmt = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def resolve_log_level(name: str) -> int:
    """Map a level name such as "TRACE" or "info" to its numeric value.

    Raises:
        ConfigurationError: If the name is not one of LOG_LEVELS
    """
    if name.upper() not in LOG_LEVELS:
        raise ConfigurationError(
            f"Unknown log level '{name}' (expected one of {', '.join(LOG_LEVELS)})"
        )
    return logging.getLevelName(name.upper())


def setup_logging(level: str = DEFAULT_LOG_LEVEL, use_color: bool = True) -> None:
    """Configure logging for the application.

    Args:
        level: One of LOG_LEVELS
        use_color: Whether to use colored output
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(CustomFormatter(use_color))
    logging.basicConfig(
        level=resolve_log_level(level),
        handlers=[stream_handler],
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    log: logging.Logger | None = None,
) -> str:
    """Run a command and return its output.

    Uses shell=False; stderr is captured and attached to the raised error.

    Args:
        command: The command as a list of arguments
        log: Optional logger for debug output

    Returns:
        The command stdout output

    Raises:
        ToolsetInvocationError: If the command fails or cannot be started
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    try:
        result = subprocess.run(
            command, shell=False, check=True, text=True, capture_output=True
        )
        return result.stdout
    except subprocess.CalledProcessError as e:
        raise ToolsetInvocationError(
            cmd_str, e.returncode, e.stderr or e.output
        ) from e
    except OSError as e:
        raise ToolsetInvocationError(cmd_str, 127, str(e)) from e


class Toolset:
    """Inspect, rewrite and sign Mach-O files with the Xcode command line tools.

    Wraps otool, install_name_tool and codesign. Every operation is a
    blocking call that either completes or raises ToolsetInvocationError.
    Any object providing the same six methods can stand in for it.
    """

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def run_command(self, command: list[str]) -> str:
        return run_command(command, log=self.log)

    def dump_load_commands(self, path: Path) -> str:
        """Return the `otool -l` load command listing for path."""
        return self.run_command(["otool", "-l", str(path)])

    def list_shared_libraries(self, path: Path) -> str:
        """Return the `otool -L` shared library listing for path."""
        return self.run_command(["otool", "-L", str(path)])

    def change_identity(self, path: Path, identity: str) -> None:
        self.run_command(["install_name_tool", "-id", identity, str(path)])

    def add_rpath(self, path: Path, rpath: str) -> None:
        self.run_command(["install_name_tool", "-add_rpath", rpath, str(path)])

    def change_reference(self, path: Path, old: str, new: str) -> None:
        self.run_command(["install_name_tool", "-change", old, new, str(path)])

    def adhoc_sign(self, path: Path) -> None:
        self.run_command(["codesign", "--force", "--sign", "-", str(path)])


# ----------------------------------------------------------------------------
# File validation and classification


class BinaryKind(enum.Enum):
    """File categories reported by classify_binary()."""

    EXECUTABLE = "executable"
    DYLIB = "dynamic library"
    STATIC_LIBRARY = "static library"
    OBJECT_FILE = "object file"
    UNIVERSAL_BINARY = "universal binary"
    UNRECOGNIZED = "unrecognized"


# Kinds the bundler can take as its root input
BUNDLEABLE_KINDS = (BinaryKind.EXECUTABLE, BinaryKind.DYLIB)


def validate_input_file(path: Pathlike) -> None:
    """Validate the root binary before any tool is run on it.

    Checks that the path exists, is a regular file (symlinks to one are
    accepted), is readable and is not empty.

    Raises:
        PathError: If any check fails
    """
    path = Path(path)

    if not path.exists():
        raise PathError(f"Input file does not exist: {path}")

    if not path.is_file():
        raise PathError(f"Input path is not a regular file: {path}")

    if not os.access(path, os.R_OK):
        raise PathError(f"Input file is not readable: {path}")

    try:
        size = path.stat().st_size
    except OSError as e:
        raise PathError(f"Cannot stat file {path}: {e}") from e

    if size == 0:
        raise PathError(f"Input file is empty (zero bytes): {path}")


def _read_magic(path: Path, size: int = 4) -> bytes:
    with open(path, "rb") as f:
        return f.read(size)


def is_macho(path: Pathlike) -> bool:
    """Check if a file starts with a thin or fat Mach-O magic number."""
    path = Path(path)
    if not path.is_file():
        return False
    try:
        magic = _read_magic(path)
    except OSError:
        return False
    return magic in MACHO_MAGIC_NUMBERS or magic in FAT_MAGIC_NUMBERS


def classify_binary(path: Pathlike) -> BinaryKind:
    """Categorize a file by its header.

    Thin Mach-O images are parsed with macholib and sorted by their
    filetype field. Fat images are reported as universal binaries without
    being parsed further.

    Raises:
        PathError: If the path does not exist or cannot be read
    """
    path = Path(path)
    log = logging.getLogger("classify_binary")
    if not path.exists():
        raise PathError(f"Input file is not a valid path: {path}")

    try:
        magic = _read_magic(path, len(AR_MAGIC))
    except OSError as e:
        raise PathError(f"Cannot read file {path}: {e}") from e

    if magic == AR_MAGIC:
        return BinaryKind.STATIC_LIBRARY
    if magic[:4] in FAT_MAGIC_NUMBERS:
        return BinaryKind.UNIVERSAL_BINARY
    if magic[:4] not in MACHO_MAGIC_NUMBERS:
        log.debug("No Mach-O magic in %s: %r", path, magic[:4])
        return BinaryKind.UNRECOGNIZED

    try:
        macho = MachO(str(path))
    except (ValueError, struct.error) as e:
        log.debug("macholib cannot parse %s: %s", path, e)
        return BinaryKind.UNRECOGNIZED

    if macho.fat is not None or len(macho.headers) != 1:
        return BinaryKind.UNIVERSAL_BINARY

    filetype = macho.headers[0].header.filetype
    if filetype == MH_EXECUTE:
        return BinaryKind.EXECUTABLE
    if filetype == MH_DYLIB:
        return BinaryKind.DYLIB
    if filetype == MH_OBJECT:
        return BinaryKind.OBJECT_FILE
    log.debug("Unhandled Mach-O filetype %#x in %s", filetype, path)
    return BinaryKind.UNRECOGNIZED


# ----------------------------------------------------------------------------
# Load command inspection


class RpathKind(enum.Enum):
    """How an LC_RPATH value is anchored."""

    LOADER_RELATIVE = "loader-relative"
    EXECUTABLE_RELATIVE = "executable-relative"
    ABSOLUTE = "absolute"
    UNRECOGNIZED = "unrecognized"


def _strip_variable(value: str, variable: str) -> str | None:
    """Remove a leading path variable, or return None if it is absent.

    A bare variable (or one followed only by a slash) stands for the
    directory it names, so it becomes ".".
    """
    if value == variable:
        return "."
    if value.startswith(variable + "/"):
        return value[len(variable) + 1 :] or "."
    return None


class RpathEntry:
    """One LC_RPATH value declared by a binary.

    Args:
        raw: The value exactly as otool prints it
    """

    def __init__(self, raw: str):
        self.raw = raw
        self.kind = RpathKind.UNRECOGNIZED
        self.suffix = raw

        for kind, variable in (
            (RpathKind.LOADER_RELATIVE, LOADER_PATH),
            (RpathKind.EXECUTABLE_RELATIVE, EXECUTABLE_PATH),
        ):
            suffix = _strip_variable(raw, variable)
            if suffix is not None:
                self.kind = kind
                self.suffix = suffix
                return

        if raw.startswith("/"):
            self.kind = RpathKind.ABSOLUTE

    @property
    def is_relative(self) -> bool:
        return self.kind in (
            RpathKind.LOADER_RELATIVE,
            RpathKind.EXECUTABLE_RELATIVE,
        )

    def value(self, keep_prefix: bool = False) -> str:
        return self.raw if keep_prefix else self.suffix

    def __repr__(self) -> str:
        return f"RpathEntry({self.raw!r}, {self.kind.name})"


def parse_rpath_entries(text: str) -> list[RpathEntry]:
    """Extract LC_RPATH values from `otool -l` output.

    Each LC_RPATH marker is followed by `cmdsize` and `path` lines; up to
    RPATH_SEARCH_WINDOW lines after it are checked for one starting with
    `path`, whose second field is the value.
    """
    entries = []
    remaining = 0

    for line in text.splitlines():
        line = line.strip()

        if "LC_RPATH" in line:
            remaining = RPATH_SEARCH_WINDOW
            continue

        if remaining > 0:
            remaining -= 1
            if line.startswith("path"):
                fields = line.split()
                if len(fields) > 1:
                    entries.append(RpathEntry(fields[1]))
                remaining = 0

    return entries


def parse_shared_library_lines(text: str) -> list[str]:
    """Extract library references from `otool -L` output.

    The first line (`<path>:`) is dropped; each remaining line is trimmed
    of its `(compatibility version ...)` suffix.
    """
    references = []
    for line in text.splitlines()[1:]:
        line = line.strip()
        if not line:
            continue
        end = line.rfind(" (")
        references.append(line[:end] if end != -1 else line)
    return references


class LoadCommandInspector:
    """Reads run-paths and shared-library references through a toolset."""

    def __init__(self, toolset: Toolset):
        self.toolset = toolset
        self.log = logging.getLogger(self.__class__.__name__)

    def rpaths(self, path: Path, keep_prefix: bool = False) -> list[str]:
        """Return the relative LC_RPATH values of path in declared order.

        Args:
            path: Binary to inspect
            keep_prefix: Keep the @loader_path/@executable_path prefix

        Raises:
            RpathNotFoundError: If no relative entry is declared
        """
        self.log.debug("Searching LC_RPATH values for %s", path)
        rpaths = []
        for entry in parse_rpath_entries(self.toolset.dump_load_commands(path)):
            if not entry.is_relative:
                self.log.debug("Skipping %s rpath: %s", entry.kind.value, entry.raw)
                continue
            rpaths.append(entry.value(keep_prefix))

        if not rpaths:
            raise RpathNotFoundError(f"No rpath found in {path}")
        self.log.debug("Rpaths of %s: %s", path, rpaths)
        return rpaths

    def shared_libraries(self, path: Path) -> list[str]:
        """Return the references listed by `otool -L`, in order.

        For a dynamic library the first entry is its own identity.
        """
        return parse_shared_library_lines(
            self.toolset.list_shared_libraries(path)
        )


# ----------------------------------------------------------------------------
# Run-path resolution


class RpathResolver:
    """Find the file an @rpath reference names, the way dyld does.

    The referencing binary's run-paths are tried in declared order, each
    taken relative to the binary's own folder; the first existing file
    wins.
    """

    def __init__(self, inspector: LoadCommandInspector):
        self.inspector = inspector
        self.log = logging.getLogger(self.__class__.__name__)

    def canonicalize(self, referencing_binary: Pathlike, reference: str) -> Path:
        """Resolve reference against referencing_binary's run-paths.

        Args:
            referencing_binary: The binary holding the reference
            reference: An "@rpath/..." reference

        Returns:
            Path of the first matching file

        Raises:
            RpathNotFoundError: If the binary declares no run-path
            ResolutionError: If no run-path holds the file
        """
        binary = Path(referencing_binary)
        if not reference.startswith(RPATH_PREFIX):
            raise ResolutionError(binary, reference, [])

        name = reference[len(RPATH_PREFIX) :]
        candidates: list[Path] = []

        for rpath in self.inspector.rpaths(binary):
            directory = binary.parent / rpath
            if not directory.exists():
                self.log.debug("Rpath directory does not exist: %s", directory)
                candidates.append(directory)
                continue

            candidate = directory / name
            candidates.append(candidate)
            if not candidate.exists():
                self.log.debug("Library does not exist: %s", candidate)
                continue

            self.log.debug("Resolved %s to %s", reference, candidate)
            return candidate

        raise ResolutionError(binary, reference, candidates)


# ----------------------------------------------------------------------------
# Dependency graph


class Role(enum.Enum):
    """Whether a node is the user's input or something it depends on."""

    BASE = "base"
    DEPENDENCY = "dependency"


class BinaryNode:
    """One binary in the dependency tree.

    Args:
        path: Location of the binary (must be an existing file)
        kind: BinaryKind.EXECUTABLE or BinaryKind.DYLIB
        role: Role.BASE for the root input, Role.DEPENDENCY otherwise
        original_reference: The literal reference the parent used

    Raises:
        PathError: If path is missing or not a regular file
    """

    def __init__(
        self,
        path: Pathlike,
        kind: BinaryKind,
        role: Role = Role.DEPENDENCY,
        original_reference: str | None = None,
    ):
        path = Path(path)
        if not path.is_file():
            raise PathError(f"Path does not exist or is not a file: {path}")

        self.path = path
        self.kind = kind
        self.role = role
        self.original_reference = original_reference
        self.current_identity: str | None = None
        self.assigned_identity: str | None = None
        self.destination_dir: Path | None = None
        self.destination_path: Path | None = None
        self.children: list[BinaryNode] = []

    @property
    def is_library(self) -> bool:
        return self.kind == BinaryKind.DYLIB

    @property
    def is_base(self) -> bool:
        return self.role == Role.BASE

    def canonical_path(self) -> Path:
        """The symlink-free absolute path, used as the visitation key."""
        return self.path.resolve()

    def walk(self) -> Iterator["BinaryNode"]:
        """Yield this node and every descendant, depth first."""
        yield self
        for child in self.children:
            yield from child.walk()

    def format_tree(self, depth: int = 0) -> str:
        pad = "    " * depth
        lines = [f"{pad}{self.path.name} ({self.role.value}, {self.kind.value})"]
        lines.append(f"{pad}  path: {self.path}")
        if self.original_reference:
            lines.append(f"{pad}  referenced as: {self.original_reference}")
        if self.assigned_identity:
            lines.append(f"{pad}  identity: {self.assigned_identity}")
        if self.destination_path:
            lines.append(f"{pad}  destination: {self.destination_path}")
        for child in self.children:
            lines.append(child.format_tree(depth + 1))
        return "\n".join(lines)

    def __repr__(self) -> str:
        return f"BinaryNode({str(self.path)!r}, {self.kind.name}, {self.role.name})"


def _under_prefix(reference: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return reference == prefix or reference.startswith(prefix + "/")


class DependencyGraphBuilder:
    """Discovers the dependency tree of a binary.

    Every referencing edge gets its own node, so a library reached through
    two parents appears twice. The caller-owned visited set makes sure the
    file's own dependencies are only enumerated once, which also breaks
    cycles.

    Args:
        inspector: Source of shared-library listings
        resolver: Resolver for @rpath references (built from inspector if None)
        excluded_prefixes: Extra directories treated like system roots
    """

    def __init__(
        self,
        inspector: LoadCommandInspector,
        resolver: RpathResolver | None = None,
        excluded_prefixes: list[Pathlike] | None = None,
    ):
        self.inspector = inspector
        self.resolver = resolver or RpathResolver(inspector)
        # relative prefixes are taken from the current directory
        self.excluded_prefixes = [
            os.path.abspath(os.path.expanduser(p)) for p in (excluded_prefixes or [])
        ]
        self.log = logging.getLogger(self.__class__.__name__)

    def is_system_library(self, reference: str) -> bool:
        """Check if a reference lives under a system library root."""
        return any(_under_prefix(reference, p) for p in SYSTEM_LIBRARY_PREFIXES)

    def is_excluded(self, reference: str) -> bool:
        """Check if a reference should be left out of the bundle."""
        if self.is_system_library(reference):
            return True
        return any(_under_prefix(reference, p) for p in self.excluded_prefixes)

    def build(
        self,
        root_path: Pathlike,
        kind: BinaryKind,
        visited: set[Path] | None = None,
    ) -> BinaryNode:
        """Build the tree rooted at root_path.

        Args:
            root_path: The user's input binary
            kind: Its classification (EXECUTABLE or DYLIB)
            visited: Canonical paths already scanned; updated in place

        Returns:
            The base node
        """
        if visited is None:
            visited = set()
        root = BinaryNode(root_path, kind, Role.BASE)
        self.collect(root, visited)
        return root

    def collect(self, node: BinaryNode, visited: set[Path]) -> None:
        """Attach node's dependencies and recurse into them."""
        key = node.canonical_path()
        if key in visited:
            self.log.info("Library already collected, skipping: %s", node.path)
            return

        references = self.inspector.shared_libraries(node.path)
        if node.is_library:
            if not references:
                raise ParseError(f"Cannot read the identity of {node.path}")
            node.current_identity = references[0]
            references = references[1:]

        for reference in references:
            child = self.make_dependency(node, reference)
            if child is not None:
                node.children.append(child)

        visited.add(key)

        for child in node.children:
            self.collect(child, visited)

    def make_dependency(
        self, parent: BinaryNode, reference: str
    ) -> BinaryNode | None:
        """Turn one reference line of parent into a node.

        Returns:
            The new node, or None for a system or excluded library; an
            @rpath reference is checked again once resolved

        Raises:
            UnrecognizedReferenceError: If the reference is neither
                @rpath-relative nor absolute
        """
        self.log.debug("Processing library: %s", reference)

        if self.is_excluded(reference):
            self.log.debug("Skipping system library: %s", reference)
            return None

        if reference.startswith(RPATH_PREFIX):
            path = self.resolver.canonicalize(parent.path, reference)
            if self.is_excluded(str(path.resolve())):
                self.log.debug("Skipping excluded library: %s", path)
                return None
        elif Path(reference).is_absolute():
            path = Path(reference)
        else:
            raise UnrecognizedReferenceError(parent.path, reference)

        return BinaryNode(path, BinaryKind.DYLIB, Role.DEPENDENCY, reference)


# ----------------------------------------------------------------------------
# Layout planning


class LayoutPlanner:
    """Decides where every node goes and what it will be called.

    The base binary lands in output_dir; every dependency, whatever its
    depth, lands in output_dir / libs_path.

    Args:
        output_dir: Destination folder for the base binary
        libs_path: Library folder, relative to output_dir
    """

    def __init__(self, output_dir: Pathlike, libs_path: Pathlike = DEFAULT_LIBS_PATH):
        self.output_dir = Path(output_dir)
        self.libs_path = Path(libs_path)
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def libs_dir(self) -> Path:
        return self.output_dir / self.libs_path

    def resolve_symlinks(self, tree: BinaryNode) -> None:
        for node in tree.walk():
            if node.path.is_symlink():
                real_path = node.path.resolve()
                self.log.debug("Symlink %s -> %s", node.path, real_path)
                node.path = real_path

    def assign_identities(self, tree: BinaryNode) -> None:
        for node in tree.walk():
            if node.is_library:
                node.assigned_identity = f"{RPATH_PREFIX}{node.path.name}"
                self.log.debug(
                    "Identity of %s: %s", node.path, node.assigned_identity
                )

    def plan_destinations(self, tree: BinaryNode) -> None:
        """Place every node, refusing two different files at one destination.

        Raises:
            PathError: If distinct libraries share a file name
        """
        claimed: dict[Path, Path] = {}
        for node in tree.walk():
            node.destination_dir = self.output_dir if node.is_base else self.libs_dir
            node.destination_path = node.destination_dir / node.path.name

            source = node.canonical_path()
            owner = claimed.setdefault(node.destination_path, source)
            if owner != source:
                raise PathError(
                    f"{owner} and {source} would both be bundled as "
                    f"{node.destination_path}"
                )

    def plan(self, tree: BinaryNode) -> None:
        """Run symlink resolution, identity assignment and destination
        planning, each across the whole tree, in that order."""
        self.resolve_symlinks(tree)
        self.assign_identities(tree)
        self.plan_destinations(tree)


# ----------------------------------------------------------------------------
# Relocation


class RelocationEngine:
    """Copies planned nodes into place and rewrites their load commands.

    Only destination copies are ever modified. Every step is safe to
    repeat: existing copies are kept, and an already-present LC_RPATH is
    not an error.

    Args:
        toolset: Tool wrapper used for the rewrites
        libs_path: Library folder, relative to the base binary
    """

    def __init__(self, toolset: Toolset, libs_path: Pathlike = DEFAULT_LIBS_PATH):
        self.toolset = toolset
        self.libs_path = Path(libs_path)
        self.log = logging.getLogger(self.__class__.__name__)

    def materialize(self, tree: BinaryNode) -> None:
        for node in tree.walk():
            self.copy_node(node)

    def copy_node(self, node: BinaryNode) -> None:
        """Copy node.path to node.destination_path unless already there.

        Raises:
            RelocationError: If the node has no planned destination
            PathError: If the source is not Mach-O, the destination folder
                cannot be created, or the destination is the source itself
        """
        if node.destination_dir is None or node.destination_path is None:
            raise RelocationError(f"No destination planned for {node.path}")

        dest = node.destination_path
        if not is_macho(node.path):
            raise PathError(f"File is not a valid Mach-O binary: {node.path}")

        try:
            node.destination_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PathError(
                f"Failed to create destination directory {node.destination_dir}: {e}"
            ) from e

        if dest.exists():
            if dest.resolve() == node.path.resolve():
                raise PathError(
                    f"Destination {dest} is the input file itself; "
                    "choose another output directory"
                )
            self.log.debug("Already copied, leaving untouched: %s", dest)
            return

        self.log.info("Copying %s to %s", node.path, dest)
        shutil.copy2(node.path, dest)
        oldmode = os.stat(dest).st_mode
        os.chmod(dest, oldmode | stat.S_IWUSR)

    def rpath_for(self, node: BinaryNode) -> str:
        """LC_RPATH added to node's copy so it can find the libs folder."""
        if node.is_base:
            return f"{LOADER_PATH}/{PurePosixPath(self.libs_path)}"
        return LOADER_PATH

    def relocate(self, tree: BinaryNode) -> None:
        """Rewrite every node; call only after materialize()."""
        for node in tree.walk():
            self.relocate_node(node)

    def relocate_node(self, node: BinaryNode) -> None:
        dest = node.destination_path
        if dest is None or not dest.exists():
            raise RelocationError(f"{node.path} has not been materialized")

        self.log.info("Fixing install names of %s", dest)

        if node.is_library:
            if node.assigned_identity is None:
                raise RelocationError(f"No identity assigned to {node.path}")
            try:
                self.toolset.change_identity(dest, node.assigned_identity)
            except ToolsetInvocationError as e:
                raise RelocationError(
                    f"Failed to set identity of {dest}: {e}"
                ) from e

        self.add_rpath(dest, self.rpath_for(node))

        for child in node.children:
            self.fix_reference(dest, child)

    def add_rpath(self, dest: Path, rpath: str) -> None:
        try:
            self.toolset.add_rpath(dest, rpath)
        except ToolsetInvocationError as e:
            if e.output and any(m in e.output for m in RPATH_EXISTS_MARKERS):
                self.log.debug("Already has rpath %s: %s", rpath, dest)
                return
            raise RelocationError(
                f"Failed to add rpath {rpath} to {dest}: {e}"
            ) from e

    def fix_reference(self, dest: Path, child: BinaryNode) -> None:
        """Point dest's reference to child at the child's new identity."""
        if child.original_reference is None or child.assigned_identity is None:
            raise RelocationError(
                f"Incomplete reference data for {child.path} in {dest}"
            )
        try:
            self.toolset.change_reference(
                dest, child.original_reference, child.assigned_identity
            )
        except ToolsetInvocationError as e:
            raise RelocationError(
                f"Failed to change {child.original_reference} in {dest}: {e}"
            ) from e
        self.log.debug(
            "%s: %s -> %s",
            dest.name,
            child.original_reference,
            child.assigned_identity,
        )


# ----------------------------------------------------------------------------
# Signing


class SigningPass:
    """Ad-hoc signs every materialized binary in the tree.

    Rewriting load commands invalidates any existing signature, and Apple
    Silicon refuses to load unsigned code, so every node is signed,
    duplicates included. Any failure is fatal.
    """

    def __init__(self, toolset: Toolset):
        self.toolset = toolset
        self.log = logging.getLogger(self.__class__.__name__)

    def sign_all(self, tree: BinaryNode) -> None:
        for node in tree.walk():
            self.sign(node)

    def sign(self, node: BinaryNode) -> None:
        dest = node.destination_path
        if dest is None:
            raise SigningError(f"No destination to sign for {node.path}")
        try:
            self.toolset.adhoc_sign(dest)
        except ToolsetInvocationError as e:
            self.log.error("Binary could not be signed: %s", dest)
            raise SigningError(f"Failed to sign {dest}: {e}") from e
        self.log.info("Signed %s", dest)


# ----------------------------------------------------------------------------
# Bundler


class BinaryBundler:
    """Bundles a binary and its non-system libraries into output_dir.

    Args:
        binary: Executable or dynamic library to bundle
        output_dir: Destination folder for the binary
        libs_path: Library folder, relative to output_dir (default: "libs")
        create_output: Create output_dir if it does not exist
        exclude: Extra directories whose libraries are not bundled
        toolset: Tool wrapper (default: Toolset())
        dry_run: Plan and report without writing anything

    Example:
        bundler = BinaryBundler("build/app", "dist", create_output=True)
        root = bundler.run()
    """

    def __init__(
        self,
        binary: Pathlike,
        output_dir: Pathlike,
        libs_path: Pathlike = DEFAULT_LIBS_PATH,
        create_output: bool = False,
        exclude: list[Pathlike] | None = None,
        toolset: Toolset | None = None,
        dry_run: bool = False,
    ):
        self.binary = Path(binary)
        self.output_dir = Path(output_dir)
        self.libs_path = Path(libs_path)
        self.create_output = create_output
        self.exclude = [Path(p) for p in (exclude or [])]
        self.toolset = toolset if toolset is not None else Toolset()
        self.dry_run = dry_run
        self.log = logging.getLogger(self.__class__.__name__)

        if self.libs_path.is_absolute() or ".." in self.libs_path.parts:
            raise ConfigurationError(
                f"Library path must stay inside the output directory: {self.libs_path}"
            )

        self.inspector = LoadCommandInspector(self.toolset)
        self.builder = DependencyGraphBuilder(
            self.inspector, excluded_prefixes=self.exclude
        )
        self.planner = LayoutPlanner(self.output_dir, self.libs_path)
        self.engine = RelocationEngine(self.toolset, self.libs_path)
        self.signer = SigningPass(self.toolset)

    def validate_input(self) -> BinaryKind:
        """Check the input binary and return its kind.

        Raises:
            PathError: If the input is missing, unreadable, or neither an
                executable nor a dynamic library
        """
        validate_input_file(self.binary)
        kind = classify_binary(self.binary)
        if kind not in BUNDLEABLE_KINDS:
            raise PathError(
                "Input file not recognized, must be an executable or a "
                f"dynamic library ({kind.value}): {self.binary}"
            )
        self.log.debug("Input %s is a %s", self.binary, kind.value)
        return kind

    def prepare_output_dir(self) -> None:
        """Make sure the output directory exists.

        Raises:
            PathError: If the output path is a file, or is missing and
                create_output is False
        """
        if self.output_dir.exists():
            if not self.output_dir.is_dir():
                raise PathError(
                    f"Output path is a file, it must be a folder: {self.output_dir}"
                )
            return

        if not self.create_output:
            raise PathError(
                f"Destination path does not exist: {self.output_dir} "
                "(use --create-output to create it)"
            )

        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would create output directory %s", self.output_dir
            )
            return

        self.log.info("Creating output directory %s", self.output_dir)
        try:
            self.output_dir.mkdir(parents=True)
        except OSError as e:
            raise PathError(
                f"Failed to create output directory {self.output_dir}: {e}"
            ) from e

    def report_plan(self, tree: BinaryNode) -> None:
        """Log what a real run would do to each node."""
        for node in tree.walk():
            self.log.info(
                "[DRY RUN] Would copy %s to %s", node.path, node.destination_path
            )
            if node.is_library:
                self.log.info(
                    "[DRY RUN] Would set identity %s", node.assigned_identity
                )
            self.log.info(
                "[DRY RUN] Would add rpath %s", self.engine.rpath_for(node)
            )
            for child in node.children:
                self.log.info(
                    "[DRY RUN] Would change %s -> %s",
                    child.original_reference,
                    child.assigned_identity,
                )

    def run(self) -> BinaryNode:
        """Execute every stage; each completes before the next begins.

        Returns:
            The root of the planned (and, unless dry_run, bundled) tree
        """
        kind = self.validate_input()
        self.prepare_output_dir()

        self.log.info("Collecting dependencies of %s", self.binary)
        visited: set[Path] = set()
        tree = self.builder.build(self.binary, kind, visited)
        self.log.info("Collected %d distinct binaries", len(visited))

        self.planner.plan(tree)
        self.log.log(TRACE, "Binary structure:\n%s", tree.format_tree())

        if self.dry_run:
            self.report_plan(tree)
            return tree

        self.engine.materialize(tree)
        self.engine.relocate(tree)
        self.signer.sign_all(tree)

        self.log.info("Bundle created: %s", tree.destination_path)
        return tree


# ----------------------------------------------------------------------------
# Functional API


def bundle_binary(
    binary: Pathlike,
    output_dir: Pathlike,
    libs_path: Pathlike = DEFAULT_LIBS_PATH,
    create_output: bool = False,
    exclude: list[Pathlike] | None = None,
    dry_run: bool = False,
) -> BinaryNode:
    """Bundle a binary and its dependencies into output_dir.

    This is a convenience function that creates a BinaryBundler instance
    and calls run() on it.

    Args:
        binary: Executable or dynamic library to bundle
        output_dir: Destination folder
        libs_path: Library folder, relative to output_dir (default: "libs")
        create_output: Create output_dir if missing
        exclude: Extra directories whose libraries are not bundled
        dry_run: If True, only show what would be done

    Returns:
        The root node of the bundled tree

    Example:
        root = bundle_binary("build/pdftoppm", "dist", create_output=True)
    """
    bundler = BinaryBundler(
        binary=binary,
        output_dir=output_dir,
        libs_path=libs_path,
        create_output=create_output,
        exclude=exclude,
        dry_run=dry_run,
    )
    return bundler.run()


# ----------------------------------------------------------------------------
# Command-line interface


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="macbinbundler",
        description=(
            "Collect all dependencies of a macOS executable or dynamic "
            "library and bundle them for portability."
        ),
        epilog=(
            "Examples:\n"
            "  macbinbundler -i build/pdftoppm -o dist -c\n"
            "  macbinbundler -i libfoo.dylib -o dist -p Frameworks\n"
            "  macbinbundler -i app -o dist -x /opt/homebrew/opt/llvm/lib --dry-run\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-i",
        "--input",
        required=True,
        metavar="BINARY",
        help="executable or dynamic library to bundle",
    )
    parser.add_argument(
        "-o",
        "--output",
        required=True,
        metavar="DIR",
        help="destination folder",
    )
    parser.add_argument(
        "-p",
        "--libs-path",
        metavar="DIR",
        help=f"library folder relative to the output (default: {DEFAULT_LIBS_PATH})",
    )
    parser.add_argument(
        "-c",
        "--create-output",
        action="store_true",
        help="create the output folder if it does not exist",
    )
    parser.add_argument(
        "-x",
        "--exclude",
        action="append",
        metavar="DIR",
        help="do not bundle libraries from this folder (repeatable)",
    )
    parser.add_argument(
        "-l",
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help=f"log verbosity (default: {DEFAULT_LOG_LEVEL})",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="TOML configuration file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be done without doing it",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="disable colored output",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.set_defaults(func=_cmd_bundle)
    return parser


def _cmd_bundle(args: argparse.Namespace) -> None:
    """Handle a bundling request.

    Each setting comes from the command line, then the environment, then
    the config file, then the built-in default.
    """
    config = load_config(Path(args.config) if args.config else None)

    log_level = (
        args.log_level
        or os.getenv(ENV_LOG_LEVEL)
        or get_config_value(config, "bundle", "log_level")
        or DEFAULT_LOG_LEVEL
    )
    setup_logging(log_level, not args.no_color)
    log = logging.getLogger("macbinbundler")

    libs_path = (
        args.libs_path
        or os.getenv(ENV_LIBS_PATH)
        or get_config_value(config, "bundle", "libs_path")
        or DEFAULT_LIBS_PATH
    )
    create_output = args.create_output or get_config_flag(
        config, "bundle", "create_output"
    )
    exclude = (args.exclude or []) + get_config_list(config, "bundle", "exclude")

    bundler = BinaryBundler(
        binary=Path(args.input),
        output_dir=Path(args.output),
        libs_path=libs_path,
        create_output=create_output,
        exclude=exclude,
        dry_run=args.dry_run,
    )
    root = bundler.run()
    log.info("Bundled: %s", root.destination_path)


def main(argv: list[str] | None = None) -> None:
    """Command line interface for macbinbundler."""
    try:
        parser = _build_parser()
        args = parser.parse_args(argv)
        args.func(args)

    except BundlerError as e:
        logging.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(130)
    except Exception as e:
        logging.error("Unexpected error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
