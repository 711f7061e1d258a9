"""Shared fixtures: a recording toolset double and Mach-O file helpers."""

import struct
import tempfile
from pathlib import Path

import pytest
from macholib.mach_o import MH_DYLIB, MH_EXECUTE

from macbinbundler import ToolsetInvocationError

FIXTURES = Path(__file__).parent / "fixtures"

# arm64 CPU type
CPU_TYPE_ARM64 = 0x0100000C


def write_macho(path: Path, filetype: int = MH_DYLIB) -> Path:
    """Write a minimal 64-bit little-endian Mach-O header with no commands."""
    header = struct.pack(
        "<IiiIIIII", 0xFEEDFACF, CPU_TYPE_ARM64, 0, filetype, 0, 0, 0, 0
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(header + b"\x00" * 32)
    return path


def load_commands_text(path: Path, rpaths) -> str:
    """Render `otool -l` style output holding the given LC_RPATH values."""
    lines = [
        f"{path}:",
        "Load command 0",
        "      cmd LC_SEGMENT_64",
        "  cmdsize 72",
        "  segname __PAGEZERO",
    ]
    for index, rpath in enumerate(rpaths, start=1):
        lines += [
            f"Load command {index}",
            "          cmd LC_RPATH",
            "      cmdsize 32",
            f"         path {rpath} (offset 12)",
        ]
    return "\n".join(lines) + "\n"


def shared_libraries_text(path: Path, references) -> str:
    """Render `otool -L` style output listing the given references."""
    lines = [f"{path}:"]
    for reference in references:
        lines.append(
            f"\t{reference} (compatibility version 1.0.0, current version 1.0.0)"
        )
    return "\n".join(lines) + "\n"


class FakeToolset:
    """In-memory stand-in for the otool/install_name_tool/codesign wrapper.

    Inspection answers come from registered text; mutations are recorded
    per resolved destination path, mimicking install_name_tool's refusal to
    add a duplicate LC_RPATH.
    """

    def __init__(self):
        self.load_commands: dict[Path, str] = {}
        self.shared_libraries: dict[Path, str] = {}
        self.inspected: list[Path] = []
        self.identities: dict[Path, str] = {}
        self.rpaths: dict[Path, list[str]] = {}
        self.changes: list[tuple[Path, str, str]] = []
        self.signed: list[Path] = []
        self.fail_sign: set[Path] = set()
        self.fail_identity: set[Path] = set()

    def register(self, path: Path, rpaths=(), references=()) -> Path:
        key = Path(path).resolve()
        self.load_commands[key] = load_commands_text(key, rpaths)
        self.shared_libraries[key] = shared_libraries_text(key, references)
        return path

    def register_text(self, path: Path, load_commands: str, shared: str) -> None:
        key = Path(path).resolve()
        self.load_commands[key] = load_commands
        self.shared_libraries[key] = shared

    def dump_load_commands(self, path: Path) -> str:
        key = Path(path).resolve()
        return self.load_commands.get(key, f"{key}:\n")

    def list_shared_libraries(self, path: Path) -> str:
        key = Path(path).resolve()
        self.inspected.append(key)
        return self.shared_libraries.get(key, f"{key}:\n")

    def change_identity(self, path: Path, identity: str) -> None:
        key = Path(path).resolve()
        if key in self.fail_identity:
            raise ToolsetInvocationError(
                f"install_name_tool -id {identity} {path}", 1, "malformed"
            )
        self.identities[key] = identity

    def add_rpath(self, path: Path, rpath: str) -> None:
        key = Path(path).resolve()
        existing = self.rpaths.setdefault(key, [])
        if rpath in existing:
            raise ToolsetInvocationError(
                f"install_name_tool -add_rpath {rpath} {path}",
                1,
                f'error: install_name_tool: for: {path} (for architecture '
                f'arm64) option "-add_rpath {rpath}" would duplicate path, '
                f"file already has LC_RPATH for: {rpath}",
            )
        existing.append(rpath)

    def change_reference(self, path: Path, old: str, new: str) -> None:
        self.changes.append((Path(path).resolve(), old, new))

    def adhoc_sign(self, path: Path) -> None:
        key = Path(path).resolve()
        if key in self.fail_sign:
            raise ToolsetInvocationError(
                f"codesign --force --sign - {path}", 1, "invalid format"
            )
        self.signed.append(key)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        # resolve() handles the macOS /var -> /private/var symlink
        yield Path(tmpdirname).resolve()


@pytest.fixture
def toolset():
    """Provide a fresh FakeToolset."""
    return FakeToolset()


@pytest.fixture
def make_binary(temp_dir):
    """Factory writing a Mach-O stub at a path relative to temp_dir."""

    def _make(relpath: str, filetype: int = MH_DYLIB) -> Path:
        return write_macho(temp_dir / relpath, filetype)

    return _make


@pytest.fixture
def app_layout(temp_dir, make_binary, toolset):
    """Executable E with run-paths ["../lib", "libs"] using @rpath/libA.dylib.

    Only E_dir/libs/libA.dylib exists.
    """
    exe = make_binary("E_dir/E", MH_EXECUTE)
    lib_a = make_binary("E_dir/libs/libA.dylib")
    toolset.register(
        exe,
        rpaths=["@loader_path/../lib", "@loader_path/libs"],
        references=["@rpath/libA.dylib", "/usr/lib/libSystem.B.dylib"],
    )
    toolset.register(
        lib_a,
        rpaths=["@loader_path"],
        references=["@rpath/libA.dylib", "/usr/lib/libSystem.B.dylib"],
    )
    return exe, lib_a
