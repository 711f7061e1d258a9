"""Tests for LayoutPlanner."""

import pytest
from macholib.mach_o import MH_EXECUTE

from macbinbundler import (
    BinaryKind,
    DependencyGraphBuilder,
    LayoutPlanner,
    LoadCommandInspector,
    PathError,
)


@pytest.fixture
def deep_tree(toolset, make_binary):
    """app -> libA -> libB -> libC, all by absolute reference."""
    exe = make_binary("src/bin/app", MH_EXECUTE)
    lib_a = make_binary("src/a/libA.dylib")
    lib_b = make_binary("src/b/libB.dylib")
    lib_c = make_binary("src/c/nested/libC.dylib")
    toolset.register(exe, references=[str(lib_a)])
    toolset.register(lib_a, references=[str(lib_a), str(lib_b)])
    toolset.register(lib_b, references=[str(lib_b), str(lib_c)])
    toolset.register(lib_c, references=[str(lib_c)])
    builder = DependencyGraphBuilder(LoadCommandInspector(toolset))
    return builder.build(exe, BinaryKind.EXECUTABLE)


class TestResolveSymlinks:
    """Tests for LayoutPlanner.resolve_symlinks()."""

    def test_symlink_replaced_by_target(self, toolset, make_binary, temp_dir):
        """Test a symlinked dependency is replaced by its real file."""
        exe = make_binary("app", MH_EXECUTE)
        real = make_binary("lib/libz.1.2.13.dylib")
        link = temp_dir / "lib" / "libz.1.dylib"
        link.symlink_to(real.name)
        toolset.register(exe, references=[str(link)])
        toolset.register(real, references=["/opt/lib/libz.1.dylib"])
        tree = DependencyGraphBuilder(LoadCommandInspector(toolset)).build(
            exe, BinaryKind.EXECUTABLE
        )
        child = tree.children[0]
        assert child.path == link

        LayoutPlanner(temp_dir / "out").resolve_symlinks(tree)
        assert child.path == real
        assert child.original_reference == str(link)

    def test_regular_files_untouched(self, deep_tree, temp_dir):
        """Test nodes that are not symlinks keep their path."""
        before = [n.path for n in deep_tree.walk()]
        LayoutPlanner(temp_dir / "out").resolve_symlinks(deep_tree)
        assert [n.path for n in deep_tree.walk()] == before


class TestAssignIdentities:
    """Tests for LayoutPlanner.assign_identities()."""

    def test_libraries_get_rpath_identity(self, deep_tree, temp_dir):
        """Test every library is named @rpath/<file name>."""
        LayoutPlanner(temp_dir / "out").assign_identities(deep_tree)
        identities = [n.assigned_identity for n in deep_tree.walk()]
        assert identities == [
            None,
            "@rpath/libA.dylib",
            "@rpath/libB.dylib",
            "@rpath/libC.dylib",
        ]

    def test_base_dylib_gets_identity(self, toolset, make_binary, temp_dir):
        """Test a dylib given as input is renamed too."""
        lib = make_binary("libroot.dylib")
        toolset.register(lib, references=["/usr/local/lib/libroot.dylib"])
        tree = DependencyGraphBuilder(LoadCommandInspector(toolset)).build(
            lib, BinaryKind.DYLIB
        )
        LayoutPlanner(temp_dir / "out").assign_identities(tree)
        assert tree.assigned_identity == "@rpath/libroot.dylib"

    def test_identity_uses_resolved_name(self, toolset, make_binary, temp_dir):
        """Test identities are derived after symlinks are resolved."""
        exe = make_binary("app", MH_EXECUTE)
        real = make_binary("lib/libz.1.2.13.dylib")
        link = temp_dir / "lib" / "libz.1.dylib"
        link.symlink_to(real.name)
        toolset.register(exe, references=[str(link)])
        toolset.register(real, references=[str(link)])
        tree = DependencyGraphBuilder(LoadCommandInspector(toolset)).build(
            exe, BinaryKind.EXECUTABLE
        )
        LayoutPlanner(temp_dir / "out").plan(tree)
        assert tree.children[0].assigned_identity == "@rpath/libz.1.2.13.dylib"


class TestPlanDestinations:
    """Tests for LayoutPlanner.plan_destinations()."""

    def test_flat_layout(self, deep_tree, temp_dir):
        """Test every dependency lands in one folder whatever its depth."""
        out = temp_dir / "out"
        LayoutPlanner(out).plan(deep_tree)
        nodes = list(deep_tree.walk())
        assert nodes[0].destination_dir == out
        assert nodes[0].destination_path == out / "app"
        for node in nodes[1:]:
            assert node.destination_dir == out / "libs"
            assert node.destination_path == out / "libs" / node.path.name

    def test_custom_libs_path(self, deep_tree, temp_dir):
        """Test a nested library folder."""
        out = temp_dir / "out"
        planner = LayoutPlanner(out, "Contents/Frameworks")
        assert planner.libs_dir == out / "Contents" / "Frameworks"
        planner.plan(deep_tree)
        lib_c = list(deep_tree.walk())[-1]
        assert lib_c.destination_path == out / "Contents/Frameworks/libC.dylib"

    def test_duplicates_share_destination(self, toolset, make_binary, temp_dir):
        """Test nodes for the same file plan the same destination."""
        exe = make_binary("app", MH_EXECUTE)
        lib_a = make_binary("libA.dylib")
        lib_b = make_binary("libB.dylib")
        lib_c = make_binary("libC.dylib")
        toolset.register(exe, references=[str(lib_a), str(lib_b)])
        toolset.register(lib_a, references=[str(lib_a), str(lib_c)])
        toolset.register(lib_b, references=[str(lib_b), str(lib_c)])
        toolset.register(lib_c, references=[str(lib_c)])
        tree = DependencyGraphBuilder(LoadCommandInspector(toolset)).build(
            exe, BinaryKind.EXECUTABLE
        )
        LayoutPlanner(temp_dir / "out").plan(tree)
        c_nodes = [n for n in tree.walk() if n.path == lib_c]
        assert len(c_nodes) == 2
        assert c_nodes[0].destination_path == c_nodes[1].destination_path
        assert c_nodes[0].assigned_identity == c_nodes[1].assigned_identity

    def test_same_name_different_files(self, toolset, make_binary, temp_dir):
        """Test two distinct libraries with one file name are refused."""
        exe = make_binary("app", MH_EXECUTE)
        lib_a = make_binary("a/libz.dylib")
        lib_b = make_binary("b/libz.dylib")
        lib_b.write_bytes(lib_b.read_bytes() + b"other build")
        toolset.register(exe, references=[str(lib_a), str(lib_b)])
        toolset.register(lib_a, references=[str(lib_a)])
        toolset.register(lib_b, references=[str(lib_b)])
        tree = DependencyGraphBuilder(LoadCommandInspector(toolset)).build(
            exe, BinaryKind.EXECUTABLE
        )
        with pytest.raises(PathError, match="libz.dylib"):
            LayoutPlanner(temp_dir / "out").plan(tree)


if __name__ == "__main__":
    pytest.main([__file__])
