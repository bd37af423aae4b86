"""Shared fixtures: a fake toolchain and a fake build machine layout."""

from pathlib import Path

import pytest

from fixdylibs import PatchError, Toolchain

# Mach-O 64-bit magic number for creating fake binaries
MACHO_MAGIC_64 = b"\xcf\xfa\xed\xfe"


class FakeToolchain(Toolchain):
    """In-memory toolchain: patches edit the reference list it reports."""

    name = "fake"

    def __init__(
        self,
        references: list[str],
        fail_patch: bool = False,
        apply_patches: bool = True,
    ):
        self.references = list(references)
        self.fail_patch = fail_patch
        self.apply_patches = apply_patches
        self.patches: list[tuple[str, str]] = []
        self.list_calls = 0

    def list_dependencies(self, path):
        self.list_calls += 1
        return list(self.references)

    def patch_reference(self, path, old, new):
        if self.fail_patch:
            raise PatchError(f"Failed to change {old} to {new} in {path}")
        self.patches.append((old, new))
        if self.apply_patches:
            self.references = [new if r == old else r for r in self.references]


def create_fake_library(path: Path, mode: int = 0o644) -> Path:
    """Create a fake dylib with the given permission bits."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(MACHO_MAGIC_64 + path.name.encode())
    path.chmod(mode)
    return path


@pytest.fixture
def build_machine(tmp_path):
    """A fake build machine layout.

    - bin/p-load: the executable
    - usr/local/lib/libfoo.1.dylib: found through @rpath
    - opt/homebrew/lib/libbar.2.dylib: read-only, referenced absolutely
    """
    exe = tmp_path / "bin" / "p-load"
    exe.parent.mkdir()
    exe.write_bytes(MACHO_MAGIC_64 + b"\x00" * 100)
    exe.chmod(0o755)

    rpath_dir = tmp_path / "usr" / "local" / "lib"
    foo = create_fake_library(rpath_dir / "libfoo.1.dylib")
    bar = create_fake_library(
        tmp_path / "opt" / "homebrew" / "lib" / "libbar.2.dylib", mode=0o444
    )

    return {
        "exe": exe,
        "rpath_dir": rpath_dir,
        "foo": foo,
        "bar": bar,
        "references": [
            "/usr/lib/libSystem.B.dylib",
            "@rpath/libfoo.1.dylib",
            str(bar),
        ],
    }


@pytest.fixture
def fake_toolchain(build_machine):
    """A FakeToolchain reporting the build machine's references."""
    return FakeToolchain(build_machine["references"])
