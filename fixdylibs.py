#!/usr/bin/env python3
"""fixdylibs - make a macOS executable self-contained for public release.

This module rewrites the shared library references embedded in a Mach-O
executable so that they resolve relative to the executable itself, and
copies every library that is not guaranteed to exist on the target
machine into the executable's directory.

Each reference the executable carries is handled according to its prefix:
1. System libraries (/usr/lib/, /System/Library/) are left alone
2. @rpath/ references are copied from a known install directory
   (/usr/local/lib by default)
3. Anything else is copied from its literal path and rewritten
   to @rpath/<basename>

Only the libraries referenced by the executable itself are handled; the
dependencies of the copied libraries are not followed.

The executable is patched in place, so running two invocations against
the same executable at the same time is unsafe.

Usage (CLI):
    fixdylibs build/p-load
    fixdylibs --rpath-dir /opt/homebrew/lib --sign build/p-load

Usage (API):
    from fixdylibs import DylibFixer

    fixer = DylibFixer("build/p-load", rpath_source_dir="/usr/local/lib")
    fixer.process()
"""

import argparse
import datetime
import enum
import logging
import os
import shutil
import struct
import subprocess
import sys
from pathlib import Path

from machoscan import change_dylib_reference, get_dylib_references

# ----------------------------------------------------------------------------
# Constants

__version__ = "0.1.0"

# Type aliases
Pathlike = Path | str

# Prefixes of libraries present on every macOS installation
DEFAULT_SYSTEM_PREFIXES = ("/usr/lib/", "/System/Library/")

# Token marking a reference resolved through the binary's search paths
RPATH_TOKEN = "@rpath/"

# Where libraries referenced through @rpath live on the build machine
DEFAULT_RPATH_SOURCE_DIR = "/usr/local/lib"

# Mode of every copied library: rwxr-xr-x
LIBRARY_MODE = 0o755

# Names of the available binary toolchains
BACKEND_OTOOL = "otool"
BACKEND_MACHOLIB = "macholib"
BACKENDS = [BACKEND_OTOOL, BACKEND_MACHOLIB]

# Environment variable names
ENV_RPATH_DIR = "FIXDYLIBS_RPATH_DIR"
ENV_BACKEND = "FIXDYLIBS_BACKEND"

# Process exit statuses
EXIT_SUCCESS = 0
EXIT_USAGE = 1
EXIT_FAILURE = 2
EXIT_PATCH = 3
EXIT_INSPECTION = 4
EXIT_COPY = 5
EXIT_INTERRUPTED = 130

# Mach-O magic numbers for binary validation
MACHO_MAGIC_NUMBERS = {
    b"\xfe\xed\xfa\xce",  # MH_MAGIC (32-bit)
    b"\xce\xfa\xed\xfe",  # MH_CIGAM (32-bit, reverse byte order)
    b"\xfe\xed\xfa\xcf",  # MH_MAGIC_64 (64-bit)
    b"\xcf\xfa\xed\xfe",  # MH_CIGAM_64 (64-bit, reverse byte order)
    b"\xca\xfe\xba\xbe",  # FAT_MAGIC (universal binary)
    b"\xbe\xba\xfe\xca",  # FAT_CIGAM (universal binary, reverse byte order)
}

# ----------------------------------------------------------------------------
# Optional dotenv support


def _load_dotenv() -> None:
    """Attempt to load .env file if python-dotenv is available."""
    try:
        from dotenv import load_dotenv

        load_dotenv()
    except ImportError:
        pass


_load_dotenv()

# ----------------------------------------------------------------------------
# Error handling


class FixDylibsError(Exception):
    """Base exception class for fixdylibs errors."""

    exit_code = EXIT_FAILURE


class CommandError(FixDylibsError):
    """Exception raised when a command fails."""

    def __init__(
        self, command: str, returncode: int, output: str | None = None
    ):
        self.command = command
        self.returncode = returncode
        self.output = output
        super().__init__(
            f"Command '{command}' failed with return code {returncode}"
        )


class ConfigurationError(FixDylibsError):
    """Exception raised when configuration is invalid."""


class CodesignError(FixDylibsError):
    """Exception raised when ad-hoc codesigning fails."""


class InspectionError(FixDylibsError):
    """Exception raised when the dependencies of a binary cannot be listed."""

    exit_code = EXIT_INSPECTION


class CopyError(FixDylibsError):
    """Exception raised when a library cannot be copied next to the executable."""

    exit_code = EXIT_COPY


class PatchError(FixDylibsError):
    """Exception raised when a library reference cannot be rewritten."""

    exit_code = EXIT_PATCH


# ----------------------------------------------------------------------------
# Configuration file support


def load_config(config_path: Path | None = None) -> dict[str, object]:
    """Load configuration from a TOML file.

    Searches for configuration in the following order:
    1. Explicit config_path if provided
    2. .fixdylibs.toml in current directory
    3. fixdylibs.toml in current directory

    Args:
        config_path: Optional explicit path to config file

    Returns:
        Configuration dictionary (empty if no config found)

    Raises:
        ConfigurationError: If the explicit file is missing or a config
            file cannot be parsed

    Example .fixdylibs.toml:
        [fix]
        rpath_source_dir = "/opt/homebrew/lib"
        system_prefixes = ["/usr/lib/", "/System/Library/"]
        backend = "macholib"
        codesign = true
    """
    try:
        import tomllib
    except ImportError:
        import tomli as tomllib  # type: ignore[no-redef]

    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(
                f"Configuration file does not exist: {config_path}"
            )
        paths_to_try = [config_path]
    else:
        cwd = Path.cwd()
        paths_to_try = [
            cwd / ".fixdylibs.toml",
            cwd / "fixdylibs.toml",
        ]

    for path in paths_to_try:
        if path.exists():
            try:
                with open(path, "rb") as f:
                    data: dict[str, object] = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigurationError(
                    f"Cannot read configuration file {path}: {e}"
                ) from e
            return data

    return {}


def get_config_value(
    config: dict[str, object],
    section: str,
    key: str,
    default: object = None,
) -> object:
    """Get a value from config with section.key lookup.

    Args:
        config: Configuration dictionary
        section: Section name (e.g., "fix")
        key: Key name within section
        default: Default value if not found

    Returns:
        Configuration value or default
    """
    section_config = config.get(section, {})
    if not isinstance(section_config, dict):
        return default
    return section_config.get(key, default)


# ----------------------------------------------------------------------------
# Logging configuration


class LevelFormatter(logging.Formatter):
    """Colors the level name; the elapsed run time leads every line."""

    RESET = "\x1b[0m"
    DIM = "\x1b[2m"

    LEVEL_COLORS = {
        logging.DEBUG: "\x1b[38;20m",
        logging.INFO: "\x1b[32;20m",
        logging.WARNING: "\x1b[33;20m",
        logging.ERROR: "\x1b[31;20m",
        logging.CRITICAL: "\x1b[31;1m",
    }

    PLAIN_FMT = "%(elapsed)s %(levelname)-7s %(name)s: %(message)s"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color
        self._plain = logging.Formatter(self.PLAIN_FMT)
        self._by_level: dict[int, logging.Formatter] = {}
        if use_color:
            for level, color in self.LEVEL_COLORS.items():
                self._by_level[level] = logging.Formatter(
                    f"{self.DIM}%(elapsed)s{self.RESET} "
                    f"{color}%(levelname)-7s{self.RESET} "
                    f"%(name)s: %(message)s"
                )

    def format(self, record: logging.LogRecord) -> str:
        elapsed = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.elapsed = elapsed.strftime("%H:%M:%S")
        formatter = self._by_level.get(record.levelno, self._plain)
        return formatter.format(record)


def setup_logging(debug: bool = False, use_color: bool = True) -> None:
    """Send log records to stderr, at DEBUG level when `debug` is set."""
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(LevelFormatter(use_color))
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        handlers=[stream_handler],
        force=True,
    )


# ----------------------------------------------------------------------------
# Command execution utilities


def run_command(
    command: list[str],
    log: logging.Logger | None = None,
) -> str:
    """Run a command without a shell and return its stdout.

    Raises:
        CommandError: If the command exits non-zero or cannot be started;
            a program that cannot be started reports return code 127
    """
    cmd_str = " ".join(command)
    if log:
        log.debug("%s", cmd_str)
    try:
        result = subprocess.run(
            command, check=True, text=True, capture_output=True
        )
    except subprocess.CalledProcessError as e:
        raise CommandError(cmd_str, e.returncode, e.stderr or e.output) from e
    except OSError as e:
        raise CommandError(cmd_str, 127, str(e)) from e
    return result.stdout


def is_valid_macho(path: Pathlike) -> bool:
    """True if `path` is a regular file starting with a Mach-O magic number."""
    try:
        with open(path, "rb") as f:
            return f.read(4) in MACHO_MAGIC_NUMBERS
    except OSError:
        return False


def validate_target(path: Pathlike) -> None:
    """Check that the executable to fix can be inspected.

    Raises:
        InspectionError: If the path is missing, not a file or unreadable
    """
    path = Path(path)
    if not path.exists():
        raise InspectionError(f"Executable does not exist: {path}")
    if not path.is_file():
        raise InspectionError(f"Executable is not a regular file: {path}")
    if not os.access(path, os.R_OK):
        raise InspectionError(f"Executable is not readable: {path}")


# ----------------------------------------------------------------------------
# Library references


class Disposition(enum.Enum):
    """What to do with a library reference."""

    SYSTEM = "system"  # present on every machine, leave alone
    RPATH = "rpath"  # copy from the rpath source directory
    DIRECT = "direct"  # copy from the literal path and rewrite


def classify_reference(
    raw: str,
    system_prefixes: tuple[str, ...] | list[str] = DEFAULT_SYSTEM_PREFIXES,
    rpath_token: str = RPATH_TOKEN,
) -> Disposition:
    """Classify a library reference by its prefix. First match wins.

    Args:
        raw: The reference as stored in the binary
        system_prefixes: Prefixes of libraries present on every machine
        rpath_token: Prefix of references resolved through search paths

    Returns:
        The disposition of the reference
    """
    if any(raw.startswith(prefix) for prefix in system_prefixes):
        return Disposition.SYSTEM
    if raw.startswith(rpath_token):
        return Disposition.RPATH
    return Disposition.DIRECT


class Reference:
    """A library reference found in an executable.

    Args:
        raw: The reference as stored in the binary
        disposition: The classification of the reference
    """

    def __init__(self, raw: str, disposition: Disposition):
        self.raw = raw
        self.disposition = disposition

    @property
    def basename(self) -> str:
        """File name of the referenced library."""
        return os.path.basename(self.raw)

    @property
    def relocated_name(self) -> str:
        """The relocatable form of this reference."""
        return f"{RPATH_TOKEN}{self.basename}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Reference):
            return NotImplemented
        return self.raw == other.raw and self.disposition == other.disposition

    def __hash__(self) -> int:
        return hash((self.raw, self.disposition))

    def __repr__(self) -> str:
        return f"Reference({self.raw!r}, {self.disposition.name})"


def materialize_library(
    source: Pathlike, dest_dir: Pathlike, mode: int = LIBRARY_MODE
) -> Path:
    """Copy a library into a directory and normalize its permissions.

    Some library distributions (Homebrew among them) install read-only
    files; the copy always gets `mode`, whatever the source had. The copy
    is a regular file named after `source`, even when `source` or a file
    already at the destination is a symbolic link; the file a link points
    to is never modified.

    Args:
        source: The library file to copy
        dest_dir: The directory receiving the copy
        mode: Permission bits of the copy

    Returns:
        Path of the copy

    Raises:
        CopyError: If the source is missing or the copy cannot be written
    """
    log = logging.getLogger("fixdylibs")
    source = Path(source)
    dest_dir = Path(dest_dir)
    dest = dest_dir / source.name

    if not source.is_file():
        raise CopyError(f"Library not found: {source}")
    if not dest_dir.is_dir():
        raise CopyError(f"Destination is not a directory: {dest_dir}")

    try:
        real_source = source.resolve()
        if dest.is_symlink():
            log.info("replace link %s with a copy of %s", dest, real_source)
            dest.unlink()
            shutil.copyfile(real_source, dest)
        elif dest.exists() and os.path.samefile(real_source, dest):
            log.info("%s is already in place", dest)
        else:
            log.info("copy %s -> %s", source, dest)
            if dest.exists():
                dest.unlink()
            shutil.copyfile(real_source, dest)
        os.chmod(dest, mode)
    except OSError as e:
        raise CopyError(f"Failed to copy {source} to {dest_dir}: {e}") from e

    return dest


# ----------------------------------------------------------------------------
# Binary toolchains


class Toolchain:
    """Lists and rewrites the library references of a binary.

    Subclasses implement the two primitives on top of a concrete tool.
    """

    name = ""

    def list_dependencies(self, path: Pathlike) -> list[str]:
        """Return the library references of a binary, in stored order.

        The binary's own identification is never part of the result.

        Raises:
            InspectionError: If the binary cannot be inspected
        """
        raise NotImplementedError

    def patch_reference(self, path: Pathlike, old: str, new: str) -> None:
        """Replace the library reference `old` with `new` in place.

        Raises:
            PatchError: If the binary cannot be modified
        """
        raise NotImplementedError


class OtoolToolchain(Toolchain):
    """Toolchain backed by the Xcode command-line tools.

    Uses `otool -L` to list references and `install_name_tool -change`
    to rewrite them.
    """

    name = BACKEND_OTOOL

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def list_dependencies(self, path: Pathlike) -> list[str]:
        try:
            output = run_command(["otool", "-L", str(path)], log=self.log)
        except CommandError as e:
            raise InspectionError(
                f"Cannot list dependencies of {path}: {e}"
                + (f"\n{e.output.strip()}" if e.output else "")
            ) from e
        return parse_otool_output(output, os.path.basename(str(path)))

    def patch_reference(self, path: Pathlike, old: str, new: str) -> None:
        command = ["install_name_tool", "-change", old, new, str(path)]
        try:
            run_command(command, log=self.log)
        except CommandError as e:
            raise PatchError(
                f"Failed to change {old} to {new} in {path}: {e}"
                + (f"\n{e.output.strip()}" if e.output else "")
            ) from e


class MacholibToolchain(Toolchain):
    """Toolchain reading and writing load commands with macholib.

    Works without Xcode, on any host. Rewriting does not re-sign the
    binary.
    """

    name = BACKEND_MACHOLIB

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def list_dependencies(self, path: Pathlike) -> list[str]:
        if not is_valid_macho(path):
            raise InspectionError(f"Not a Mach-O binary: {path}")
        self.log.debug("reading load commands of %s", path)
        try:
            return get_dylib_references(path)
        except (OSError, ValueError, struct.error) as e:
            raise InspectionError(
                f"Cannot list dependencies of {path}: {e}"
            ) from e

    def patch_reference(self, path: Pathlike, old: str, new: str) -> None:
        self.log.debug("rewriting %s to %s in %s", old, new, path)
        try:
            changed = change_dylib_reference(path, old, new)
        except (OSError, ValueError, struct.error) as e:
            raise PatchError(
                f"Failed to change {old} to {new} in {path}: {e}"
            ) from e
        if not changed:
            raise PatchError(f"{path} does not reference {old}")


def parse_otool_output(output: str, own_name: str | None = None) -> list[str]:
    """Extract library references from `otool -L` output.

    Only indented lines are dependencies; the others name the binary
    itself (once per architecture in a universal binary). A reference
    repeated across architectures is reported once.

    For a dylib, otool prints the library's own install name (its
    LC_ID_DYLIB) as the first indented line of each slice. When the
    basename of that line equals `own_name` it is dropped, so a dylib
    is never treated as depending on itself.

    Args:
        output: The text printed by `otool -L`
        own_name: Basename of the inspected binary

    Returns:
        The references in first-seen order
    """
    references: list[str] = []
    first_in_slice = False
    for line in output.splitlines():
        if not line[:1].isspace():
            first_in_slice = True  # the binary's own header line
            continue
        entry = line.strip()
        if not entry:
            continue
        end = entry.rfind(" (")
        ref = entry[:end] if end != -1 else entry.split()[0]
        is_own_id = first_in_slice and own_name is not None and (
            os.path.basename(ref) == own_name
        )
        first_in_slice = False
        if is_own_id:
            continue
        if ref not in references:
            references.append(ref)
    return references


def get_toolchain(name: str = BACKEND_OTOOL) -> Toolchain:
    """Return the toolchain registered under `name`.

    Raises:
        ConfigurationError: If no toolchain has that name
    """
    if name == BACKEND_OTOOL:
        return OtoolToolchain()
    if name == BACKEND_MACHOLIB:
        return MacholibToolchain()
    raise ConfigurationError(
        f"Unknown backend '{name}' (choose from {', '.join(BACKENDS)})"
    )


# ----------------------------------------------------------------------------
# DylibFixer


class DylibFixer:
    """Makes an executable and the libraries it references relocatable.

    Args:
        target: The executable to fix
        system_prefixes: Prefixes of libraries never copied
        rpath_source_dir: Directory holding the libraries referenced
            through @rpath on the build machine
        toolchain: The tools used to read and rewrite references
        dry_run: Log copies and rewrites instead of performing them
        codesign: Apply an ad-hoc signature after rewriting

    Example:
        fixer = DylibFixer("build/p-load", toolchain=OtoolToolchain())
        fixer.process()
    """

    def __init__(
        self,
        target: Pathlike,
        system_prefixes: tuple[str, ...] | list[str] = DEFAULT_SYSTEM_PREFIXES,
        rpath_source_dir: Pathlike = DEFAULT_RPATH_SOURCE_DIR,
        toolchain: Toolchain | None = None,
        dry_run: bool = False,
        codesign: bool = False,
    ):
        self.target = Path(target)
        self.dest_dir = self.target.parent
        self.system_prefixes = tuple(system_prefixes)
        self.rpath_source_dir = Path(rpath_source_dir)
        self.toolchain = toolchain or OtoolToolchain()
        self.dry_run = dry_run
        self.can_codesign = codesign
        self.log = logging.getLogger(self.__class__.__name__)
        # basename -> file copied under that name during the current run
        self._bundled: dict[str, Path] = {}

        if not self.system_prefixes:
            raise ConfigurationError("At least one system prefix is required")

    def collect_references(self) -> list[str]:
        """List the references of the target.

        Raises:
            InspectionError: If the target cannot be inspected
        """
        validate_target(self.target)
        return self.toolchain.list_dependencies(self.target)

    def classify(self, raw: str) -> Reference:
        """Wrap a raw reference with its disposition."""
        return Reference(raw, classify_reference(raw, self.system_prefixes))

    def source_path(self, ref: Reference) -> Path:
        """Where the file behind a reference lives on this machine."""
        if ref.disposition == Disposition.RPATH:
            return self.rpath_source_dir / ref.basename
        return Path(ref.raw)

    def materialize(self, ref: Reference) -> None:
        """Copy the library behind a reference next to the target.

        Raises:
            CopyError: If the library cannot be copied, or another
                library with the same file name was already copied
        """
        source = self.source_path(ref)
        installed = self.dest_dir / ref.basename

        if (
            ref.disposition == Disposition.RPATH
            and not source.exists()
            and installed.is_file()
        ):
            # A library rewritten by an earlier run lives only next to the target
            self.log.info("%s is already bundled", installed)
            self.claim(ref.basename, installed)
            return

        self.claim(ref.basename, source)

        if self.dry_run:
            if not source.is_file():
                self.log.warning("[DRY RUN] Library not found: %s", source)
            self.log.info("[DRY RUN] Would copy %s to %s", source, installed)
            return

        materialize_library(source, self.dest_dir)

    def claim(self, basename: str, source: Path) -> None:
        """Record that `basename` next to the target is a copy of `source`.

        Raises:
            CopyError: If a different file already claimed `basename`
        """
        claimed = self._bundled.setdefault(basename, source)
        if os.path.realpath(claimed) != os.path.realpath(source):
            raise CopyError(
                f"{basename} is referenced from both {claimed} and {source}; "
                f"only one of them can be bundled next to {self.target.name}"
            )

    def rewrite(self, ref: Reference) -> None:
        """Point a reference of the target at its relocatable form.

        Raises:
            PatchError: If the target cannot be patched
        """
        if self.dry_run:
            self.log.info(
                "[DRY RUN] Would change %s to %s in %s",
                ref.raw,
                ref.relocated_name,
                self.target,
            )
            return

        self.log.info("change %s -> %s", ref.raw, ref.relocated_name)
        self.toolchain.patch_reference(
            self.target, ref.raw, ref.relocated_name
        )

    def process(self) -> list[Reference]:
        """Copy and rewrite every reference of the target.

        Returns:
            All references found, in stored order

        Raises:
            InspectionError: If the target cannot be inspected
            CopyError: If a library cannot be copied
            PatchError: If a reference cannot be rewritten
            CodesignError: If ad-hoc signing fails
        """
        self.log.info("Fixing library references of %s", self.target)

        self._bundled = {}
        references = []
        rewritten = 0
        for raw in self.collect_references():
            ref = self.classify(raw)
            references.append(ref)

            if ref.disposition == Disposition.SYSTEM:
                self.log.debug("skipping system library %s", ref.raw)
            elif ref.disposition == Disposition.RPATH:
                self.materialize(ref)
            else:
                self.materialize(ref)
                self.rewrite(ref)
                rewritten += 1

        if rewritten and self.can_codesign:
            self.adhoc_codesign()

        if not self.dry_run:
            self.verify()

        return references

    def verify(self) -> None:
        """Check that the target only references bundled or system libraries.

        Raises:
            PatchError: If an absolute reference is still present
            CopyError: If an @rpath reference has no copy next to the target
        """
        for raw in self.collect_references():
            ref = self.classify(raw)
            if ref.disposition == Disposition.DIRECT:
                raise PatchError(
                    f"{self.target} still references {ref.raw}"
                )
            if (
                ref.disposition == Disposition.RPATH
                and not (self.dest_dir / ref.basename).is_file()
            ):
                raise CopyError(
                    f"{ref.basename} is missing from {self.dest_dir}"
                )

    def adhoc_codesign(self) -> None:
        """Re-sign the target ad-hoc; rewriting invalidates its signature.

        Raises:
            CodesignError: If codesign fails
        """
        command = ["codesign", "--force", "--sign", "-", str(self.target)]
        if self.dry_run:
            self.log.info("[DRY RUN] %s", " ".join(command))
            return

        self.log.info("codesign %s", self.target)
        try:
            run_command(command, log=self.log)
        except CommandError as e:
            raise CodesignError(
                f"Failed to apply ad-hoc signature to {self.target}: {e}"
            ) from e


# ----------------------------------------------------------------------------
# Command-line interface


class ArgumentParser(argparse.ArgumentParser):
    """Argument parser exiting with the usage status on bad arguments."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def make_parser() -> ArgumentParser:
    """Build the command-line parser."""
    parser = ArgumentParser(
        prog="fixdylibs",
        description=(
            "Copy the non-system libraries an executable references into "
            "its directory and rewrite the references to @rpath/."
        ),
        epilog=(
            "Examples:\n"
            "  fixdylibs build/p-load\n"
            "  fixdylibs build/p-load -r /opt/homebrew/lib --sign\n"
            "  fixdylibs build/p-load --backend macholib --dry-run\n"
            "\n"
            "Exit status:\n"
            "  0 success, 1 invalid invocation, 2 other failure,\n"
            "  3 a reference could not be rewritten,\n"
            "  4 dependencies could not be listed,\n"
            "  5 a library could not be copied\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "executable",
        help="path to the executable to fix",
    )
    parser.add_argument(
        "-r",
        "--rpath-dir",
        metavar="DIR",
        help=(
            "directory holding @rpath libraries "
            f"(default: {DEFAULT_RPATH_SOURCE_DIR}, or ${ENV_RPATH_DIR})"
        ),
    )
    parser.add_argument(
        "-s",
        "--system-prefix",
        action="append",
        metavar="PREFIX",
        help=(
            "prefix of libraries left untouched (repeatable, default: "
            f"{' '.join(DEFAULT_SYSTEM_PREFIXES)})"
        ),
    )
    parser.add_argument(
        "-b",
        "--backend",
        choices=BACKENDS,
        help=f"tool used to read and patch the binary (default: {BACKEND_OTOOL})",
    )
    parser.add_argument(
        "--sign",
        action="store_true",
        default=None,
        help="apply an ad-hoc signature after rewriting references",
    )
    parser.add_argument(
        "--config",
        metavar="FILE",
        help="path to a TOML configuration file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="show what would be done without doing it",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="enable verbose/debug logging",
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
    return parser


def _resolve_options(
    args: argparse.Namespace,
) -> tuple[str, list[str], str, bool]:
    """Merge command-line options, environment and config file.

    Returns:
        The rpath source directory, system prefixes, backend name and
        whether to codesign
    """
    config = load_config(Path(args.config) if args.config else None)

    rpath_dir = (
        args.rpath_dir
        or os.environ.get(ENV_RPATH_DIR)
        or get_config_value(config, "fix", "rpath_source_dir")
        or DEFAULT_RPATH_SOURCE_DIR
    )
    if not isinstance(rpath_dir, str):
        raise ConfigurationError("fix.rpath_source_dir must be a string")

    system_prefixes = args.system_prefix or get_config_value(
        config, "fix", "system_prefixes", list(DEFAULT_SYSTEM_PREFIXES)
    )
    if not isinstance(system_prefixes, list) or not all(
        isinstance(p, str) for p in system_prefixes
    ):
        raise ConfigurationError(
            "fix.system_prefixes must be a list of strings"
        )

    backend = (
        args.backend
        or os.environ.get(ENV_BACKEND)
        or get_config_value(config, "fix", "backend")
        or BACKEND_OTOOL
    )
    if not isinstance(backend, str):
        raise ConfigurationError("fix.backend must be a string")

    codesign = args.sign
    if codesign is None:
        codesign = get_config_value(config, "fix", "codesign", False)
    if not isinstance(codesign, bool):
        raise ConfigurationError("fix.codesign must be true or false")

    return rpath_dir, system_prefixes, backend, codesign


def main(argv: list[str] | None = None) -> None:
    """Command line interface for fixdylibs."""
    args = make_parser().parse_args(argv)
    setup_logging(args.verbose, not args.no_color)
    log = logging.getLogger("fixdylibs")

    try:
        rpath_dir, system_prefixes, backend, codesign = _resolve_options(args)
        fixer = DylibFixer(
            target=args.executable,
            system_prefixes=system_prefixes,
            rpath_source_dir=rpath_dir,
            toolchain=get_toolchain(backend),
            dry_run=args.dry_run,
            codesign=codesign,
        )
        references = fixer.process()
    except FixDylibsError as e:
        log.error(str(e))
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        log.info("Interrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        log.error("Unexpected error: %s", e)
        sys.exit(EXIT_FAILURE)

    bundled = [r for r in references if r.disposition != Disposition.SYSTEM]
    log.info("Fixed %s (%d bundled libraries)", args.executable, len(bundled))
    sys.exit(EXIT_SUCCESS)


if __name__ == "__main__":
    main()
