#!/usr/bin/env python3
"""machoscan.py

Provides functional tools to read and rewrite the dylib load commands
of a Mach-O binary without the Xcode command-line tools

- get_dylib_references() returns the install names a binary loads
- change_dylib_reference() rewrites one install name in place

Both require macholib. Universal binaries are handled one
architecture slice at a time.
"""
import os
import sys
from pathlib import Path
from typing import Union

from macholib.MachO import MachO


Pathlike = Union[Path, str]


def get_dylib_references(target: Pathlike) -> list[str]:
    """Return the dylib install names referenced by a binary.

    Only relocatable load commands are read (LC_LOAD_DYLIB and its weak,
    upward, re-export and prebound variants); the binary's own
    LC_ID_DYLIB is skipped. A name repeated across architecture slices
    is returned once.

    :param      target:  The Mach-O binary
    :type       target:  str
    :returns:   Install names in load command order
    :raises     ValueError: if the file is not a Mach-O binary
    """
    macho = MachO(os.fspath(target))
    references: list[str] = []
    for header in macho.headers:
        for _idx, _name, filename in header.walkRelocatables():
            if filename not in references:
                references.append(filename)
    return references


def change_dylib_reference(target: Pathlike, old: str, new: str) -> bool:
    """Replace the install name `old` with `new` in every slice of a binary.

    Nothing is written unless every modified header still fits in the
    padding before the first section.

    :param      target:  The Mach-O binary
    :type       target:  str
    :param      old:     The install name to replace
    :type       old:     str
    :param      new:     The replacement install name
    :type       new:     str
    :returns:   True if the binary was modified
    :raises     ValueError: if the file is not a Mach-O binary or the new
                name does not fit
    """
    target = os.fspath(target)
    macho = MachO(target)
    encoded = new.encode(sys.getfilesystemencoding())

    changed = False
    for header in macho.headers:
        indices = [
            idx
            for idx, _name, filename in header.walkRelocatables()
            if filename == old
        ]
        for idx in indices:
            header.rewriteDataForCommand(idx, encoded)
            changed = True
        if header.total_size + header.sizediff > header.low_offset:
            raise ValueError(
                f"No room for '{new}' in the load commands of {target}"
            )

    if not changed:
        return False

    with open(target, "rb+") as fopen:
        macho.write(fopen)
    return True
