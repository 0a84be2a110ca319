# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""Build configuration for the Kernel Image.

Reads the image-related keys of a distribution config file:

    endian = "little"        # or "big", defaults to little

    [image]
    compress = true          # gzip the image, defaults to false
    version = "1.2.3"        # defaults to 0.0.0

Other tables (target, board, kernel/loader linker scripts, qemu) belong to
the compile and run steps and are ignored here.
"""
import collections
import tomllib

from kernel_meta import LITTLE, parse_endian, pack_version

ImageConfig = collections.namedtuple("ImageConfig", ["endian", "compress", "version"],
                                     defaults=(LITTLE, False, (0, 0, 0)))


def parse_version(text: str):
    """Parse "MAJOR.MINOR.PATCH" into a tuple of three ints, one byte each."""
    parts = str(text).strip().split(".")
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        raise ValueError(f"version must look like MAJOR.MINOR.PATCH, got {text!r}")
    version = tuple(int(p) for p in parts)
    pack_version(*version)  # range check
    return version


def load_config(path) -> ImageConfig:
    with open(path, "rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"{path}: {e}") from e

    image = raw.get("image", {})
    if not isinstance(image, dict):
        raise ValueError(f"{path}: [image] must be a table")

    compress = image.get("compress", False)
    if not isinstance(compress, bool):
        raise ValueError(f"{path}: image.compress must be true or false")

    return ImageConfig(
        endian=parse_endian(raw.get("endian", LITTLE)),
        compress=compress,
        version=parse_version(image.get("version", "0.0.0")),
    )
