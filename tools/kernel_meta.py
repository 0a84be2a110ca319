# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""Kernel metadata block: codec, locator and layout checks.

The kernel binary carries a fixed-size metadata record right after its
entry stub:

  [+0x00]  magic          4 bytes  b"ONYX"
  [+0x04]  kip1_base      u64      offset of the KIP1 blob (carried through)
  [+0x0C]  loader_base    u64      offset of the loader in the final image
  [+0x14]  version        u32      major << 24 | minor << 16 | patch << 8
  [+0x18]  layout         10 x u32 section boundaries (see KernelLayout)

All multi-byte fields use the byte order configured for the target.
"""
import collections
import struct

KERNEL_MAGIC = b"ONYX"

# Metadata is expected right after a minimal entry stub.
MAX_META_OFFSET = 0x10

LITTLE = "little"
BIG = "big"

_ENDIAN_PREFIX = {LITTLE: "<", BIG: ">"}

# magic(4s), kip1_base(Q), loader_base(Q), version(I), layout(10I)
META_FMT = "4sQQI10I"

# Encoded size includes the magic. decode_meta() consumes exactly this many
# bytes and the assembler skips exactly this many when copying the kernel.
META_SIZE = struct.calcsize("<" + META_FMT)

U32_MAX = 0xFFFFFFFF
U64_MAX = 0xFFFFFFFFFFFFFFFF


class KernelImageError(Exception):
    """Recoverable failure while building a kernel image."""


class MalformedInput(KernelImageError):
    """The kernel binary does not carry a usable metadata block."""


class SuspiciousOffset(KernelImageError):
    """The metadata marker sits where no sane kernel would put it."""

    def __init__(self, offset):
        self.offset = offset
        if offset == 0:
            reason = "image must start with executable code"
        else:
            reason = f"expected within the first {MAX_META_OFFSET:#x} bytes"
        super().__init__(
            f"suspicious metadata offset {offset:#x} ({reason}); please confirm"
        )


class IncompleteBuild(KernelImageError):
    """The image was finished without a kernel or loader, or finished twice."""


class InvariantViolation(AssertionError):
    """The kernel's own memory layout is inconsistent.

    Not a KernelImageError; the tooling never catches it and the build
    aborts.
    """

    def __init__(self, field, value, limit):
        self.field = field
        self.value = value
        self.limit = limit
        super().__init__(f"kernel layout check failed: {field} ({value:#x} > {limit:#x})")


KernelLayout = collections.namedtuple("KernelLayout", [
    "text_start", "text_end",
    "rodata_start", "rodata_end",
    "data_start", "data_end",
    "bss_start", "bss_end",
    "kernel_end",
    "dynamic_start",
], defaults=(0,) * 10)

KernelMeta = collections.namedtuple("KernelMeta", ["kip1_base", "loader_base", "version", "layout"],
                                    defaults=(0, 0, 0, KernelLayout()))


def parse_endian(name: str) -> str:
    if name not in _ENDIAN_PREFIX:
        raise ValueError(f"expected `little` or `big` for platform endianness, got {name!r}")
    return name


def _fmt(endian):
    return _ENDIAN_PREFIX[parse_endian(endian)] + META_FMT


def pack_version(major: int, minor: int, patch: int) -> int:
    for part in (major, minor, patch):
        if not 0 <= part <= 0xFF:
            raise ValueError(f"version component out of range: {part}")
    return (major << 24) | (minor << 16) | (patch << 8)


def unpack_version(value: int):
    return (value >> 24) & 0xFF, (value >> 16) & 0xFF, (value >> 8) & 0xFF


def encode_meta(meta: KernelMeta, endian: str = LITTLE) -> bytes:
    """Serialize `meta` (magic included) into exactly META_SIZE bytes."""
    if len(meta.layout) != len(KernelLayout._fields):
        raise ValueError("layout must have exactly ten fields")
    for name, value, limit in (("kip1_base", meta.kip1_base, U64_MAX),
                               ("loader_base", meta.loader_base, U64_MAX),
                               ("version", meta.version, U32_MAX)):
        if not 0 <= value <= limit:
            raise ValueError(f"{name} out of range: {value}")
    for name, value in zip(KernelLayout._fields, meta.layout):
        if not 0 <= value <= U32_MAX:
            raise ValueError(f"layout.{name} out of range: {value}")

    return struct.pack(_fmt(endian), KERNEL_MAGIC, meta.kip1_base,
                       meta.loader_base, meta.version, *meta.layout)


def decode_meta(data, endian: str = LITTLE, offset: int = 0) -> KernelMeta:
    """Parse a metadata record (starting with its magic) at `offset`."""
    fmt = _fmt(endian)
    if len(data) - offset < META_SIZE:
        raise MalformedInput(
            f"metadata at {offset:#x} truncated: need {META_SIZE} bytes, "
            f"have {max(len(data) - offset, 0)}"
        )

    magic, kip1_base, loader_base, version, *layout = struct.unpack_from(fmt, data, offset)
    if magic != KERNEL_MAGIC:
        raise MalformedInput(f"bad metadata magic {magic!r} at {offset:#x}")

    return KernelMeta(kip1_base, loader_base, version, KernelLayout(*layout))


def locate_meta(kernel) -> int:
    """Find the metadata marker within the first MAX_META_OFFSET bytes.

    Only the small window right after the entry stub is searched; a marker
    outside it means the kernel was linked wrong.
    """
    offset = kernel.find(KERNEL_MAGIC, 0, MAX_META_OFFSET + len(KERNEL_MAGIC))
    if offset == -1:
        # Tell a misplaced block apart from a missing one.
        stray = kernel.find(KERNEL_MAGIC)
        if stray == -1:
            raise MalformedInput("Malformed kernel binary: metadata magic not found")
        raise SuspiciousOffset(stray)
    if offset == 0:
        raise SuspiciousOffset(offset)
    return offset


def validate_layout(kernel_len: int, meta: KernelMeta) -> None:
    """Check the kernel's section boundaries; raises InvariantViolation."""
    layout = meta.layout
    checks = (
        ("kernel_end", kernel_len, layout.kernel_end),
        ("text", layout.text_start, layout.text_end),
        ("rodata", layout.rodata_start, layout.rodata_end),
        ("data", layout.data_start, layout.data_end),
        ("bss", layout.bss_start, layout.bss_end),
    )
    for field, value, limit in checks:
        if value > limit:
            raise InvariantViolation(field, value, limit)


def describe_meta(meta: KernelMeta, offset=None):
    """Human-readable summary lines, indented like the other tools' output."""
    major, minor, patch = unpack_version(meta.version)
    lines = []
    if offset is not None:
        lines.append(f"  Metadata at offset {offset:#x} ({META_SIZE} bytes)")
    lines.append(f"  kip1_base:   {meta.kip1_base:#x}")
    lines.append(f"  loader_base: {meta.loader_base:#x}")
    lines.append(f"  version:     {major}.{minor}.{patch}")
    layout = meta.layout
    for name in ("text", "rodata", "data", "bss"):
        start = getattr(layout, name + "_start")
        end = getattr(layout, name + "_end")
        lines.append(f"  .{name:<7} {start:#010x} - {end:#010x} ({end - start} bytes)")
    lines.append(f"  kernel_end:    {layout.kernel_end:#010x}")
    lines.append(f"  dynamic_start: {layout.dynamic_start:#010x}")
    return lines
