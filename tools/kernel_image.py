#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""
kernel_image.py - Build the distributable Kernel Image

Image layout (offsets from the start of the file):
  [0 .. meta)              Kernel entry stub (verbatim)
  [meta .. meta+64)        Kernel metadata, re-encoded with loader_base/version
  [meta+64 .. kernel_len)  Rest of the kernel (verbatim)
  [.. loader_base)         Zero padding up to the next page boundary
  [loader_base .. )        Loader binary
  [.. page boundary)       Zero padding
  [last 4096 bytes]        Zero guard page

When uncompressed the image can be executed directly from its start after
loading it into memory. With compression enabled the whole image is
wrapped in a gzip stream.
"""

import argparse
import os
import sys
import tempfile
import zlib

from elf2bin import flatten_elf, is_elf
from image_config import ImageConfig, load_config, parse_version
from kernel_meta import (
    LITTLE, META_SIZE, IncompleteBuild, KernelImageError, MalformedInput, decode_meta,
    describe_meta, encode_meta, locate_meta, pack_version, parse_endian,
    validate_layout,
)

PAGE_SIZE = 0x1000

# gzip container around a raw deflate stream (zlib emits mtime 0, so the
# output is reproducible).
GZIP_WBITS = 16 + zlib.MAX_WBITS
COMPRESS_CHUNK = 64 * 1024


def align_up(value: int, alignment: int) -> int:
    if alignment <= 0 or alignment & (alignment - 1):
        raise ValueError(f"alignment must be a power of two, got {alignment}")
    return (value + alignment - 1) & ~(alignment - 1)


# =====================================================================
# Assembly
# =====================================================================

def assemble(kernel, meta_offset, meta, loader, version, endian=LITTLE) -> bytes:
    """Lay out kernel, re-encoded metadata and loader into one image."""
    if not kernel or not loader:
        raise IncompleteBuild("cannot build kernel image without Kernel or Loader")
    if meta_offset + META_SIZE > len(kernel):
        raise MalformedInput(f"metadata at {meta_offset:#x} runs past the end of the kernel")

    loader_start = align_up(len(kernel), PAGE_SIZE)
    loader_end = loader_start + len(loader)
    image_end = align_up(loader_end, PAGE_SIZE) + PAGE_SIZE

    meta = meta._replace(loader_base=loader_start, version=version)
    encoded = encode_meta(meta, endian)

    image = bytearray(image_end)
    image[:meta_offset] = kernel[:meta_offset]
    image[meta_offset:meta_offset + META_SIZE] = encoded
    image[meta_offset + META_SIZE:len(kernel)] = kernel[meta_offset + META_SIZE:]
    image[loader_start:loader_end] = loader

    return bytes(image)


# =====================================================================
# Compression and output
# =====================================================================

def finalize(image, compress: bool) -> bytes:
    """Optionally wrap the finished image in a gzip stream."""
    if not compress:
        return bytes(image)

    encoder = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, GZIP_WBITS)
    view = memoryview(image)
    chunks = []
    for pos in range(0, len(view), COMPRESS_CHUNK):
        chunks.append(encoder.compress(view[pos:pos + COMPRESS_CHUNK]))
    chunks.append(encoder.flush())
    return b"".join(chunks)


def write_image(path, data) -> None:
    """Write `data` to `path` through a temporary file in the same directory.

    The destination only ever holds a complete image; a failed write leaves
    it untouched.
    """
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".kimg-", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


# =====================================================================
# Builder
# =====================================================================

class KernelImage:
    """Single-use builder bundling kernel and loader into one image.

    Configure with the with_* methods, attach the kernel and the loader,
    then call finish(). Both binaries must be packed before finish(), and
    the builder cannot be used again afterwards.
    """

    def __init__(self):
        self.endian = LITTLE
        self.compress = False
        self.version = 0

        self.kernel = None
        self.kernel_meta = None  # (offset, KernelMeta)
        self.loader = None

        self.finished = False

    @property
    def state(self) -> str:
        if self.finished:
            return "finished"
        if self.loader is not None and self.kernel is not None:
            return "loader-attached"
        if self.kernel is not None:
            return "kernel-attached"
        return "empty"

    def _check_open(self):
        if self.finished:
            raise IncompleteBuild("kernel image already finished; create a new builder")

    def with_endian(self, endian: str):
        self._check_open()
        # The kernel metadata is decoded with this byte order when packed.
        if self.kernel is not None:
            raise IncompleteBuild("byte order must be configured before packing the kernel")
        self.endian = parse_endian(endian)
        return self

    def with_version(self, major: int, minor: int, patch: int):
        self._check_open()
        self.version = pack_version(major, minor, patch)
        return self

    def with_compression(self, enable: bool):
        self._check_open()
        self.compress = bool(enable)
        return self

    def pack_kernel(self, kernel: bytes):
        """Attach a raw kernel binary and check its metadata block."""
        self._check_open()
        kernel = bytes(kernel)

        meta_offset = locate_meta(kernel)
        meta = decode_meta(kernel, self.endian, meta_offset)
        validate_layout(len(kernel), meta)

        self.kernel = kernel
        self.kernel_meta = (meta_offset, meta)
        return self

    def pack_kernel_file(self, path):
        with open(path, "rb") as f:
            return self.pack_kernel(f.read())

    def pack_loader(self, loader: bytes):
        self._check_open()
        self.loader = bytes(loader)
        return self

    def pack_loader_file(self, path):
        with open(path, "rb") as f:
            return self.pack_loader(f.read())

    def finish(self) -> bytes:
        """Build the image and return the bytes to store (compressed if enabled)."""
        self._check_open()
        if self.kernel is None or not self.loader:
            raise IncompleteBuild("cannot build kernel image without Kernel or Loader")

        meta_offset, meta = self.kernel_meta
        image = assemble(self.kernel, meta_offset, meta, self.loader,
                         self.version, self.endian)
        self.finished = True
        return finalize(image, self.compress)


# =====================================================================
# Command line
# =====================================================================

def read_binary(path):
    """Read a kernel or loader, flattening it first if it is still an ELF."""
    with open(path, "rb") as f:
        data = f.read()
    if is_elf(data):
        flat = flatten_elf(data)
        print(f"  {path}: ELF flattened to {len(flat)} bytes")
        return flat
    return data


def inspect_image(path, endian):
    with open(path, "rb") as f:
        data = f.read()
    if data[:2] == b"\x1f\x8b":
        data = zlib.decompress(data, GZIP_WBITS)
        print(f"{path}: gzip image, {len(data)} bytes uncompressed")
    else:
        print(f"{path}: {len(data)} bytes")

    offset = locate_meta(data)
    meta = decode_meta(data, endian, offset)
    for line in describe_meta(meta, offset):
        print(line)


def build(args, config: ImageConfig):
    endian = args.endian or config.endian
    version = args.version or config.version
    compress = config.compress if args.compress is None else args.compress

    print(f"Kernel:  {args.kernel}")
    kernel = read_binary(args.kernel)
    print(f"Loader:  {args.loader}")
    loader = read_binary(args.loader)

    image = (KernelImage()
             .with_endian(endian)
             .with_version(*version)
             .with_compression(compress)
             .pack_kernel(kernel)
             .pack_loader(loader))

    meta_offset, meta = image.kernel_meta
    loader_start = align_up(len(kernel), PAGE_SIZE)
    print(f"  Kernel:  {len(kernel)} bytes, metadata at offset {meta_offset:#x}")
    print(f"  Loader:  {len(loader)} bytes at offset {loader_start:#x}")
    print(f"  Version: {'.'.join(str(v) for v in version)} ({endian} endian)")

    data = image.finish()
    write_image(args.output, data)

    kind = "gzip-compressed " if compress else ""
    print(f"\nKernel image created: {args.output} ({kind}{len(data)} bytes)")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Create a distributable Kernel Image")
    parser.add_argument("--kernel", default=None, help="Path to the kernel binary (raw or ELF)")
    parser.add_argument("--loader", default=None, help="Path to the loader binary (raw or ELF)")
    parser.add_argument("--output", default=None, help="Output image path")
    parser.add_argument("--config", default=None, help="Build configuration file (TOML)")
    parser.add_argument("--endian", choices=("little", "big"), default=None,
                        help="Byte order of the target (default: from config, else little)")
    parser.add_argument("--version", type=parse_version, default=None,
                        help="Release version MAJOR.MINOR.PATCH")
    parser.add_argument("--compress", dest="compress", action="store_true", default=None,
                        help="Compress the image with gzip")
    parser.add_argument("--no-compress", dest="compress", action="store_false",
                        help="Store the image uncompressed")
    parser.add_argument("--inspect", default=None, metavar="IMAGE",
                        help="Print the metadata of a kernel binary or image and exit")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config) if args.config else ImageConfig()
        if args.inspect:
            inspect_image(args.inspect, args.endian or config.endian)
            return
        if not args.kernel or not args.loader or not args.output:
            print("ERROR: --kernel, --loader, and --output are required", file=sys.stderr)
            sys.exit(1)
        build(args, config)
    except (KernelImageError, ValueError, OSError, zlib.error) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
