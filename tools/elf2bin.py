#!/usr/bin/env python3
# Copyright (c) 2024-2026 Christian Moeller
# Email: c.moeller.ffo@gmail.com, brianmayclone@googlemail.com
#
# This project is open source and community-driven.
# Contributions are welcome! See README.md for details.
#
# SPDX-License-Identifier: MIT

"""Flatten a linked kernel or loader ELF into a raw binary.

Copies the file content of every PT_LOAD segment into one contiguous
buffer starting at the lowest virtual address, the same output
`objcopy -O binary` produces. Trailing .bss is not stored; the metadata
block's kernel_end records where the kernel really ends.
"""
import struct
import sys

ELF_MAGIC = b"\x7fELF"
EI_CLASS = 4
EI_DATA = 5
ELFCLASS32 = 1
ELFCLASS64 = 2
ELFDATA2LSB = 1
ELFDATA2MSB = 2
PT_LOAD = 1


def is_elf(data) -> bool:
    return data[:4] == ELF_MAGIC


def parse_elf_segments(data: bytes):
    """Parse ELF PT_LOAD segments.

    Returns a list of (p_vaddr, p_offset, p_filesz, p_memsz, p_flags),
    sorted by address. Handles ELF32/ELF64 in either byte order.
    """
    if not is_elf(data):
        raise ValueError("not an ELF file")
    if len(data) <= EI_DATA:
        raise ValueError("truncated ELF header")

    ei_class = data[EI_CLASS]
    ei_data = data[EI_DATA]
    if ei_data == ELFDATA2LSB:
        bo = "<"
    elif ei_data == ELFDATA2MSB:
        bo = ">"
    else:
        raise ValueError(f"unknown ELF data encoding {ei_data}")

    if ei_class == ELFCLASS64:
        ehdr_size, phdr_size = 64, 56
    elif ei_class == ELFCLASS32:
        ehdr_size, phdr_size = 52, 32
    else:
        raise ValueError(f"unknown ELF class {ei_class}")

    if len(data) < ehdr_size:
        raise ValueError(f"truncated ELF header ({len(data)} bytes, need {ehdr_size})")

    if ei_class == ELFCLASS64:
        e_phoff = struct.unpack_from(bo + "Q", data, 32)[0]
        e_phentsize, e_phnum = struct.unpack_from(bo + "HH", data, 54)
    else:
        e_phoff = struct.unpack_from(bo + "I", data, 28)[0]
        e_phentsize, e_phnum = struct.unpack_from(bo + "HH", data, 42)

    if e_phnum and e_phentsize < phdr_size:
        raise ValueError(f"program header entry size {e_phentsize} too small (need {phdr_size})")

    segments = []
    for i in range(e_phnum):
        off = e_phoff + i * e_phentsize
        if off + e_phentsize > len(data):
            raise ValueError(f"program header {i} lies outside the file")
        if ei_class == ELFCLASS64:
            # ELF64 Phdr: p_type(4), p_flags(4), p_offset(8), p_vaddr(8),
            #             p_paddr(8), p_filesz(8), p_memsz(8), p_align(8)
            p_type, p_flags = struct.unpack_from(bo + "II", data, off)
            p_offset, p_vaddr, p_paddr, p_filesz, p_memsz = struct.unpack_from(
                bo + "QQQQQ", data, off + 8
            )
        else:
            # ELF32 Phdr: p_type(4), p_offset(4), p_vaddr(4), p_paddr(4),
            #             p_filesz(4), p_memsz(4), p_flags(4), p_align(4)
            p_type, p_offset, p_vaddr, p_paddr, p_filesz, p_memsz, p_flags = (
                struct.unpack_from(bo + "IIIIIII", data, off)
            )
        if p_type == PT_LOAD:
            segments.append((p_vaddr, p_offset, p_filesz, p_memsz, p_flags))

    if not segments:
        raise ValueError("no PT_LOAD segments found")

    segments.sort(key=lambda s: s[0])
    return segments


def flatten_elf(data: bytes) -> bytes:
    # Segments without file content (pure .bss) take no room in the output.
    segments = [s for s in parse_elf_segments(data) if s[2] > 0]
    if not segments:
        raise ValueError("no PT_LOAD segment carries file content")

    base = segments[0][0]
    end = max(s[0] + s[2] for s in segments)

    flat = bytearray(end - base)
    for vaddr, offset, filesz, memsz, flags in segments:
        if offset + filesz > len(data):
            raise ValueError(f"segment at {vaddr:#x} extends past end of file")
        dest = vaddr - base
        flat[dest : dest + filesz] = data[offset : offset + filesz]

    return bytes(flat)


def elf2bin(elf_path: str, bin_path: str) -> None:
    with open(elf_path, "rb") as f:
        data = f.read()

    flat = flatten_elf(data)

    with open(bin_path, "wb") as f:
        f.write(flat)

    print(f"  {elf_path} -> {bin_path} ({len(flat)} bytes)")


def main():
    if len(sys.argv) != 3:
        print(f"Usage: {sys.argv[0]} <input.elf> <output.bin>", file=sys.stderr)
        sys.exit(1)
    try:
        elf2bin(sys.argv[1], sys.argv[2])
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
