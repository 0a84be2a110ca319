"""
Tests for the kernel metadata codec, locator and layout checks.

Usage: pytest tools/test_kernel_meta.py
"""

import struct

import pytest

from kernel_meta import (
    BIG, KERNEL_MAGIC, LITTLE, META_SIZE, InvariantViolation, KernelImageError,
    KernelLayout, KernelMeta, MalformedInput, SuspiciousOffset, decode_meta,
    describe_meta, encode_meta, locate_meta, pack_version, parse_endian,
    unpack_version, validate_layout,
)


def sample_meta():
    layout = KernelLayout(
        text_start=0x0, text_end=0x800,
        rodata_start=0x800, rodata_end=0xA00,
        data_start=0xA00, data_end=0xC00,
        bss_start=0xC00, bss_end=0x2000,
        kernel_end=0x2000,
        dynamic_start=0xB00,
    )
    return KernelMeta(kip1_base=0x123456789A, loader_base=0, version=0, layout=layout)


# ── Codec ───────────────────────────────────

@pytest.mark.parametrize("endian", [LITTLE, BIG])
def test_round_trip(endian):
    meta = sample_meta()
    assert decode_meta(encode_meta(meta, endian), endian) == meta


@pytest.mark.parametrize("endian", [LITTLE, BIG])
def test_round_trip_extremes(endian):
    layout = KernelLayout(*([0xFFFFFFFF] * 10))
    meta = KernelMeta(0xFFFFFFFFFFFFFFFF, 0xFFFFFFFFFFFFFFFF, 0xFFFFFFFF, layout)
    assert decode_meta(encode_meta(meta, endian), endian) == meta


def test_encoded_size_is_constant():
    assert META_SIZE == 64
    small = KernelMeta()
    large = KernelMeta(2**64 - 1, 2**64 - 1, 2**32 - 1, KernelLayout(*([2**32 - 1] * 10)))
    for meta in (small, sample_meta(), large):
        for endian in (LITTLE, BIG):
            assert len(encode_meta(meta, endian)) == META_SIZE


def test_encoding_starts_with_magic_and_honours_byte_order():
    meta = sample_meta()._replace(loader_base=0x1000, version=0x01020300)
    le = encode_meta(meta, LITTLE)
    be = encode_meta(meta, BIG)
    assert le[:4] == be[:4] == KERNEL_MAGIC
    assert le[4:12] == struct.pack("<Q", 0x123456789A)
    assert be[4:12] == struct.pack(">Q", 0x123456789A)
    assert le[12:20] == struct.pack("<Q", 0x1000)
    assert be[20:24] == bytes([1, 2, 3, 0])
    assert le[20:24] == bytes([0, 3, 2, 1])
    assert le[24:28] == struct.pack("<I", 0)
    assert be[-4:] == struct.pack(">I", 0xB00)


def test_wrong_byte_order_does_not_round_trip():
    meta = sample_meta()
    assert decode_meta(encode_meta(meta, LITTLE), BIG) != meta


def test_encode_rejects_out_of_range_fields():
    with pytest.raises(ValueError):
        encode_meta(sample_meta()._replace(version=2**32))
    with pytest.raises(ValueError):
        encode_meta(sample_meta()._replace(kip1_base=-1))
    with pytest.raises(ValueError):
        encode_meta(sample_meta()._replace(layout=sample_meta().layout._replace(bss_end=2**32)))


def test_decode_at_offset():
    blob = b"\x90" * 8 + encode_meta(sample_meta()) + b"tail"
    assert decode_meta(blob, LITTLE, 8) == sample_meta()


def test_decode_truncated():
    data = encode_meta(sample_meta())[:-1]
    with pytest.raises(MalformedInput):
        decode_meta(data)


def test_decode_bad_magic():
    data = b"XXXX" + encode_meta(sample_meta())[4:]
    with pytest.raises(MalformedInput):
        decode_meta(data)


def test_parse_endian():
    assert parse_endian("little") == LITTLE
    assert parse_endian("big") == BIG
    with pytest.raises(ValueError):
        parse_endian("middle")


def test_version_packing():
    assert pack_version(1, 2, 3) == 0x01020300
    assert unpack_version(0x01020300) == (1, 2, 3)
    with pytest.raises(ValueError):
        pack_version(256, 0, 0)


# ── Locator ─────────────────────────────────

def kernel_with_marker(offset, size=256):
    kernel = bytearray(b"\xcc" * size)
    kernel[offset:offset + 4] = KERNEL_MAGIC
    return bytes(kernel)


@pytest.mark.parametrize("offset", range(1, 17))
def test_locate_accepts_window(offset):
    assert locate_meta(kernel_with_marker(offset)) == offset


def test_locate_rejects_offset_zero():
    with pytest.raises(SuspiciousOffset) as exc:
        locate_meta(kernel_with_marker(0))
    assert exc.value.offset == 0


@pytest.mark.parametrize("offset", [17, 0x20, 200])
def test_locate_rejects_far_offset(offset):
    with pytest.raises(SuspiciousOffset) as exc:
        locate_meta(kernel_with_marker(offset))
    assert exc.value.offset == offset


def test_locate_missing_marker():
    with pytest.raises(MalformedInput):
        locate_meta(b"\xcc" * 256)
    with pytest.raises(MalformedInput):
        locate_meta(b"")


def test_locate_uses_first_occurrence():
    kernel = bytearray(kernel_with_marker(4))
    kernel[12:16] = KERNEL_MAGIC
    assert locate_meta(bytes(kernel)) == 4

    kernel = bytearray(kernel_with_marker(0))
    kernel[8:12] = KERNEL_MAGIC
    with pytest.raises(SuspiciousOffset):
        locate_meta(bytes(kernel))


def test_locate_errors_are_recoverable():
    assert issubclass(MalformedInput, KernelImageError)
    assert issubclass(SuspiciousOffset, KernelImageError)
    assert not issubclass(InvariantViolation, KernelImageError)


# ── Layout checks ───────────────────────────

def test_validate_accepts_consistent_layout():
    validate_layout(0x1800, sample_meta())
    validate_layout(0x2000, sample_meta())


def test_validate_kernel_end():
    with pytest.raises(InvariantViolation) as exc:
        validate_layout(0x2001, sample_meta())
    assert exc.value.field == "kernel_end"


@pytest.mark.parametrize("section", ["text", "rodata", "data", "bss"])
def test_validate_section_bounds(section):
    layout = sample_meta().layout._replace(**{
        section + "_start": 0x100,
        section + "_end": 0x0FF,
    })
    meta = sample_meta()._replace(layout=layout)
    with pytest.raises(InvariantViolation) as exc:
        validate_layout(0x1000, meta)
    assert exc.value.field == section


def test_validate_checks_kernel_end_first():
    layout = sample_meta().layout._replace(text_start=5, text_end=1)
    with pytest.raises(InvariantViolation) as exc:
        validate_layout(0x4000, sample_meta()._replace(layout=layout))
    assert exc.value.field == "kernel_end"


def test_describe_meta():
    lines = describe_meta(sample_meta()._replace(version=pack_version(0, 3, 1)), 8)
    assert lines[0] == "  Metadata at offset 0x8 (64 bytes)"
    assert "  version:     0.3.1" in lines


def test_record_defaults():
    assert KernelLayout() == KernelLayout(*([0] * 10))
    assert KernelMeta() == KernelMeta(0, 0, 0, KernelLayout())
    assert KernelMeta(version=5).layout == KernelLayout()
