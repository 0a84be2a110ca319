"""
Tests for reading the image build configuration.

Usage: pytest tools/test_image_config.py
"""

import pytest

from image_config import ImageConfig, load_config, parse_version


def write(tmp_path, text):
    path = tmp_path / "dist.toml"
    path.write_text(text)
    return path


def test_defaults(tmp_path):
    config = load_config(write(tmp_path, ""))
    assert config == ImageConfig("little", False, (0, 0, 0))
    assert ImageConfig() == config


def test_full_config(tmp_path):
    config = load_config(write(tmp_path, """
target = "targets/aarch64-onyx.json"
endian = "big"
board = "rpi4"

[image]
compress = true
version = "1.20.3"

[kernel]
linker-script = "kernel.ld"

[qemu]
name = "qemu-system-aarch64"
extra-args = []
"""))
    assert config.endian == "big"
    assert config.compress is True
    assert config.version == (1, 20, 3)


@pytest.mark.parametrize("text", [
    'endian = "middle"\n',
    '[image]\ncompress = "yes"\n',
    '[image]\nversion = "1.2"\n',
    '[image]\nversion = "1.2.300"\n',
    'image = 3\n',
    'endian = \n',
])
def test_bad_config(tmp_path, text):
    with pytest.raises(ValueError):
        load_config(write(tmp_path, text))


def test_missing_file(tmp_path):
    with pytest.raises(OSError):
        load_config(tmp_path / "nope.toml")


def test_parse_version():
    assert parse_version("0.1.0") == (0, 1, 0)
    assert parse_version(" 255.255.255 ") == (255, 255, 255)
    for bad in ("1", "1.2.3.4", "a.b.c", "-1.0.0", "1.2.256"):
        with pytest.raises(ValueError):
            parse_version(bad)
