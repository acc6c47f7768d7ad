"""Decompression codecs for data members and Packages indices."""

import gzip
import io
import lzma
import zlib
from enum import StrEnum
from pathlib import PurePosixPath
from typing import BinaryIO

import zstandard

# exceptions a corrupt stream may raise while being decoded
DECODE_ERRORS = (OSError, EOFError, lzma.LZMAError, zlib.error, zstandard.ZstdError)


class UnsupportedCompression(ValueError):
    def __init__(self, filename: str):
        super().__init__(f"Unsupported compression for {filename}")
        self.filename = filename


class Codec(StrEnum):
    GZIP = "gzip"
    XZ = "xz"
    ZSTD = "zstd"

    @classmethod
    def from_filename(cls, filename: str) -> "Codec":
        """Pick the codec from a filename extension (``data.tar.xz`` -> XZ)."""
        suffix = PurePosixPath(filename).suffix.lower()
        codec = _SUFFIXES.get(suffix)
        if codec is None:
            raise UnsupportedCompression(filename)
        return codec

    def open_stream(self, fileobj: BinaryIO) -> BinaryIO:
        """Wrap a compressed stream in a decompressing reader."""
        match self:
            case Codec.GZIP:
                return gzip.GzipFile(fileobj=fileobj, mode="rb")
            case Codec.XZ:
                return lzma.LZMAFile(fileobj, mode="rb")
            case Codec.ZSTD:
                return zstandard.ZstdDecompressor().stream_reader(fileobj, closefd=False)
        raise UnsupportedCompression(self.value)

    def decompress(self, data: bytes) -> bytes:
        with self.open_stream(io.BytesIO(data)) as stream:
            return stream.read()


_SUFFIXES = {
    ".gz": Codec.GZIP,
    ".xz": Codec.XZ,
    ".zst": Codec.ZSTD,
    ".zstd": Codec.ZSTD,
}
