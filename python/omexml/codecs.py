# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Reversible byte transforms used for the payloads of ``BinData`` elements.

Every codec is a stateless pair of ``compress`` and ``decompress`` methods
that map `bytes` to `bytes` under a `CodecOptions` value.  Base64 is always
the outermost transform; the algorithm named by a block's ``Compression``
attribute is applied inside it.
"""

from __future__ import annotations

__all__ = (
    "Base64Codec",
    "Bzip2Codec",
    "Codec",
    "CodecOptions",
    "CompressionAlgorithm",
    "CompressionOptions",
    "IdentityCodec",
    "Jpeg2000Codec",
    "JpegCodec",
    "ZlibCodec",
)

import base64
import binascii
import bz2
import dataclasses
import enum
import io
import math
import zlib
from abc import ABC, abstractmethod
from logging import getLogger
from typing import IO, ClassVar

import numpy as np
import PIL.Image

from ._common import CorruptPlaneError, UnsupportedPixelTypeError
from ._dtypes import PixelType

_LOG = getLogger(__name__)

# Extra decoded bytes allowed beyond the nominal plane size when bounding a
# base64 span, to leave room for codec headers and incompressible data.
_SPAN_SLACK = 1 << 16

_READ_SIZE = 1 << 16

_BZIP2_MAGIC = b"BZ"


@dataclasses.dataclass(frozen=True)
class CodecOptions:
    """Per-call configuration for a `Codec`."""

    width: int = 0
    """Width of the plane in pixels."""

    height: int = 0
    """Height of the plane in pixels."""

    bits_per_sample: int = 8
    """Number of bits in each sample."""

    channels: int = 1
    """Number of samples per pixel held in the buffer."""

    little_endian: bool = False
    """Byte order of multi-byte samples."""

    interleaved: bool = False
    """Whether multi-channel samples are interleaved (``RGBRGB...``) rather
    than planar (``RR..GG..BB..``).
    """

    signed: bool = False
    """Whether samples are signed."""

    max_bytes: int | None = None
    """Upper bound on the number of decoded bytes, usually the nominal plane
    size.  `None` means unbounded.
    """

    quality: int = 90
    """Quality (1-100) used by lossy JPEG compression."""

    lossless: bool = True
    """Whether JPEG 2000 compression uses the reversible transform."""


class Codec(ABC):
    """Interface for a reversible byte transform."""

    @abstractmethod
    def compress(self, data: bytes, options: CodecOptions) -> bytes:
        """Compress raw bytes.

        Parameters
        ----------
        data
            Raw bytes.
        options
            Geometry and tuning of the data.

        Returns
        -------
        compressed
            Encoded bytes.
        """
        raise NotImplementedError()

    @abstractmethod
    def decompress(self, data: bytes, options: CodecOptions) -> bytes:
        """Reverse `compress`.

        Parameters
        ----------
        data
            Encoded bytes.
        options
            Geometry of the expected result.

        Returns
        -------
        raw
            Decoded bytes.

        Raises
        ------
        CorruptPlaneError
            Raised if ``data`` cannot be decoded.
        """
        raise NotImplementedError()


class IdentityCodec(Codec):
    """A codec that leaves bytes unchanged."""

    def compress(self, data: bytes, options: CodecOptions) -> bytes:
        return data

    def decompress(self, data: bytes, options: CodecOptions) -> bytes:
        return data


class Base64Codec(Codec):
    """The base64 text encoding wrapped around every ``BinData`` payload."""

    def compress(self, data: bytes, options: CodecOptions) -> bytes:
        return base64.b64encode(data)

    def decompress(self, data: bytes, options: CodecOptions) -> bytes:
        try:
            return base64.b64decode(b"".join(data.split()), validate=True)
        except binascii.Error as err:
            raise CorruptPlaneError(f"Invalid base64 payload: {err}.") from err

    def decompress_stream(self, stream: IO[bytes], options: CodecOptions) -> bytes:
        """Decode the base64 text that starts at the current position of a
        stream.

        Reading stops at the first ``<`` (the start of the closing tag), at
        the end of the stream, or once the span is long enough to hold
        ``options.max_bytes`` (plus some slack for codec overhead), whichever
        comes first.

        Parameters
        ----------
        stream
            Binary stream positioned at the first payload byte.
        options
            Options whose ``max_bytes`` bounds the read.

        Returns
        -------
        decoded
            Decoded bytes; empty if the element has no content.
        """
        limit = self.encoded_limit(options.max_bytes)
        chunks: list[bytes] = []
        total = 0
        while chunk := stream.read(_READ_SIZE):
            end = chunk.find(b"<")
            if end >= 0:
                chunk = chunk[:end]
            chunk = b"".join(chunk.split())
            chunks.append(chunk)
            total += len(chunk)
            if end >= 0 or (limit is not None and total >= limit):
                break
        encoded = b"".join(chunks)
        if limit is not None and len(encoded) > limit:
            _LOG.debug("Truncating base64 span of %d bytes to %d.", len(encoded), limit)
            encoded = encoded[:limit]
        return self.decompress(encoded, options)

    @staticmethod
    def encoded_limit(max_bytes: int | None) -> int | None:
        """Return the number of base64 characters read for a plane whose
        decoded size is at most ``max_bytes``.
        """
        if max_bytes is None:
            return None
        return 4 * math.ceil((2 * max_bytes + _SPAN_SLACK) / 3)


class ZlibCodec(Codec):
    """Deflate compression with a zlib header."""

    def compress(self, data: bytes, options: CodecOptions) -> bytes:
        return zlib.compress(data)

    def decompress(self, data: bytes, options: CodecOptions) -> bytes:
        decompressor = zlib.decompressobj()
        try:
            if options.max_bytes is not None:
                return decompressor.decompress(data, options.max_bytes)
            return decompressor.decompress(data) + decompressor.flush()
        except zlib.error as err:
            raise CorruptPlaneError(f"Invalid zlib payload: {err}.") from err


class Bzip2Codec(Codec):
    """Block-sorting (bzip2) compression.

    Stored payloads start with a two-byte header (the ``BZ`` stream magic)
    that is stripped before decompression, so data from writers that replace
    or omit it can still be read.
    """

    def compress(self, data: bytes, options: CodecOptions) -> bytes:
        return bz2.compress(data)

    def decompress(self, data: bytes, options: CodecOptions) -> bytes:
        if len(data) < len(_BZIP2_MAGIC):
            raise CorruptPlaneError(f"bzip2 payload of {len(data)} bytes is too short.")
        decompressor = bz2.BZ2Decompressor()
        max_length = options.max_bytes if options.max_bytes is not None else -1
        try:
            return decompressor.decompress(_BZIP2_MAGIC + data[len(_BZIP2_MAGIC) :], max_length=max_length)
        except OSError as err:
            raise CorruptPlaneError(f"Invalid bzip2 payload: {err}.") from err


class _PillowCodec(Codec):
    """Base class for image codecs implemented with Pillow."""

    format_name: ClassVar[str]

    def compress(self, data: bytes, options: CodecOptions) -> bytes:
        if options.bits_per_sample != 8:
            raise UnsupportedPixelTypeError(
                f"{self.format_name} compression supports only 8-bit samples, "
                f"not {options.bits_per_sample}-bit."
            )
        if options.channels not in (1, 3):
            raise UnsupportedPixelTypeError(
                f"{self.format_name} compression supports 1 or 3 channels, not {options.channels}."
            )
        array = np.frombuffer(data, dtype=np.uint8, count=options.width * options.height * options.channels)
        if options.channels == 1:
            array = array.reshape(options.height, options.width)
        elif options.interleaved:
            array = array.reshape(options.height, options.width, options.channels)
        else:
            array = array.reshape(options.channels, options.height, options.width).transpose(1, 2, 0)
        image = PIL.Image.fromarray(np.ascontiguousarray(array))
        with io.BytesIO() as buffer:
            self._save(image, buffer, options)
            return buffer.getvalue()

    def decompress(self, data: bytes, options: CodecOptions) -> bytes:
        try:
            with PIL.Image.open(io.BytesIO(data)) as image:
                array = np.array(image)
        except (OSError, SyntaxError) as err:
            raise CorruptPlaneError(f"Invalid {self.format_name} payload: {err}.") from err
        if array.dtype.itemsize > 1:
            array = array.astype(array.dtype.newbyteorder("<" if options.little_endian else ">"))
        if array.ndim == 3 and not options.interleaved:
            array = array.transpose(2, 0, 1)
        return np.ascontiguousarray(array).tobytes()

    @abstractmethod
    def _save(self, image: PIL.Image.Image, buffer: IO[bytes], options: CodecOptions) -> None:
        raise NotImplementedError()


class JpegCodec(_PillowCodec):
    """Baseline (lossy) JPEG compression of 8-bit planes."""

    format_name = "JPEG"

    def _save(self, image: PIL.Image.Image, buffer: IO[bytes], options: CodecOptions) -> None:
        image.save(buffer, format="JPEG", quality=options.quality)


class Jpeg2000Codec(_PillowCodec):
    """JPEG 2000 codestream compression of 8-bit planes."""

    format_name = "JPEG 2000"

    def _save(self, image: PIL.Image.Image, buffer: IO[bytes], options: CodecOptions) -> None:
        # OpenJPEG rejects more resolution levels than the smallest
        # dimension can be halved into.
        num_resolutions = max(1, min(6, int(math.log2(min(image.size))) + 1))
        image.save(
            buffer,
            format="JPEG2000",
            irreversible=not options.lossless,
            num_resolutions=num_resolutions,
            no_jp2=True,
        )


class CompressionAlgorithm(enum.StrEnum):
    """Compression algorithms that may be named by the ``Compression``
    attribute of a ``BinData`` element.
    """

    UNCOMPRESSED = "Uncompressed"
    ZLIB = "zlib"
    BZIP2 = "bzip2"
    JPEG = "JPEG"
    J2K = "J2K"

    @classmethod
    def from_attribute(cls, value: str | None) -> CompressionAlgorithm:
        """Interpret the value of a ``Compression`` attribute.

        Absent, empty, ``none`` and unrecognized values all mean the payload
        holds raw pixel bytes.
        """
        if not value:
            return cls.UNCOMPRESSED
        try:
            return cls(value)
        except ValueError:
            if value != "none":
                _LOG.debug("Unrecognized compression %r; treating payload as uncompressed.", value)
            return cls.UNCOMPRESSED

    @property
    def codec(self) -> Codec:
        """The codec that implements this algorithm (not including the
        outer base64 layer).
        """
        match self:
            case self.UNCOMPRESSED:
                return IdentityCodec()
            case self.ZLIB:
                return ZlibCodec()
            case self.BZIP2:
                return Bzip2Codec()
            case self.JPEG:
                return JpegCodec()
            case self.J2K:
                return Jpeg2000Codec()
        raise AssertionError("Invalid enum value.")

    def supported_pixel_types(self) -> frozenset[PixelType]:
        """Return the pixel types this algorithm can write."""
        match self:
            case self.JPEG | self.J2K:
                return frozenset({PixelType.int8, PixelType.uint8})
        return frozenset(PixelType)


@dataclasses.dataclass(frozen=True)
class CompressionOptions:
    """Configuration options for compressing planes on write."""

    algorithm: CompressionAlgorithm = CompressionAlgorithm.UNCOMPRESSED
    """Compression algorithm to use."""

    quality: int = 90
    """Quality (1-100) for lossy JPEG compression."""

    lossless: bool = True
    """Whether JPEG 2000 compression should be reversible."""

    DEFAULT: ClassVar[CompressionOptions]
    """Default compression options (no compression)."""

    LOSSLESS: ClassVar[CompressionOptions]
    """Default lossless compression options (``zlib``)."""


CompressionOptions.DEFAULT = CompressionOptions()
CompressionOptions.LOSSLESS = CompressionOptions(algorithm=CompressionAlgorithm.ZLIB)
