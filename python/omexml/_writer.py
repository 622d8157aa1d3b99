# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = (
    "OmeXmlWriter",
    "WriterState",
    "split_fragments",
)

import enum
import xml.parsers.expat
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from logging import getLogger
from typing import IO, Any, Self
from xml.sax.saxutils import escape

import numpy as np

from ._common import (
    BINARY_FILE_NAMESPACE,
    MalformedDocumentError,
    UnsupportedOperationError,
    UnsupportedPixelTypeError,
    local_name,
)
from ._dtypes import PixelType
from ._geom import Box
from ._metadata import MetadataService, OmeTypesMetadataService, PlaneGeometry
from ._parser import format_start_tag
from .codecs import Base64Codec, CompressionAlgorithm, CompressionOptions

_LOG = getLogger(__name__)

XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>\n'

# Pixels content that describes how pixel data is stored elsewhere; the
# writer replaces all of it with its own BinData elements.
_SKIPPED_ELEMENTS = frozenset({"BinData", "MetadataOnly", "TiffData"})


def split_fragments(text: str) -> list[str]:
    """Split serialized OME-XML into the fragments written around each
    image's pixel data.

    Parameters
    ----------
    text
        Serialized metadata.  Any ``BinData``, ``MetadataOnly`` and
        ``TiffData`` elements are dropped.

    Returns
    -------
    fragments
        One fragment per ``Pixels`` element, each ending where that image's
        ``BinData`` elements belong (before its first ``Plane`` child, or
        before ``</Pixels>``), followed by the document tail.  The first
        fragment starts with an XML declaration.

    Raises
    ------
    MalformedDocumentError
        Raised if ``text`` is not well-formed.
    """
    parser = xml.parsers.expat.ParserCreate()
    handler = _FragmentHandler()
    parser.StartElementHandler = handler.start_element
    parser.EndElementHandler = handler.end_element
    parser.CharacterDataHandler = handler.character_data
    try:
        parser.Parse(text, True)
    except xml.parsers.expat.ExpatError as err:
        raise MalformedDocumentError(f"Serialized metadata is not well-formed: {err}.") from err
    return handler.finish()


class _FragmentHandler:
    """Expat callbacks that re-serialize metadata, splitting it at each
    image's binary insertion point.
    """

    def __init__(self) -> None:
        self._fragments: list[str] = []
        self._parts: list[str] = [XML_DECLARATION]
        self._depth = 0
        self._skip_depth = 0
        self._pixels_depth: int | None = None
        self._split = False

    def start_element(self, name: str, attributes: dict[str, str]) -> None:
        self._depth += 1
        if self._skip_depth:
            self._skip_depth += 1
            return
        local = local_name(name)
        if local in _SKIPPED_ELEMENTS:
            self._skip_depth = 1
            return
        if local == "Plane" and self._pixels_depth is not None and self._depth == self._pixels_depth + 1:
            self._split_here()
        elif local == "Pixels":
            self._pixels_depth = self._depth
            self._split = False
        self._parts.append(format_start_tag(name, attributes))

    def end_element(self, name: str) -> None:
        self._depth -= 1
        if self._skip_depth:
            self._skip_depth -= 1
            return
        if self._pixels_depth is not None and self._depth + 1 == self._pixels_depth:
            self._split_here()
            self._pixels_depth = None
        self._parts.append(f"</{name}>")

    def character_data(self, data: str) -> None:
        if not self._skip_depth:
            self._parts.append(escape(data))

    def finish(self) -> list[str]:
        return self._fragments + ["".join(self._parts)]

    def _split_here(self) -> None:
        if not self._split:
            self._fragments.append("".join(self._parts))
            self._parts = []
            self._split = True


class WriterState(enum.Enum):
    """States of an `OmeXmlWriter`."""

    AWAITING_HEADER = enum.auto()
    """Nothing has been written yet."""

    EMITTING_FRAGMENT = enum.auto()
    """At least one image's header fragment has been written."""

    CLOSED = enum.auto()
    """The document tail has been written."""


class OmeXmlWriter:
    """A forward-only writer that streams an OME-XML document, interleaving
    metadata fragments with encoded planes.

    Instances are usually constructed via the `open` context manager.

    Parameters
    ----------
    stream
        Writable binary stream.
    fragments
        Metadata fragments from `split_fragments`.
    geometries
        Pixel layout of each image, aligned with ``fragments``.
    compression, optional
        How to compress each plane.

    Raises
    ------
    MalformedDocumentError
        Raised if the number of fragments does not match the number of
        images.
    UnsupportedPixelTypeError
        Raised if the compression algorithm cannot represent an image's
        pixel type.
    """

    def __init__(
        self,
        stream: IO[bytes],
        fragments: Sequence[str],
        geometries: Sequence[PlaneGeometry],
        compression: CompressionOptions = CompressionOptions.DEFAULT,
    ):
        if len(fragments) != len(geometries) + 1:
            raise MalformedDocumentError(
                f"Metadata split into {len(fragments)} fragments, but {len(geometries)} images "
                f"need {len(geometries) + 1}."
            )
        self.check_compression(geometries, compression)
        self._stream = stream
        self._fragments = list(fragments)
        self._geometries = list(geometries)
        self._compression = compression
        self._state = WriterState.AWAITING_HEADER
        self._next_fragment = 0
        self._planes_written = [0] * len(geometries)

    @classmethod
    @contextmanager
    def open(
        cls,
        filename: str,
        metadata: Any,
        *,
        compression: CompressionOptions = CompressionOptions.DEFAULT,
        service: MetadataService | None = None,
    ) -> Iterator[Self]:
        """Create a writer for a new file.

        Parameters
        ----------
        filename
            Name of the file to write to.  Must not already exist.
        metadata
            Metadata model describing the images to write.
        compression, optional
            How to compress each plane.
        service, optional
            Interface to the metadata model.  Defaults to
            `OmeTypesMetadataService`.

        Returns
        -------
        context
            A context manager that returns an `OmeXmlWriter` when entered.
            The document tail is written when the context exits without an
            exception.
        """
        if service is None:
            service = OmeTypesMetadataService()
        fragments = split_fragments(service.serialize_to_document(metadata))
        geometries = [service.plane_geometry(metadata, i) for i in range(service.image_count(metadata))]
        cls.check_compression(geometries, compression)
        with open(filename, "xb") as stream:
            writer = cls(stream, fragments, geometries, compression)
            yield writer
            writer.close()

    @staticmethod
    def check_compression(geometries: Iterable[PlaneGeometry], compression: CompressionOptions) -> None:
        """Raise `UnsupportedPixelTypeError` if ``compression`` cannot write
        any of the given images.
        """
        supported = compression.algorithm.supported_pixel_types()
        for image_index, geometry in enumerate(geometries):
            if geometry.pixel_type not in supported:
                raise UnsupportedPixelTypeError(
                    f"{compression.algorithm.value} compression cannot write {geometry.pixel_type.value} "
                    f"pixels (image {image_index}); supported types are {sorted(supported)}."
                )

    @property
    def state(self) -> WriterState:
        """Where the writer is in the document."""
        return self._state

    def write_plane(
        self,
        image_index: int,
        plane_index: int,
        data: bytes | np.ndarray,
        *,
        bbox: Box | None = None,
    ) -> None:
        """Write one full plane.

        Planes must be written in order: images in increasing index, and the
        planes of each image in increasing index.

        Parameters
        ----------
        image_index
            Index of the image.
        plane_index
            Index of the plane within the image.
        data
            Pixel values.  Bytes must already be in the image's byte order.
            Arrays must have the image's pixel type and are converted to its
            byte order.  Multi-sample planes are laid out interleaved or
            planar according to the image's geometry.
        bbox, optional
            Region being written.  Anything other than the full plane is
            rejected.

        Raises
        ------
        UnsupportedOperationError
            Raised if ``bbox`` is not the full plane.  Nothing is written.
        ValueError
            Raised if ``data`` has the wrong size or, for arrays, the wrong
            pixel type.  Nothing is written.
        """
        if self._state is WriterState.CLOSED:
            raise RuntimeError("Cannot write a plane after the writer has been closed.")
        if not 0 <= image_index < len(self._geometries):
            raise IndexError(f"Image index {image_index} is out of range for {len(self._geometries)} images.")
        geometry = self._geometries[image_index]
        if bbox is not None and bbox != geometry.bbox:
            raise UnsupportedOperationError(
                f"Writing the partial region {bbox} of a {geometry.bbox} plane is not supported; "
                "OME-XML planes can only be written whole."
            )
        if image_index < self._next_fragment - 1:
            raise ValueError(f"Image {image_index} cannot be written after image {self._next_fragment - 1}.")
        if plane_index != self._planes_written[image_index]:
            raise ValueError(
                f"Expected plane {self._planes_written[image_index]} of image {image_index}, "
                f"got {plane_index}."
            )
        if plane_index >= geometry.write_plane_count:
            raise IndexError(
                f"Plane index {plane_index} is out of range for image {image_index} "
                f"with {geometry.write_plane_count} planes."
            )
        encoded = [self._encode_block(channel, geometry) for channel in self._split_channels(data, geometry)]
        self._emit_headers(image_index)
        for block in encoded:
            self._stream.write(block)
        self._planes_written[image_index] += 1

    def close(self) -> None:
        """Write any remaining header fragments and the document tail.

        Calling this more than once has no further effect.
        """
        if self._state is WriterState.CLOSED:
            return
        self._emit_headers(len(self._geometries) - 1)
        for image_index, geometry in enumerate(self._geometries):
            if self._planes_written[image_index] < geometry.write_plane_count:
                _LOG.debug(
                    "Image %d was closed with %d of %d planes written.",
                    image_index,
                    self._planes_written[image_index],
                    geometry.write_plane_count,
                )
        self._stream.write(self._fragments[-1].encode())
        self._state = WriterState.CLOSED

    def _emit_headers(self, image_index: int) -> None:
        while self._next_fragment <= image_index:
            self._stream.write(self._fragments[self._next_fragment].encode())
            self._next_fragment += 1
            self._state = WriterState.EMITTING_FRAGMENT

    @staticmethod
    def _split_channels(data: bytes | np.ndarray, geometry: PlaneGeometry) -> list[bytes]:
        if isinstance(data, np.ndarray):
            try:
                pixel_type = PixelType.from_numpy(data.dtype)
            except ValueError:
                pixel_type = None
            if pixel_type is not geometry.pixel_type:
                raise ValueError(
                    f"Array of dtype {data.dtype} cannot be written to a {geometry.pixel_type} image."
                )
            buffer = np.asarray(data, dtype=geometry.dtype).tobytes()
        else:
            buffer = bytes(data)
        n_channels = geometry.samples_per_pixel
        if len(buffer) != geometry.plane_size * n_channels:
            raise ValueError(
                f"Plane holds {len(buffer)} bytes; expected {geometry.plane_size * n_channels} "
                f"for {n_channels} channel(s)."
            )
        if n_channels == 1:
            return [buffer]
        if geometry.interleaved:
            samples = np.frombuffer(buffer, dtype=np.uint8).reshape(-1, n_channels, geometry.bytes_per_pixel)
            return [samples[:, c, :].tobytes() for c in range(n_channels)]
        size = geometry.plane_size
        return [buffer[c * size : (c + 1) * size] for c in range(n_channels)]

    def _encode_block(self, channel: bytes, geometry: PlaneGeometry) -> bytes:
        algorithm = self._compression.algorithm
        options = geometry.make_codec_options(self._compression)
        encoded = Base64Codec().compress(algorithm.codec.compress(channel, options), options)
        attributes = {
            "xmlns": BINARY_FILE_NAMESPACE,
            # The uncompressed size; readers check it against the plane
            # geometry.
            "Length": str(geometry.plane_size),
            "BigEndian": "false" if geometry.little_endian else "true",
        }
        if algorithm is not CompressionAlgorithm.UNCOMPRESSED:
            attributes["Compression"] = algorithm.value
        return b"\n" + format_start_tag("BinData", attributes).encode() + encoded + b"</BinData>"
