# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = (
    "OmeXmlReader",
    "Plane",
    "PlaneLocator",
    "read_plane_bytes",
)

import io
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from logging import getLogger
from typing import IO, Any, Self, final

import fsspec
import numpy as np

from lsst.resources import ResourcePath, ResourcePathExpression

from ._common import BinaryBlockRecord, CorruptPlaneError, MalformedDocumentError
from ._geom import Box
from ._metadata import MetadataService, OmeTypesMetadataService, PlaneGeometry
from ._parser import ParsedDocument, scan_document
from .codecs import Base64Codec, CodecOptions, CompressionAlgorithm

_LOG = getLogger(__name__)


@final
class Plane:
    """A rectangular region of one plane read from an OME-XML document.

    Parameters
    ----------
    array
        2-d array of pixel values.
    bbox
        Region of the full plane covered by ``array``, ordered ``(y, x)``.
    blank
        Whether the document stored no pixel data for this plane, in which
        case ``array`` is all zeros.
    """

    def __init__(self, array: np.ndarray, bbox: Box, blank: bool = False):
        if bbox.shape != array.shape:
            raise ValueError(f"Bounding box shape {bbox.shape} does not match array shape {array.shape}.")
        self._array = array
        self._bbox = bbox
        self._blank = blank

    @property
    def array(self) -> np.ndarray:
        """The pixel values."""
        return self._array

    @property
    def bbox(self) -> Box:
        """Region of the full plane covered by `array`."""
        return self._bbox

    @property
    def blank(self) -> bool:
        """Whether the plane had no stored pixel data."""
        return self._blank

    def __str__(self) -> str:
        return f"Plane({self.bbox!s}, {self.array.dtype.type.__name__}{', blank' if self.blank else ''})"

    def __repr__(self) -> str:
        return f"Plane(..., bbox={self.bbox!r}, dtype={self.array.dtype!r}, blank={self.blank})"


class PlaneLocator:
    """Map logical plane coordinates to the binary blocks of a document.

    Parameters
    ----------
    blocks
        Records for each ``BinData`` element, in document order.
    offsets
        Byte offset of each block's payload, aligned with ``blocks``.

    Notes
    -----
    Planes are assigned to blocks in document order, flattened across
    images.  Documents that store fewer blocks than their metadata implies
    are tolerated by reusing the last block for the missing planes; this is a
    compatibility leniency for malformed files, not a guarantee that the
    returned pixels belong to the requested plane.
    """

    def __init__(self, blocks: Sequence[BinaryBlockRecord], offsets: Sequence[int]):
        if len(blocks) != len(offsets):
            raise ValueError(f"Got {len(blocks)} block records but {len(offsets)} offsets.")
        if not blocks:
            raise ValueError("A plane locator needs at least one block.")
        self._blocks = tuple(blocks)
        self._offsets = tuple(offsets)

    @classmethod
    def from_document(cls, document: ParsedDocument) -> PlaneLocator:
        """Construct from the result of `scan_document`."""
        return cls(document.blocks, document.offsets)

    @property
    def blocks(self) -> tuple[BinaryBlockRecord, ...]:
        """Records for each binary block."""
        return self._blocks

    @property
    def offsets(self) -> tuple[int, ...]:
        """Byte offset of each binary block's payload."""
        return self._offsets

    def global_index(self, plane_counts: Sequence[int], image_index: int, plane_index: int) -> int:
        """Return the index of the block that holds a plane.

        Parameters
        ----------
        plane_counts
            Number of planes in each image.
        image_index
            Index of the image.
        plane_index
            Index of the plane within the image.

        Returns
        -------
        index
            Index into `blocks` and `offsets`, clamped to the last block.
        """
        index = sum(plane_counts[:image_index]) + plane_index
        if index >= len(self._offsets):
            _LOG.warning(
                "Plane %d of image %d maps to block %d, but there are only %d blocks; reusing the last one.",
                plane_index,
                image_index,
                index,
                len(self._offsets),
            )
            index = len(self._offsets) - 1
        return index

    def locate(
        self, plane_counts: Sequence[int], image_index: int, plane_index: int
    ) -> tuple[int, int, CompressionAlgorithm]:
        """Find the block that holds a plane.

        Returns
        -------
        index
            Global block index.
        offset
            Byte offset of the block's payload.
        algorithm
            Compression applied inside the block's base64 encoding.
        """
        index = self.global_index(plane_counts, image_index, plane_index)
        return (
            index,
            self._offsets[index],
            CompressionAlgorithm.from_attribute(self._blocks[index].compression),
        )


def read_plane_bytes(
    stream: IO[bytes], offset: int, algorithm: CompressionAlgorithm, options: CodecOptions
) -> bytes | None:
    """Decode the payload of one binary block.

    Parameters
    ----------
    stream
        Seekable binary stream holding the document.
    offset
        Byte offset of the first payload byte.
    algorithm
        Compression applied inside the base64 encoding.
    options
        Geometry of the plane; ``max_bytes`` bounds the read.

    Returns
    -------
    pixels
        Decoded bytes, or `None` if the block has no content.
    """
    stream.seek(offset)
    pixels = Base64Codec().decompress_stream(stream, options)
    if not pixels:
        return None
    return algorithm.codec.decompress(pixels, options)


class OmeXmlReader:
    """Random access to the planes of an OME-XML document.

    Parameters
    ----------
    stream
        Readable, seekable binary stream positioned at the start of the
        document.  The caller remains responsible for closing it.
    service, optional
        Interface to the metadata model.  Defaults to
        `OmeTypesMetadataService`.

    Raises
    ------
    UnavailableDependencyError
        Raised if no ``service`` is given and ``ome-types`` is not installed.
    MalformedDocumentError
        Raised if the document cannot be parsed or holds no pixel data.
    """

    def __init__(self, stream: IO[bytes], *, service: MetadataService | None = None):
        if service is None:
            service = OmeTypesMetadataService()
        self._service = service
        self._stream = stream
        self._document = scan_document(stream)
        self._locator = PlaneLocator.from_document(self._document)
        _LOG.info("Populating metadata.")
        self._metadata = service.populate_from_document(self._document.metadata_xml)
        if service.image_count(self._metadata) == 0:
            raise MalformedDocumentError("Document describes no images.")

    @classmethod
    @contextmanager
    def open(
        cls,
        path: ResourcePathExpression,
        *,
        page_size: int = 1 << 20,
        partial: bool = False,
        service: MetadataService | None = None,
    ) -> Iterator[Self]:
        """Open a reader for the given file.

        Parameters
        ----------
        path
            File to read; convertible to `lsst.resources.ResourcePath`.
        page_size
            Minimum number of bytes to read at at once when ``partial`` is
            `True`.
        partial
            Whether we will be reading only some of the planes, or if memory
            pressure forces us to read the file only a little at a time.  If
            `False` (default), the entire raw file may be read into memory up
            front.
        service, optional
            Interface to the metadata model.

        Returns
        -------
        `contextlib.AbstractContextManager` [`OmeXmlReader`]
            A context manager that returns an `OmeXmlReader` when entered.
        """
        path = ResourcePath(path)
        stream: IO[bytes]
        if not partial:
            stream = io.BytesIO(path.read())
            yield cls(stream, service=service)
        else:
            fs: fsspec.AbstractFileSystem
            fs, fp = path.to_fsspec()
            with fs.open(fp, block_size=page_size) as stream:
                yield cls(stream, service=service)

    @property
    def metadata(self) -> Any:
        """The metadata model, as built by the metadata service."""
        return self._metadata

    @property
    def metadata_xml(self) -> str:
        """The document text with binary payloads removed."""
        return self._document.metadata_xml

    @property
    def locator(self) -> PlaneLocator:
        """Mapping from plane coordinates to binary blocks."""
        return self._locator

    @property
    def image_count(self) -> int:
        """Number of images in the document."""
        return self._service.image_count(self._metadata)

    @property
    def is_spw(self) -> bool:
        """Whether the document describes screen/plate/well data."""
        return self._service.plate_count(self._metadata) > 0

    @property
    def plane_counts(self) -> list[int]:
        """Number of planes in each image.

        This is recomputed from the metadata on every access.
        """
        return [self.get_geometry(i).plane_count for i in range(self.image_count)]

    def get_geometry(self, image_index: int) -> PlaneGeometry:
        """Return the pixel layout of an image."""
        if not 0 <= image_index < self.image_count:
            raise IndexError(f"Image index {image_index} is out of range for {self.image_count} images.")
        return self._service.plane_geometry(self._metadata, image_index)

    def read_plane(self, image_index: int, plane_index: int, *, bbox: Box | None = None) -> Plane:
        """Read all or part of one plane.

        Parameters
        ----------
        image_index
            Index of the image.
        plane_index
            Index of the plane within the image.
        bbox, optional
            Region to read, ordered ``(y, x)`` in pixel coordinates of the
            full plane.  Defaults to the full plane.

        Returns
        -------
        plane
            The requested pixels.  If the document stores no data for the
            plane, a zero-filled `Plane` with ``blank=True`` is returned.

        Raises
        ------
        CorruptPlaneError
            Raised if the stored data does not decode to a full plane.
        """
        geometry = self.get_geometry(image_index)
        if not 0 <= plane_index < geometry.plane_count:
            raise IndexError(
                f"Plane index {plane_index} is out of range for image {image_index} "
                f"with {geometry.plane_count} planes."
            )
        full_bbox = geometry.bbox
        if bbox is None:
            bbox = full_bbox
        elif not full_bbox.contains(bbox):
            raise ValueError(f"Region {bbox} is not within plane bounds {full_bbox}.")
        index, offset, algorithm = self._locator.locate(self.plane_counts, image_index, plane_index)
        try:
            pixels = read_plane_bytes(self._stream, offset, algorithm, geometry.make_codec_options())
        except CorruptPlaneError as err:
            raise CorruptPlaneError(f"Block {index} at byte offset {offset}: {err}") from err
        if pixels is None:
            _LOG.debug("No pixel data for plane #%d of image %d.", plane_index, image_index)
            return Plane(np.zeros(bbox.shape, dtype=geometry.dtype), bbox=bbox, blank=True)
        if len(pixels) < geometry.plane_size:
            raise CorruptPlaneError(
                f"Block {index} at byte offset {offset} decoded to {len(pixels)} bytes; "
                f"expected {geometry.plane_size}."
            )
        array = np.frombuffer(pixels, dtype=geometry.dtype, count=geometry.size_x * geometry.size_y).reshape(
            geometry.size_y, geometry.size_x
        )
        return Plane(array[bbox.slice_within(full_bbox)].copy(), bbox=bbox)
