# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = (
    "BINARY_FILE_NAMESPACE",
    "FORMAT_NAME",
    "SUFFIXES",
    "BinaryBlockRecord",
    "CorruptPlaneError",
    "FormatError",
    "MalformedDocumentError",
    "NoPixelDataFoundError",
    "OffsetResolutionError",
    "UnavailableDependencyError",
    "UnsupportedOperationError",
    "UnsupportedPixelTypeError",
    "local_name",
)

import dataclasses

FORMAT_NAME = "OME-XML"
"""Human-readable name of the file format."""

SUFFIXES = ("ome",)
"""File name suffixes (without the leading dot) used by the format."""

BINARY_FILE_NAMESPACE = "http://www.openmicroscopy.org/Schemas/BinaryFile/2016-06"
"""XML namespace of the ``BinData`` elements this package writes."""


class FormatError(RuntimeError):
    """Base class for errors raised when an OME-XML document cannot be read
    or written.
    """


class MalformedDocumentError(FormatError):
    """The document is not well-formed XML, or is missing structure the
    codec depends on.
    """


class NoPixelDataFoundError(MalformedDocumentError):
    """The document was parsed successfully but holds no ``BinData``
    elements.
    """


class OffsetResolutionError(FormatError):
    """A recorded block position could not be mapped to a byte offset,
    usually because the stream is shorter than the parse pass reported.
    """


class CorruptPlaneError(FormatError):
    """A decoded plane does not have the size its geometry requires."""


class UnsupportedPixelTypeError(FormatError):
    """A codec was asked to write pixels with a type it cannot represent."""


class UnsupportedOperationError(FormatError):
    """The requested operation is not supported by this container layout
    (e.g. writing a partial tile).
    """


class UnavailableDependencyError(ImportError):
    """An optional package needed to interpret OME metadata is not
    installed.
    """


@dataclasses.dataclass(frozen=True)
class BinaryBlockRecord:
    """Position and attributes of one ``BinData`` element, as recorded by
    the parse pass.
    """

    line: int
    """1-based line number of the first payload character."""

    column: int
    """1-based column (in characters, not bytes) of the first payload
    character.
    """

    compression: str = ""
    """Value of the ``Compression`` attribute, or an empty string when the
    attribute is absent.
    """

    big_endian: bool | None = None
    """Value of the ``BigEndian`` attribute, if present."""


def local_name(qname: str) -> str:
    """Strip any namespace prefix from a qualified XML name."""
    return qname.rpartition(":")[2]
