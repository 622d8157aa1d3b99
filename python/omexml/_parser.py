# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = (
    "ParsedDocument",
    "format_start_tag",
    "is_ome_xml",
    "parse_document",
    "resolve_offsets",
    "scan_document",
)

import dataclasses
import xml.parsers.expat
from collections.abc import Mapping, Sequence
from logging import getLogger
from typing import IO
from xml.sax.saxutils import escape

from ._common import (
    BinaryBlockRecord,
    MalformedDocumentError,
    NoPixelDataFoundError,
    OffsetResolutionError,
    local_name,
)

_LOG = getLogger(__name__)

_READ_SIZE = 1 << 16

_SIGNATURE_SIZE = 64

_ATTRIBUTE_ENTITIES = {'"': "&quot;", "\n": "&#10;", "\r": "&#13;", "\t": "&#9;"}


@dataclasses.dataclass(frozen=True)
class ParsedDocument:
    """The result of scanning an OME-XML document."""

    metadata_xml: str
    """The document with all ``BinData`` content removed and their
    ``Length`` attributes set to zero.
    """

    blocks: tuple[BinaryBlockRecord, ...]
    """One record per ``BinData`` element, in document order."""

    offsets: tuple[int, ...]
    """Absolute byte offset of the first payload byte of each block."""


def is_ome_xml(stream: IO[bytes]) -> bool:
    """Test whether a stream looks like an OME-XML document.

    The first 64 bytes must start with an XML declaration and contain the
    ``OME`` root tag.  The stream position is restored afterwards.
    """
    start = stream.tell()
    head = stream.read(_SIGNATURE_SIZE)
    stream.seek(start)
    return head.startswith(b"<?xml") and b"<OME" in head


def parse_document(stream: IO[bytes]) -> tuple[str, list[BinaryBlockRecord]]:
    """Parse an OME-XML document, recording the position of each
    ``BinData`` payload without retaining it.

    Parameters
    ----------
    stream
        Binary stream positioned at the start of the document.  It is read
        to the end.

    Returns
    -------
    metadata_xml
        The document without binary payloads.  Each ``BinData`` element is
        kept (empty, with ``Length="0"``) so the result remains structurally
        valid.
    blocks
        Line/column positions and attributes of each ``BinData`` payload, in
        document order.  Line numbers are relative to the initial stream
        position.

    Raises
    ------
    MalformedDocumentError
        Raised if the document is not well-formed.
    NoPixelDataFoundError
        Raised if the document holds no ``BinData`` elements.
    """
    parser = xml.parsers.expat.ParserCreate()
    handler = _OffsetTrackingHandler(parser)
    parser.StartElementHandler = handler.start_element
    parser.EndElementHandler = handler.end_element
    parser.CharacterDataHandler = handler.character_data
    try:
        parser.ParseFile(stream)
    except xml.parsers.expat.ExpatError as err:
        raise MalformedDocumentError(f"Malformed OME-XML: {err}.") from err
    if not handler.blocks:
        raise NoPixelDataFoundError("Pixel data not found: the document has no BinData elements.")
    return handler.metadata_xml, handler.blocks


def resolve_offsets(stream: IO[bytes], blocks: Sequence[BinaryBlockRecord]) -> tuple[int, ...]:
    """Convert the line/column positions recorded by `parse_document` into
    absolute byte offsets.

    Parameters
    ----------
    stream
        Binary stream positioned where parsing started; that position is
        line 1.
    blocks
        Records to resolve, in document order.

    Returns
    -------
    offsets
        Absolute byte offset of the first payload byte of each block.

    Raises
    ------
    OffsetResolutionError
        Raised if the stream ends before a recorded position, or the records
        are not in document order.
    """
    line_number = 1
    line_start = stream.tell()
    previous = (1, 1)
    offsets: list[int] = []
    for index, block in enumerate(blocks):
        if (block.line, block.column) < previous:
            raise OffsetResolutionError(
                f"Block {index} at line {block.line}, column {block.column} precedes the block before it."
            )
        previous = (block.line, block.column)
        while line_number < block.line:
            stream.seek(line_start)
            size, complete = _measure_line(stream)
            if not complete:
                raise OffsetResolutionError(
                    f"Stream ended at line {line_number}, before line {block.line} of block {index}."
                )
            line_start += size
            line_number += 1
        stream.seek(line_start)
        prefix = stream.read(4 * (block.column - 1))
        # Columns count characters; measure the UTF-8 encoding of the ones
        # that precede the payload.
        chars = prefix.decode("utf-8", "surrogateescape")[: block.column - 1]
        if len(chars) < block.column - 1 or "\n" in chars or "\r" in chars:
            raise OffsetResolutionError(
                f"Line {block.line} is shorter than column {block.column} of block {index}."
            )
        offsets.append(line_start + len(chars.encode("utf-8", "surrogateescape")))
    stream.seek(line_start)
    return tuple(offsets)


def scan_document(stream: IO[bytes]) -> ParsedDocument:
    """Parse a document and resolve the byte offsets of its binary blocks.

    Parameters
    ----------
    stream
        Readable, seekable binary stream positioned at the start of the
        document.

    Returns
    -------
    document
        Metadata text, block records and byte offsets.
    """
    start = stream.tell()
    metadata_xml, blocks = parse_document(stream)
    stream.seek(start)
    offsets = resolve_offsets(stream, blocks)
    _LOG.info("Found %d binary blocks.", len(blocks))
    return ParsedDocument(metadata_xml=metadata_xml, blocks=tuple(blocks), offsets=offsets)


def _measure_line(stream: IO[bytes]) -> tuple[int, bool]:
    """Return the size in bytes of the line starting at the current position
    (including its line break) and whether a line break was found, without
    holding the whole line in memory.

    As in XML, a line ends at LF, at CR LF, or at a CR not followed by LF.
    """
    size = 0
    # Set when the previous chunk ended with CR; its LF may start this one.
    after_cr = False
    while chunk := stream.read(_READ_SIZE):
        if after_cr:
            return size + (1 if chunk.startswith(b"\n") else 0), True
        end = min((i for i in (chunk.find(b"\n"), chunk.find(b"\r")) if i >= 0), default=-1)
        if end < 0:
            size += len(chunk)
        elif chunk[end : end + 1] == b"\n":
            return size + end + 1, True
        elif end + 1 < len(chunk):
            return size + end + (2 if chunk[end + 1 : end + 2] == b"\n" else 1), True
        else:
            size += len(chunk)
            after_cr = True
    return size, after_cr


def _normalize_boolean(value: str) -> str:
    # Some writers abbreviate booleans to 't' and 'f'.
    lowered = value.lower()
    if lowered not in ("true", "false"):
        if lowered.startswith("t"):
            return "true"
        elif lowered.startswith("f"):
            return "false"
    return lowered


def _parse_boolean(value: str | None) -> bool | None:
    if value is None:
        return None
    match _normalize_boolean(value):
        case "true":
            return True
        case "false":
            return False
    return None


def format_start_tag(name: str, attributes: Mapping[str, str]) -> str:
    """Format an XML start tag, escaping attribute values."""
    parts = [f"<{name}"]
    for key, value in attributes.items():
        parts.append(f' {key}="{escape(value, _ATTRIBUTE_ENTITIES)}"')
    parts.append(">")
    return "".join(parts)


class _OffsetTrackingHandler:
    """Expat callbacks that copy the document minus its binary payloads and
    record where each payload begins.
    """

    def __init__(self, parser: xml.parsers.expat.XMLParserType):
        self._parser = parser
        self._parts: list[str] = []
        self._in_bin_data = False
        # Attributes of a BinData element whose payload position has not been
        # seen yet; the position is that of the next event.
        self._pending: tuple[str, bool | None] | None = None
        self.blocks: list[BinaryBlockRecord] = []

    @property
    def metadata_xml(self) -> str:
        return "".join(self._parts)

    def start_element(self, name: str, attributes: dict[str, str]) -> None:
        is_bin_data = local_name(name) == "BinData"
        copied = {}
        for key, value in attributes.items():
            if key == "BigEndian":
                value = _normalize_boolean(value)
            elif key == "Length" and is_bin_data:
                value = "0"
            copied[key] = value
        if is_bin_data:
            self._in_bin_data = True
            self._pending = (attributes.get("Compression", ""), _parse_boolean(attributes.get("BigEndian")))
        self._parts.append(format_start_tag(name, copied))

    def end_element(self, name: str) -> None:
        self._record_pending()
        if local_name(name) == "BinData":
            self._in_bin_data = False
        self._parts.append(f"</{name}>")

    def character_data(self, data: str) -> None:
        self._record_pending()
        if not self._in_bin_data:
            self._parts.append(escape(data))

    def _record_pending(self) -> None:
        if self._pending is None:
            return
        compression, big_endian = self._pending
        self.blocks.append(
            BinaryBlockRecord(
                line=self._parser.CurrentLineNumber,
                column=self._parser.CurrentColumnNumber + 1,
                compression=compression,
                big_endian=big_endian,
            )
        )
        self._pending = None
