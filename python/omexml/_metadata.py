# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""The narrow interface through which the codec consumes the OME metadata
model, and its default implementation on top of the ``ome-types`` package.
"""

from __future__ import annotations

__all__ = (
    "MetadataService",
    "OmeTypesMetadataService",
    "PlaneGeometry",
)

import xml.etree.ElementTree as ET
from typing import Any, Protocol

import numpy as np
import pydantic

from ._common import UnavailableDependencyError, local_name
from ._dtypes import PixelType, is_signed
from ._geom import Box
from .codecs import CodecOptions, CompressionOptions


class PlaneGeometry(pydantic.BaseModel):
    """Pixel layout of the planes of one image."""

    size_x: pydantic.PositiveInt
    size_y: pydantic.PositiveInt
    size_z: pydantic.PositiveInt = 1
    size_c: pydantic.PositiveInt = 1
    size_t: pydantic.PositiveInt = 1
    pixel_type: PixelType
    little_endian: bool = False
    interleaved: bool = False
    samples_per_pixel: pydantic.PositiveInt = 1

    model_config = pydantic.ConfigDict(frozen=True)

    @property
    def bytes_per_pixel(self) -> int:
        """Number of bytes in one sample."""
        return self.pixel_type.bytes_per_pixel

    @property
    def plane_size(self) -> int:
        """Number of bytes in one single-channel plane."""
        return self.size_x * self.size_y * self.bytes_per_pixel

    @property
    def plane_count(self) -> int:
        """Number of binary blocks stored for this image."""
        return self.size_z * self.size_c * self.size_t

    @property
    def write_plane_count(self) -> int:
        """Number of planes a writer accepts for this image; each holds
        `samples_per_pixel` channels.
        """
        return self.size_z * self.size_t * max(1, self.size_c // self.samples_per_pixel)

    @property
    def dtype(self) -> np.dtype:
        """Numpy data type of a sample, with explicit byte order."""
        return self.pixel_type.to_dtype(self.little_endian)

    @property
    def bbox(self) -> Box:
        """Bounding box of a full plane, ordered ``(y, x)``."""
        return Box.from_shape((self.size_y, self.size_x))

    def make_codec_options(
        self, compression: CompressionOptions = CompressionOptions.DEFAULT
    ) -> CodecOptions:
        """Build the options passed to a codec for one plane of this image."""
        return CodecOptions(
            width=self.size_x,
            height=self.size_y,
            bits_per_sample=self.bytes_per_pixel * 8,
            little_endian=self.little_endian,
            interleaved=self.interleaved,
            signed=is_signed(self.pixel_type),
            max_bytes=self.plane_size,
            quality=compression.quality,
            lossless=compression.lossless,
        )


class MetadataService(Protocol):
    """Interface to an OME metadata model.

    The model objects themselves are opaque to this package.
    """

    def populate_from_document(self, xml: str) -> Any:
        """Build a metadata model from OME-XML text that has no binary
        payloads.
        """
        ...

    def serialize_to_document(self, model: Any) -> str:
        """Serialize a metadata model to OME-XML text."""
        ...

    def image_count(self, model: Any) -> int:
        """Return the number of images described by a model."""
        ...

    def plane_geometry(self, model: Any, image_index: int) -> PlaneGeometry:
        """Return the pixel layout of one image."""
        ...

    def plate_count(self, model: Any) -> int:
        """Return the number of plates (screen/plate/well data) described by
        a model.
        """
        ...


class OmeTypesMetadataService:
    """A `MetadataService` backed by the ``ome-types`` package.

    Raises
    ------
    UnavailableDependencyError
        Raised on construction if ``ome-types`` cannot be imported.
    """

    def __init__(self) -> None:
        try:
            import ome_types
        except ImportError as err:
            raise UnavailableDependencyError(
                "The 'ome-types' package is required to interpret OME-XML metadata."
            ) from err
        self._ome_types = ome_types

    def populate_from_document(self, xml: str) -> Any:
        # BinData elements may name compressions outside the OME schema
        # enumeration (e.g. JPEG), which ome-types rejects; the codec keeps
        # track of them on its own.
        return self._ome_types.from_xml(_strip_bin_data(xml), validate=False)

    def serialize_to_document(self, model: Any) -> str:
        return self._ome_types.to_xml(model)

    def image_count(self, model: Any) -> int:
        return len(model.images)

    def plane_geometry(self, model: Any, image_index: int) -> PlaneGeometry:
        pixels = model.images[image_index].pixels
        samples_per_pixel = 1
        if pixels.channels and pixels.channels[0].samples_per_pixel:
            samples_per_pixel = pixels.channels[0].samples_per_pixel
        big_endian = pixels.big_endian
        if big_endian is None and pixels.bin_data_blocks:
            big_endian = pixels.bin_data_blocks[0].big_endian
        return PlaneGeometry(
            size_x=pixels.size_x,
            size_y=pixels.size_y,
            size_z=pixels.size_z,
            size_c=pixels.size_c,
            size_t=pixels.size_t,
            pixel_type=PixelType(getattr(pixels.type, "value", pixels.type)),
            # OME has historically defaulted to big-endian storage.
            little_endian=big_endian is False,
            interleaved=bool(pixels.interleaved),
            samples_per_pixel=samples_per_pixel,
        )

    def plate_count(self, model: Any) -> int:
        return len(model.plates)


def _strip_bin_data(xml: str) -> str:
    """Remove ``BinData`` elements from OME-XML text, copying their byte
    order onto the enclosing ``Pixels`` element when it has none.
    """
    root = ET.fromstring(xml)
    for pixels in [element for element in root.iter() if _tag_name(element) == "Pixels"]:
        for child in list(pixels):
            if _tag_name(child) == "BinData":
                if "BigEndian" not in pixels.attrib and "BigEndian" in child.attrib:
                    pixels.set("BigEndian", child.attrib["BigEndian"])
                pixels.remove(child)
    return ET.tostring(root, encoding="unicode")


def _tag_name(element: ET.Element) -> str:
    # ElementTree spells namespaced tags as '{uri}name'.
    return local_name(element.tag.rpartition("}")[2])
