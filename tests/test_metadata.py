# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

import io
import os
import sys
import tempfile
import unittest
import warnings
import xml.etree.ElementTree as ET
from unittest import mock

import numpy as np
import pydantic

from omexml import (
    CompressionAlgorithm,
    CompressionOptions,
    OmeTypesMetadataService,
    OmeXmlReader,
    OmeXmlWriter,
    PixelType,
    PlaneGeometry,
    UnavailableDependencyError,
)
from omexml._metadata import _strip_bin_data
from omexml.tests import OME_NAMESPACE, assert_planes_equal, bin_data_element, make_planes

try:
    import ome_types
    from ome_types.model import OME, BinData, Channel, Image, Pixels, Plate
except ImportError:
    skip_all = True
else:
    skip_all = False


class PlaneGeometryTestCase(unittest.TestCase):
    """Tests for PlaneGeometry."""

    def test_sizes(self) -> None:
        geometry = PlaneGeometry(
            size_x=5, size_y=4, size_z=2, size_c=6, size_t=3, pixel_type=PixelType.int16, samples_per_pixel=3
        )
        self.assertEqual(geometry.bytes_per_pixel, 2)
        self.assertEqual(geometry.plane_size, 40)
        self.assertEqual(geometry.plane_count, 36)
        self.assertEqual(geometry.write_plane_count, 12)
        self.assertEqual(geometry.dtype, np.dtype(">i2"))
        self.assertEqual(geometry.bbox.shape, (4, 5))
        options = geometry.make_codec_options(CompressionOptions(CompressionAlgorithm.JPEG, quality=50))
        self.assertEqual(options.bits_per_sample, 16)
        self.assertTrue(options.signed)
        self.assertFalse(options.little_endian)
        self.assertEqual(options.max_bytes, 40)
        self.assertEqual(options.quality, 50)

    def test_validation(self) -> None:
        with self.assertRaises(pydantic.ValidationError):
            PlaneGeometry(size_x=0, size_y=4, pixel_type=PixelType.uint8)
        with self.assertRaises(pydantic.ValidationError):
            PlaneGeometry(size_x=2, size_y=4, pixel_type="complex")
        self.assertEqual(PlaneGeometry(size_x=1, size_y=1, pixel_type="bit").dtype, np.dtype(np.bool_))


class StripBinDataTestCase(unittest.TestCase):
    """Tests for removal of BinData before the metadata model is built."""

    def test_strip(self) -> None:
        xml = (
            f'<OME xmlns="{OME_NAMESPACE}"><Image ID="Image:0">'
            '<Pixels ID="Pixels:0" Type="uint8"><Channel ID="Channel:0:0"/>'
            '<BinData Length="0" BigEndian="false" Compression="JPEG"/><BinData Length="0"/></Pixels>'
            "</Image></OME>"
        )
        root = ET.fromstring(_strip_bin_data(xml))
        pixels = root.find(f".//{{{OME_NAMESPACE}}}Pixels")
        assert pixels is not None
        self.assertEqual(pixels.get("BigEndian"), "false")
        self.assertEqual([child.tag for child in pixels], [f"{{{OME_NAMESPACE}}}Channel"])


class UnavailableDependencyTestCase(unittest.TestCase):
    """Tests for behavior when ome-types is not installed."""

    def test_unavailable(self) -> None:
        with mock.patch.dict(sys.modules, {"ome_types": None}):
            with self.assertRaises(UnavailableDependencyError):
                OmeTypesMetadataService()
            with self.assertRaises(ImportError):
                OmeXmlReader(io.BytesIO(b"<OME/>"))


@unittest.skipIf(skip_all, "ome-types could not be imported.")
class OmeTypesMetadataServiceTestCase(unittest.TestCase):
    """Tests for reading and writing with metadata provided by ome-types."""

    def setUp(self) -> None:
        self.rng = np.random.default_rng(99)
        self.service = OmeTypesMetadataService()

    def make_ome(self, plates: int = 0) -> OME:
        return OME(
            images=[
                Image(
                    id="Image:0",
                    name="stack",
                    pixels=Pixels(
                        id="Pixels:0",
                        dimension_order="XYZCT",
                        type="uint16",
                        size_x=12,
                        size_y=10,
                        size_z=3,
                        size_c=1,
                        size_t=1,
                        big_endian=False,
                        channels=[Channel(id="Channel:0:0", samples_per_pixel=1)],
                    ),
                ),
                Image(
                    id="Image:1",
                    name="rgb",
                    pixels=Pixels(
                        id="Pixels:1",
                        dimension_order="XYCZT",
                        type="uint8",
                        size_x=16,
                        size_y=8,
                        size_z=1,
                        size_c=3,
                        size_t=1,
                        interleaved=True,
                        channels=[Channel(id="Channel:1:0", samples_per_pixel=3)],
                    ),
                ),
            ],
            plates=[Plate(id=f"Plate:{i}") for i in range(plates)],
        )

    def test_geometry(self) -> None:
        """Test extraction of pixel layouts from an ome-types model."""
        ome = self.make_ome()
        self.assertEqual(self.service.image_count(ome), 2)
        self.assertEqual(self.service.plate_count(ome), 0)
        self.assertEqual(self.service.plate_count(self.make_ome(plates=1)), 1)
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            stack = self.service.plane_geometry(ome, 0)
            rgb = self.service.plane_geometry(ome, 1)
        self.assertEqual(
            stack,
            PlaneGeometry(size_x=12, size_y=10, size_z=3, pixel_type=PixelType.uint16, little_endian=True),
        )
        self.assertEqual(rgb.samples_per_pixel, 3)
        self.assertTrue(rgb.interleaved)
        self.assertFalse(rgb.little_endian)
        self.assertEqual(rgb.write_plane_count, 1)

    def test_byte_order_from_blocks(self) -> None:
        """Test that Pixels without BigEndian take it from their first
        BinData.
        """
        ome = self.make_ome()
        pixels = ome.images[1].pixels
        pixels.bin_data_blocks = [BinData(value="", big_endian=False, length=0)]
        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            geometry = self.service.plane_geometry(ome, 1)
        self.assertTrue(geometry.little_endian)

    def test_round_trip(self) -> None:
        """Test writing and reading a file described by an ome-types model."""
        ome = self.make_ome(plates=1)
        stack = make_planes(self.rng, self.service.plane_geometry(ome, 0))
        rgb = self.rng.integers(0, 256, size=(8, 16, 3), dtype=np.uint8)
        with tempfile.TemporaryDirectory() as tmpdir:
            filename = os.path.join(tmpdir, "test.ome")
            with OmeXmlWriter.open(filename, ome, compression=CompressionOptions.LOSSLESS) as writer:
                for index, plane in enumerate(stack):
                    writer.write_plane(0, index, plane)
                writer.write_plane(1, 0, rgb)
            with OmeXmlReader.open(filename) as reader:
                self.assertIsInstance(reader.metadata, ome_types.OME)
                self.assertTrue(reader.is_spw)
                self.assertEqual(reader.plane_counts, [3, 3])
                # Names stored in the document are kept, not replaced by the
                # file name.
                self.assertEqual(reader.metadata.images[0].name, "stack")
                self.assertEqual(reader.metadata.images[1].name, "rgb")
                for index, expected in enumerate(stack):
                    assert_planes_equal(self, reader.read_plane(0, index), expected)
                for c in range(3):
                    assert_planes_equal(self, reader.read_plane(1, c), rgb[:, :, c])

    def test_nonstandard_compression(self) -> None:
        """Test reading blocks whose compression is not in the OME schema's
        enumeration.
        """
        geometry = PlaneGeometry(size_x=32, size_y=16, size_z=2, pixel_type=PixelType.uint8)
        y, x = np.mgrid[0:16, 0:32]
        planes = [(4 * x + y).astype(np.uint8), (2 * x + 3 * y).astype(np.uint8)]
        blocks = "".join(
            bin_data_element(
                plane.tobytes(), geometry, CompressionOptions(CompressionAlgorithm.JPEG, quality=95)
            )
            for plane in planes
        )
        data = (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<OME xmlns="{OME_NAMESPACE}">\n'
            '<Image ID="Image:0"><Pixels ID="Pixels:0" DimensionOrder="XYZCT" Type="uint8" '
            'SizeX="32" SizeY="16" SizeZ="2" SizeC="1" SizeT="1">'
            '<Channel ID="Channel:0:0" SamplesPerPixel="1"/>\n'
            f"{blocks}\n</Pixels></Image>\n</OME>\n"
        ).encode()
        reader = OmeXmlReader(io.BytesIO(data))
        self.assertEqual(reader.get_geometry(0), geometry)
        for index, expected in enumerate(planes):
            assert_planes_equal(self, reader.read_plane(0, index), expected, atol=8)


if __name__ == "__main__":
    unittest.main()
