# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

import unittest

import numpy as np

from omexml import Box, Interval


class GeometryTestCase(unittest.TestCase):
    """Tests for Interval and Box."""

    def test_interval(self) -> None:
        i = Interval.factory[3:6]
        self.assertEqual(i, Interval(3, 6))
        self.assertEqual(i, Interval.from_size(3, start=3))
        self.assertEqual(i.size, 3)
        self.assertEqual(str(i), "3:6")
        self.assertEqual(eval(repr(i), {"Interval": Interval}), i)
        self.assertTrue(Interval(0, 10).contains(i))
        self.assertFalse(i.contains(Interval(0, 10)))
        self.assertEqual(i.slice_within(Interval(2, 8)), slice(1, 4))
        self.assertEqual(Interval(np.int64(1), np.int64(2)).start, 1)
        with self.assertRaises(ValueError):
            Interval(4, 4)
        with self.assertRaises(ValueError):
            Interval.factory[0:6:2]

    def test_box(self) -> None:
        full = Box.from_shape((6, 8))
        self.assertEqual(full.shape, (6, 8))
        region = Box.factory[1:4, 2:7]
        self.assertEqual(region, Box(Interval(1, 4), Interval(2, 7)))
        self.assertEqual(region.y, Interval(1, 4))
        self.assertEqual(region.x, Interval(2, 7))
        self.assertEqual(hash(region), hash(Box.factory[1:4, 2:7]))
        self.assertEqual(eval(repr(region), {"Box": Box, "Interval": Interval}), region)
        self.assertTrue(full.contains(region))
        self.assertFalse(full.contains(Box.factory[4:8, 0:3]))
        array = np.arange(48).reshape(6, 8)
        np.testing.assert_array_equal(array[region.slice_within(full)], array[1:4, 2:7])
        self.assertNotEqual(region, full)
        with self.assertRaises(TypeError):
            Box.factory[1:4]


if __name__ == "__main__":
    unittest.main()
