# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("PixelType", "is_signed")

import enum

import numpy as np
import numpy.typing as npt


class PixelType(enum.StrEnum):
    """Enumeration of the OME pixel types supported by the library.

    Member values are the strings used by the ``Type`` attribute of the OME
    ``Pixels`` element.
    """

    bit = "bit"
    int8 = "int8"
    int16 = "int16"
    int32 = "int32"
    uint8 = "uint8"
    uint16 = "uint16"
    uint32 = "uint32"
    float = "float"
    double = "double"

    def to_numpy(self) -> type:
        """Convert an enumeration member to the corresponding numpy scalar
        type object.

        Returns
        -------
        scalar_type
            Numpy scalar type, e.g. `numpy.int16`.  Note that this inherits
            from `type`, not `numpy.dtype`.
        """
        match self:
            case PixelType.bit:
                return np.bool_
            case PixelType.float:
                return np.float32
            case PixelType.double:
                return np.float64
        return getattr(np, self.value)

    def to_dtype(self, little_endian: bool) -> np.dtype:
        """Return the `numpy.dtype` for this pixel type with an explicit
        byte order.
        """
        return np.dtype(self.to_numpy()).newbyteorder("<" if little_endian else ">")

    @classmethod
    def from_numpy(cls, dtype: npt.DTypeLike) -> PixelType:
        """Construct an enumeration member from anything that can be coerced
        to `numpy.dtype`.

        Parameters
        ----------
        dtype
            Object convertible to `numpy.dtype`.

        Returns
        -------
        member
            Enumeration member.
        """
        match np.dtype(dtype).name:
            case "bool":
                return cls.bit
            case "float32":
                return cls.float
            case "float64":
                return cls.double
            case name:
                return cls(name)

    @property
    def bytes_per_pixel(self) -> int:
        """Number of bytes used to store one sample."""
        return np.dtype(self.to_numpy()).itemsize


def is_signed(t: PixelType) -> bool:
    """Test whether a `PixelType` holds signed values."""
    return np.dtype(t.to_numpy()).kind in "if"
