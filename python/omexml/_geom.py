# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Rectangular regions of a plane, used to request partial plane reads."""

from __future__ import annotations

__all__ = (
    "Box",
    "Interval",
)

from typing import ClassVar, final


@final
class Interval:
    """A half-open range of pixel indices along one axis of a plane.

    Parameters
    ----------
    start
        First index in the range.
    stop
        One past the last index in the range.
    """

    __slots__ = ("_start", "_stop")

    factory: ClassVar[_IntervalFactory]

    def __init__(self, start: int, stop: int):
        # numpy integer scalars are common here; keep plain ints.
        self._start = int(start)
        self._stop = int(stop)
        if self._stop <= self._start:
            raise ValueError(f"Interval [{self._start}, {self._stop}) is empty.")

    @classmethod
    def from_size(cls, size: int, start: int = 0) -> Interval:
        """Construct from a size and an optional start."""
        return cls(start, start + size)

    @property
    def start(self) -> int:
        """First index in the range."""
        return self._start

    @property
    def stop(self) -> int:
        """One past the last index in the range."""
        return self._stop

    @property
    def size(self) -> int:
        """Number of indices in the range."""
        return self._stop - self._start

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Interval):
            return (self._start, self._stop) == (other._start, other._stop)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self._start, self._stop))

    def __str__(self) -> str:
        return f"{self._start}:{self._stop}"

    def __repr__(self) -> str:
        return f"Interval({self._start}, {self._stop})"

    def contains(self, other: Interval) -> bool:
        """Test whether ``other`` lies entirely within this range."""
        return self._start <= other._start and other._stop <= self._stop

    def slice_within(self, outer: Interval) -> slice:
        """Return the `slice` selecting this range from an array axis that
        covers ``outer``.
        """
        return slice(self._start - outer._start, self._stop - outer._start)


class _IntervalFactory:
    def __getitem__(self, s: slice) -> Interval:
        if s.step not in (None, 1):
            raise ValueError(f"Slice {s} has a non-unit step.")
        return Interval(s.start, s.stop)


Interval.factory = _IntervalFactory()


@final
class Box:
    """A rectangular region of a plane.

    Parameters
    ----------
    y
        Range of rows.
    x
        Range of columns.

    Notes
    -----
    Boxes are ordered ``(y, x)`` to match numpy indexing, and can be built
    with slice syntax::

        assert Box.factory[2:5, 0:4] == Box(Interval(2, 5), Interval(0, 4))

    """

    __slots__ = ("_y", "_x")

    factory: ClassVar[_BoxFactory]

    def __init__(self, y: Interval, x: Interval):
        self._y = y
        self._x = x

    @classmethod
    def from_shape(cls, shape: tuple[int, int]) -> Box:
        """Construct the box covering an array of the given ``(ny, nx)``
        shape.
        """
        ny, nx = shape
        return cls(Interval.from_size(ny), Interval.from_size(nx))

    @property
    def y(self) -> Interval:
        """Range of rows."""
        return self._y

    @property
    def x(self) -> Interval:
        """Range of columns."""
        return self._x

    @property
    def shape(self) -> tuple[int, int]:
        """Array shape ``(ny, nx)`` of the region."""
        return (self._y.size, self._x.size)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Box):
            return self._y == other._y and self._x == other._x
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self._y, self._x))

    def __str__(self) -> str:
        return f"[{self._y}, {self._x}]"

    def __repr__(self) -> str:
        return f"Box({self._y!r}, {self._x!r})"

    def contains(self, other: Box) -> bool:
        """Test whether ``other`` lies entirely within this box."""
        return self._y.contains(other._y) and self._x.contains(other._x)

    def slice_within(self, outer: Box) -> tuple[slice, slice]:
        """Return the slices selecting this region from an array that covers
        ``outer``.

        This assumes ``outer.contains(self)``.
        """
        return (self._y.slice_within(outer._y), self._x.slice_within(outer._x))


class _BoxFactory:
    def __getitem__(self, key: tuple[slice, slice]) -> Box:
        match key:
            case (slice() as y, slice() as x):
                return Box(Interval.factory[y], Interval.factory[x])
        raise TypeError(f"Expected a (y, x) pair of slices, got {key!r}.")


Box.factory = _BoxFactory()
