# This file is part of omexml-codec.
#
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

"""Streaming reader and writer for OME-XML files.

OME-XML embeds each pixel plane as base64 text (optionally compressed
first) inside a ``BinData`` element of an otherwise ordinary XML document.
`OmeXmlReader` scans a document once, remembering only where each payload
starts, and decodes planes on demand.  `OmeXmlWriter` streams a new
document, writing metadata fragments between freshly encoded planes.

The OME metadata model itself is provided by a `MetadataService`; the
default implementation uses the ``ome-types`` package.
"""

from ._common import *
from ._dtypes import *
from ._geom import *
from ._metadata import *
from ._parser import *
from ._reader import *
from ._writer import *
from .codecs import *
