"""Lock holder token generation."""

from __future__ import annotations

import os
import struct


def generate_token() -> str:
    """Generate a random 64-bit holder token as 16 lowercase hex characters."""
    return "%016x" % struct.unpack("!Q", os.urandom(8))[0]
