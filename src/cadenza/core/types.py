"""Type aliases used across Cadenza."""

from __future__ import annotations

from typing import Any

Address = str
AccessCredential = dict[str, Any]

ZERO_ADDRESS: Address = "0x0000000000000000000000000000000000000000"
