"""API version constants.

Single source of truth for contract versioning of the HTTP surface.
"""

from __future__ import annotations

from typing import Final


API_VERSION: Final[str] = "v1"
