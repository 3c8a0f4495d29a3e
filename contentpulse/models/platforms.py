from __future__ import annotations

from typing import Literal

Platform = Literal["youtube", "instagram"]

SUPPORTED_PLATFORMS: tuple[Platform, ...] = ("youtube", "instagram")
