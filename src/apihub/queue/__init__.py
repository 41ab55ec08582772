from __future__ import annotations

from apihub.queue.models import BuildTask
from apihub.queue.repository import BuildQueue

__all__ = ["BuildQueue", "BuildTask"]
