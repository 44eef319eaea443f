from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class FileRecord:
    path: str
    size_bytes: int
    fuzzy_hash: Optional[str] = None

    @property
    def hashable(self) -> bool:
        return bool(self.fuzzy_hash)


ClusterLabels = List[Optional[int]]
