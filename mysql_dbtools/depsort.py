"""Foreign-key aware table ordering."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .errors import CycleDetected

log = logging.getLogger(__name__)


@dataclass
class SortResult:
    order: List[str]
    cyclic: List[str] = field(default_factory=list)

    @property
    def has_cycle(self) -> bool:
        return bool(self.cyclic)

    @property
    def cycle(self) -> Optional[CycleDetected]:
        return CycleDetected(self.cyclic) if self.cyclic else None


def _unique(items: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for item in items:
        seen.setdefault(item, None)
    return list(seen)


def sort_tables(tables: Sequence[str], dependencies: Mapping[str, Sequence[str]]) -> SortResult:
    """Order ``tables`` so every parent comes before the children referencing it.

    ``dependencies`` maps child -> parents. Parents outside ``tables`` and self
    references are ignored. Ties keep the input order. Tables caught in a cycle
    are appended at the end in input order and listed in ``SortResult.cyclic``.
    """
    names = _unique(tables)
    in_degree: Dict[str, int] = {name: 0 for name in names}
    dependents: Dict[str, List[str]] = {name: [] for name in names}

    for child in names:
        for parent in _unique(dependencies.get(child, ())):
            if parent == child or parent not in in_degree:
                continue
            dependents[parent].append(child)
            in_degree[child] += 1

    # Kahn's algorithm
    queue = deque(name for name in names if in_degree[name] == 0)
    order: List[str] = []
    while queue:
        name = queue.popleft()
        order.append(name)
        for child in dependents[name]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                queue.append(child)

    placed = set(order)
    cyclic = [name for name in names if name not in placed]
    result = SortResult(order=order + cyclic, cyclic=cyclic)
    if result.has_cycle:
        log.warning("%s", result.cycle)
    return result
