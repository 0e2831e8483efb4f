"""Category dispatch policy — which categories may run side by side.

Rules are evaluated in order:

1. *Sequential* categories only start when nothing else is active, and while
   one is active nothing else starts.
2. *Conflict groups* are sets of categories that must not run at the same
   time (two categories mutating the same artifact).  Tasks of the same
   category do not conflict with each other.
3. Everything else runs in parallel.  *Independent* categories have no
   dispatch restriction of their own; workflow expansion creates their tasks
   first so they start ahead of the dependent chain.

The groupings are policy data, loaded from config with built-in defaults.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable
from dataclasses import dataclass, field
from typing import Any

from ..constants import (
    DEFAULT_CONFLICT_GROUPS,
    DEFAULT_INDEPENDENT_CATEGORIES,
    DEFAULT_SEQUENTIAL_CATEGORIES,
)


def _norm(values: Iterable[Any]) -> frozenset[str]:
    return frozenset(str(getattr(v, "value", v)).strip().lower() for v in values if str(v).strip())


@dataclass(frozen=True)
class CategoryPolicy:
    sequential: frozenset[str] = field(default_factory=frozenset)
    conflict_groups: tuple[frozenset[str], ...] = ()
    independent: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def default(cls) -> "CategoryPolicy":
        return cls.build(
            sequential=DEFAULT_SEQUENTIAL_CATEGORIES,
            conflict_groups=DEFAULT_CONFLICT_GROUPS,
            independent=DEFAULT_INDEPENDENT_CATEGORIES,
        )

    @classmethod
    def build(
        cls,
        *,
        sequential: Iterable[Any] = (),
        conflict_groups: Iterable[Iterable[Any]] = (),
        independent: Iterable[Any] = (),
    ) -> "CategoryPolicy":
        groups = tuple(g for g in (_norm(group) for group in conflict_groups) if len(g) > 1)
        return cls(
            sequential=_norm(sequential),
            conflict_groups=groups,
            independent=_norm(independent),
        )

    def can_run(self, category: Any, running: Collection[Any]) -> bool:
        """Return True if *category* may start while *running* are active.

        *running* is the multiset of categories of in-flight tasks.
        """
        cat = str(getattr(category, "value", category))
        active = [str(getattr(r, "value", r)) for r in running]

        if cat in self.sequential:
            return not active
        if any(r in self.sequential for r in active):
            return False

        for group in self.conflict_groups:
            if cat in group and any(r in group and r != cat for r in active):
                return False

        return True

    def conflicts_with(self, a: Any, b: Any) -> bool:
        """True if categories *a* and *b* may never be running together."""
        ca = str(getattr(a, "value", a))
        cb = str(getattr(b, "value", b))
        if ca in self.sequential or cb in self.sequential:
            return True
        if ca == cb:
            return False
        return any(ca in g and cb in g for g in self.conflict_groups)

    def is_parallelizable(self, category: Any) -> bool:
        cat = str(getattr(category, "value", category))
        return cat in self.independent
