"""
Weighted traffic split selection.

Draws a value in [0, 100) and walks versions in declaration order,
accumulating weights; the first version whose cumulative weight exceeds the
draw wins. Whatever share the weights leave below 100 belongs to the default
version.
"""

import hashlib
import random
from typing import Callable, Dict, Optional, Tuple

from mesh_router.core.exceptions import ConfigError

DrawSource = Callable[[], float]

_HASH_SPACE = float(2 ** 64)


def uniform_draw() -> float:
    """Uniform draw in [0, 100)."""
    return random.random() * 100.0


def hash_draw(key: str) -> float:
    """Deterministic draw in [0, 100) derived from a request key."""
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") / _HASH_SPACE * 100.0


class WeightedSelector:
    """Cumulative-weight selection over a traffic split."""

    def __init__(self,
                 split: Dict[str, int],
                 default_version: str,
                 draw_source: DrawSource = uniform_draw,
                 service: Optional[str] = None):
        negative = {version: weight for version, weight in split.items() if weight < 0}
        if negative:
            raise ConfigError(
                f"Traffic split weights must be non-negative: {negative}",
                service=service,
                errors=[f"negative weight for '{version}'" for version in negative]
            )

        total = sum(split.values())
        if total > 100:
            raise ConfigError(
                f"Traffic split weights sum to {total}, which exceeds 100",
                service=service,
                errors=[f"weights sum to {total}"],
                context={"split": dict(split)}
            )

        self.default_version = default_version
        self.total_weight = total
        self._draw_source = draw_source

        cumulative = 0
        boundaries = []
        for version, weight in split.items():
            if weight == 0:
                continue
            cumulative += weight
            boundaries.append((cumulative, version))
        self._boundaries: Tuple[Tuple[int, str], ...] = tuple(boundaries)
        self._order: Tuple[str, ...] = tuple(split)

    @property
    def versions(self) -> Tuple[str, ...]:
        """Versions in walk order, zero-weight entries included."""
        return self._order

    def select(self, draw: Optional[float] = None) -> str:
        """
        Pick a version.

        Args:
            draw: Value in [0, 100); taken from the draw source when omitted
        """
        if draw is None:
            draw = self._draw_source()

        for cumulative, version in self._boundaries:
            if draw < cumulative:
                return version
        return self.default_version

    def select_for_key(self, key: str) -> str:
        """Sticky selection: the same key always yields the same version."""
        return self.select(hash_draw(key))
