import random
from typing import Protocol, Sequence


class TemplateSelector(Protocol):
    """Picks one phrasing out of a list of message templates."""

    def choose(self, templates: Sequence[str]) -> str: ...


class RoundRobinSelector:
    """Cycles through templates in order, independently per template list."""

    def __init__(self) -> None:
        self._positions: dict[tuple[str, ...], int] = {}

    def choose(self, templates: Sequence[str]) -> str:
        if not templates:
            raise ValueError("No templates to choose from")
        key = tuple(templates)
        position = self._positions.get(key, 0)
        self._positions[key] = (position + 1) % len(templates)
        return templates[position]


class SeededSelector:
    """Random choice from a private, seeded generator."""

    def __init__(self, seed: int | None = None) -> None:
        self._rng = random.Random(seed)

    def choose(self, templates: Sequence[str]) -> str:
        if not templates:
            raise ValueError("No templates to choose from")
        return self._rng.choice(list(templates))
