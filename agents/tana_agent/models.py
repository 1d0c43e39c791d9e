from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Optional, Union


@dataclass(frozen=True, slots=True)
class Bucket:
    """A kanban column (or status value).

    Notes:
        ``bucket_id`` is the column ``data-testid`` and is preferred when
        known; ``name`` is the human-readable fallback.
    """

    name: str
    bucket_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Card:
    card_id: str
    bucket: str
    title: str = ""


class Snapshot(Mapping):
    """Immutable card id -> bucket name mapping captured at one instant."""

    __slots__ = ("_data",)

    def __init__(self, data: Optional[Mapping[str, str]] = None) -> None:
        self._data = MappingProxyType(dict(data or {}))

    @classmethod
    def from_cards(cls, cards: Iterable[Card]) -> "Snapshot":
        data: dict[str, str] = {}
        for card in cards:
            # A card lives in one bucket per snapshot; first sighting wins.
            data.setdefault(card.card_id, card.bucket)
        return cls(data)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"Snapshot({dict(self._data)!r})"


@dataclass(frozen=True, slots=True)
class Appeared:
    card_id: str
    bucket: str


@dataclass(frozen=True, slots=True)
class Removed:
    card_id: str
    last_bucket: str


@dataclass(frozen=True, slots=True)
class Transitioned:
    card_id: str
    from_bucket: str
    to_bucket: str


ChangeEvent = Union[Appeared, Removed, Transitioned]


@dataclass(frozen=True, slots=True)
class ActionResult:
    """Outcome of one card action.

    ``path`` names the branch that ran: ``button``, ``toggle``, ``status``
    or ``skipped``. Failures carry the failing ``step`` and the screenshot
    path in ``artifact`` when one was captured.
    """

    ok: bool
    card: str = ""
    path: str = ""
    step: str = ""
    error: str = ""
    artifact: str = ""


@dataclass(frozen=True, slots=True)
class BatchReport:
    attempted: int
    failed: int
    results: tuple[ActionResult, ...] = field(default_factory=tuple)

    @property
    def succeeded(self) -> int:
        return self.attempted - self.failed


@dataclass(frozen=True, slots=True)
class WatchReport:
    ticks: int
    events: int
    actions: int
    failures: int
