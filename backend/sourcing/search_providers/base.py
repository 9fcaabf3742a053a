from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Candidate:
    url: str
    title: Optional[str] = None
    snippet: Optional[str] = None


@dataclass
class DiagnosticTrace:
    counts: Counter = field(default_factory=Counter)
    notes: List[str] = field(default_factory=list)

    def note(self, text: str) -> None:
        self.notes.append(text)

    def count(self, key: str, n: int = 1) -> None:
        self.counts[key] += n

    def merge(self, other: Optional["DiagnosticTrace"]) -> None:
        if other is None:
            return
        self.counts.update(other.counts)
        self.notes.extend(other.notes)

    def as_dict(self) -> dict:
        return {"counts": dict(self.counts), "notes": list(self.notes)}


@dataclass
class ProviderResult:
    candidates: List[Candidate] = field(default_factory=list)
    error: Optional[str] = None
    trace: DiagnosticTrace = field(default_factory=DiagnosticTrace)

    @property
    def ok(self) -> bool:
        return self.error is None


class SearchProvider:
    name: str
    # api: структурный поиск с ключами; scrape: парсинг публичной выдачи
    kind: str = "scrape"

    def available(self) -> bool:
        return True

    async def search(self, query: str, limit: int) -> ProviderResult:
        # pragma: no cover
        raise NotImplementedError
