"""Run-scoped summary of per-locale outcomes."""
import sys
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, TextIO


@dataclass(frozen=True)
class SummaryEntry:
    locale: str
    message: str


class SummaryLog:
    """
    Append-only log of human-readable outcomes, one per decision point.

    A single instance is created per run and shared by every pipeline. Appends
    are serialized with a lock so entries are never lost or duplicated, even if
    pipelines are moved onto worker threads.
    """

    def __init__(self):
        self._entries: List[SummaryEntry] = []
        self._lock = threading.Lock()

    def add(self, locale: str, message: str) -> SummaryEntry:
        entry = SummaryEntry(locale=locale, message=message)
        with self._lock:
            self._entries.append(entry)
        return entry

    @property
    def entries(self) -> List[SummaryEntry]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def messages_for(self, locale: str) -> List[str]:
        return [entry.message for entry in self.entries if entry.locale == locale]

    def grouped(self) -> Dict[str, List[str]]:
        """Messages grouped by locale, locales in order of first appearance."""
        grouped: Dict[str, List[str]] = {}
        for entry in self.entries:
            grouped.setdefault(entry.locale, []).append(entry.message)
        return grouped

    def report(self, stream: Optional[TextIO] = None) -> None:
        """Print the grouped summary (to stdout by default)."""
        out = stream if stream is not None else sys.stdout
        for locale, messages in self.grouped().items():
            print(f"\nSummary for {locale}:", file=out)
            for message in messages:
                print(message, file=out)
