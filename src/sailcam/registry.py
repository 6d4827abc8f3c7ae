"""Collaborators at the edge of the pipeline: competitor lookup and detection log.

Classes:
    Competitor          - Boat/skipper metadata for one sail number
    CompetitorRegistry  - Sail number -> Competitor lookup, loaded from CSV
    DetectionRecord     - {value, confidence, timestamp} emitted per result
    DetectionLog        - Appends DetectionRecords to a CSV file
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .recognition import RankedResult

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Competitor lookup
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Competitor:
    sail_number: int
    skipper_name: Optional[str] = None
    boat_name: Optional[str] = None
    club: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "sail_number": self.sail_number,
            "skipper_name": self.skipper_name,
            "boat_name": self.boat_name,
            "club": self.club,
        }


class CompetitorRegistry:
    """In-memory sail number lookup.

    Args:
        competitors: Known competitors. A later entry with the same sail
            number replaces an earlier one.
    """

    def __init__(self, competitors: Iterable[Competitor] = ()):
        self._by_number: Dict[int, Competitor] = {}
        for c in competitors:
            self._by_number[c.sail_number] = c

    def __len__(self) -> int:
        return len(self._by_number)

    def __contains__(self, value: int) -> bool:
        return value in self._by_number

    def lookup(self, value: int) -> Optional[Competitor]:
        """Return the competitor for ``value``, or None when not found."""
        return self._by_number.get(value)

    @classmethod
    def from_file(cls, filepath: Union[str, Path]) -> "CompetitorRegistry":
        """Load competitors from CSV with columns ``sail_number,skipper,boat,club``.

        Rows whose sail number is not an integer are skipped with a warning.
        Only ``sail_number`` is required; the other columns may be missing.
        """
        competitors: List[Competitor] = []
        with open(filepath, "r", newline="") as f:
            reader = csv.DictReader(f)
            for line_no, row in enumerate(reader, start=2):
                raw = (row.get("sail_number") or "").strip()
                try:
                    number = int(raw)
                except ValueError:
                    log.warning("%s:%d: skipping row with sail_number %r", filepath, line_no, raw)
                    continue
                competitors.append(
                    Competitor(
                        sail_number=number,
                        skipper_name=(row.get("skipper") or "").strip() or None,
                        boat_name=(row.get("boat") or "").strip() or None,
                        club=(row.get("club") or "").strip() or None,
                    )
                )
        log.info("Loaded %d competitors from %s", len(competitors), filepath)
        return cls(competitors)


# ---------------------------------------------------------------------------
# Detection log
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DetectionRecord:
    """One stored detection."""

    value: int
    confidence: float
    timestamp: datetime

    @classmethod
    def from_result(cls, result: RankedResult, timestamp: Optional[datetime] = None) -> "DetectionRecord":
        return cls(
            value=result.value,
            confidence=result.confidence,
            timestamp=timestamp or datetime.now(timezone.utc),
        )


class DetectionLog:
    """Appends detection records to a CSV file.

    The header is written only when the file is new or empty.

    Args:
        path: Output CSV file path.
    """

    HEADER = ["timestamp", "value", "confidence"]

    def __init__(self, path: Union[str, Path]):
        path = Path(path)
        write_header = not path.exists() or path.stat().st_size == 0
        self._file = open(path, "a", newline="")
        self._writer = csv.writer(self._file)
        if write_header:
            self._writer.writerow(self.HEADER)

    def write(self, record: DetectionRecord):
        """Write a single detection row."""
        self._writer.writerow(
            [
                record.timestamp.isoformat(),
                record.value,
                f"{record.confidence:.3f}",
            ]
        )

    def write_many(self, records: Iterable[DetectionRecord]):
        for record in records:
            self.write(record)
        self._file.flush()

    def close(self):
        """Flush and close the file."""
        self._file.close()
