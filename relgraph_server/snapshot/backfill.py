"""
Bulk backfill of the raw event log into page files.

EventLogBackfill copies the gateway's raw event log into fixed-size JSON
pages on local disk so that snapshot replay never has to hold a database
cursor open. Progress is recorded in a small meta file and the next run
resumes after the last full page.

Page format:
    <pages_dir>/page_<from:012d>_to_<to:012d>.json   (list of StoredEvent dicts)
    <pages_dir>/pages.meta.json                       ({"total", "pages", "page_size"})

Invariants:
    - Only full pages count as completed
    - A trailing partial page is rewritten on the next run
    - The page size of existing progress wins over the configured one

How to change safely:
    - Keep page names zero-padded; replay reads pages in name order
    - Add meta fields, don't remove existing ones
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..storage.base import PersistenceGateway

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100_000
PAGES_SUBDIR = "pages"
META_FILE = "pages.meta.json"
PAGE_PATTERN = re.compile(r"^page_(\d{12})_to_(\d{12})\.json$")


def page_file_name(first: int, last: int) -> str:
    return f"page_{first:012d}_to_{last:012d}.json"


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON to path via a temp file in the same directory."""
    with tempfile.NamedTemporaryFile(
        "w", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False, encoding="utf-8"
    ) as tmp:
        json.dump(data, tmp)
        tmp_path = tmp.name
    try:
        os.replace(tmp_path, path)
    except OSError:
        Path(tmp_path).unlink(missing_ok=True)
        raise


@dataclass
class BackfillResult:
    """Result of a backfill run.

    Attributes:
        total: Raw events in the log when the run started
        resumed_from: Index of the first event written this run
        page_size: Events per page
        pages_completed: Full pages on disk after the run
        pages_written: Page files written this run
        events_written: Events written this run
        elapsed_ms: Wall time of the run
    """

    total: int
    resumed_from: int
    page_size: int
    pages_completed: int
    pages_written: list[Path] = field(default_factory=list)
    events_written: int = 0
    elapsed_ms: float = 0.0

    @property
    def up_to_date(self) -> bool:
        return not self.pages_written

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "resumed_from": self.resumed_from,
            "page_size": self.page_size,
            "pages_completed": self.pages_completed,
            "pages_written": [p.name for p in self.pages_written],
            "events_written": self.events_written,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }


class EventLogBackfill:
    """Copies the raw event log into page files.

    Example:
        >>> backfill = EventLogBackfill(gateway, "/var/lib/relgraph/snapshots/pages")
        >>> result = await backfill.sync()
        >>> result.pages_completed
        3
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        pages_dir: str | Path,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        """Initialize the backfill.

        Args:
            gateway: Gateway holding the raw event log
            pages_dir: Directory for page files and progress meta
            page_size: Events per page when no progress exists yet
        """
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self.gateway = gateway
        self.pages_dir = Path(pages_dir)
        self.page_size = page_size

    @property
    def meta_path(self) -> Path:
        return self.pages_dir / META_FILE

    def load_meta(self) -> dict[str, int] | None:
        """Read the progress record, or None if absent or unreadable."""
        if not self.meta_path.exists():
            return None
        try:
            meta = json.loads(self.meta_path.read_text(encoding="utf-8"))
            return {
                "total": int(meta["total"]),
                "pages": int(meta["pages"]),
                "page_size": int(meta["page_size"]),
            }
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable backfill progress: {e}", extra={"path": str(self.meta_path)})
            return None

    def page_files(self) -> list[Path]:
        """List page files in log order."""
        if not self.pages_dir.exists():
            return []
        return sorted(p for p in self.pages_dir.iterdir() if PAGE_PATTERN.match(p.name))

    async def sync(self) -> BackfillResult:
        """Write every raw event not yet covered by a full page.

        Returns:
            BackfillResult describing the run
        """
        start = time.perf_counter()
        total = await self.gateway.count_raw_events()
        logger.info("Counted raw events", extra={"total": total})

        self.pages_dir.mkdir(parents=True, exist_ok=True)

        meta = self.load_meta()
        completed = meta["pages"] if meta else 0
        page_size = meta["page_size"] if meta else self.page_size
        resume_from = completed * page_size

        result = BackfillResult(
            total=total,
            resumed_from=resume_from,
            page_size=page_size,
            pages_completed=completed,
        )

        if resume_from >= total:
            logger.info("Nothing to write, pages in sync with the event log", extra={"total": total})
            result.elapsed_ms = (time.perf_counter() - start) * 1000
            return result

        logger.info("Resuming backfill", extra={"resume_from": resume_from, "page_size": page_size})
        self._remove_pages_from(resume_from)

        position = resume_from
        while position < total:
            events = await self.gateway.load_raw_events(position, page_size)
            if not events:
                break

            path = self.pages_dir / page_file_name(position, position + len(events) - 1)
            write_json_atomic(path, [e.to_dict() for e in events])
            logger.info("Wrote page", extra={"page": path.name, "events": len(events)})

            result.pages_written.append(path)
            result.events_written += len(events)
            position += len(events)

            if len(events) < page_size:
                break
            result.pages_completed += 1

        write_json_atomic(
            self.meta_path,
            {"total": total, "pages": result.pages_completed, "page_size": page_size},
        )
        result.elapsed_ms = (time.perf_counter() - start) * 1000
        logger.info("Updated backfill progress", extra=result.to_dict())
        return result

    def _remove_pages_from(self, first: int) -> None:
        for path in self.page_files():
            match = PAGE_PATTERN.match(path.name)
            if match and int(match.group(1)) >= first:
                path.unlink()
                logger.debug("Removed partial page", extra={"page": path.name})
