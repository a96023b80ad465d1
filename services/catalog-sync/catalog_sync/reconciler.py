"""
Background reconciliation of staged exchange files.

Periodically re-applies every staged CommerceML file so the catalog converges
even when an import call was lost or failed halfway. Imports are idempotent,
so re-applying an already applied feed is harmless.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from catalog_sync.commerceml import parse_feed
from catalog_sync.exceptions import ConfigurationError, SyncError
from catalog_sync.importer import CatalogImporter
from catalog_sync.logging_config import LogContext
from catalog_sync.staging import StagingArea
from catalog_sync.store import CatalogStore

logger = logging.getLogger(__name__)

SOURCES = ("local", "object_store")


def order_feeds(names) -> list[str]:
    """Catalog files (import*) before offer files (offers*); other files are ignored."""
    ranked = []
    for name in names:
        lowered = name.lower()
        if not lowered.endswith(".xml"):
            continue
        if lowered.startswith("import"):
            ranked.append((0, name))
        elif lowered.startswith("offers"):
            ranked.append((1, name))
    return [name for _, name in sorted(ranked)]


@dataclass
class SweepReport:
    source: str
    applied: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    results: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "applied": list(self.applied),
            "failed": list(self.failed),
            "results": dict(self.results),
        }


class ReconciliationJob:
    """
    Args:
        importer: Applies parsed feeds
        staging: Where staged feeds are read from
        store: Catalog store whose cache is cleared after each sweep
        interval: Seconds between sweeps when started
    """

    def __init__(
        self,
        importer: CatalogImporter,
        staging: StagingArea,
        store: CatalogStore,
        interval: float = 1800,
    ):
        self.importer = importer
        self.staging = staging
        self.store = store
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def _list(self, source: str) -> list[str]:
        if source == "object_store":
            if self.staging.remote is None:
                raise ConfigurationError(
                    message="Object store is not configured",
                    config_key="OBJECT_STORE_BUCKET",
                )
            return self.staging.list_remote()
        return self.staging.list_local()

    def _read(self, source: str, name: str) -> bytes:
        if source == "object_store":
            return self.staging.read_remote(name)
        return self.staging.read(name)

    async def run_once(self, source: str = "local") -> Optional[SweepReport]:
        """
        Re-apply every staged feed from ``source``.

        Returns:
            SweepReport, or None if a sweep is already in progress

        Raises:
            ValueError: For an unknown source
            ConfigurationError: For ``object_store`` without an object store
        """
        if source not in SOURCES:
            raise ValueError(f"Unknown source {source!r}, expected one of {SOURCES}")
        if self._running:
            logger.info("Reconciliation already running, skipped")
            return None

        self._running = True
        report = SweepReport(source=source)
        try:
            with LogContext(exchange_id=f"reconcile-{uuid.uuid4().hex[:12]}"):
                names = order_feeds(await asyncio.to_thread(self._list, source))
                logger.info(f"Reconciling {len(names)} staged feeds from {source}")
                for name in names:
                    try:
                        data = await asyncio.to_thread(self._read, source, name)
                        feed = await asyncio.to_thread(parse_feed, data, name)
                        result = await self.importer.apply_feed(feed, name)
                    except (SyncError, OSError) as e:
                        logger.error(f"Reconciliation of {name} failed: {e}", extra={"filename": name})
                        report.failed.append(name)
                        continue
                    report.applied.append(name)
                    report.results[name] = result.to_dict()
        finally:
            self.store.clear_cache()
            self._running = False

        logger.info(f"Reconciliation done: {len(report.applied)} applied, {len(report.failed)} failed")
        return report

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Scheduled reconciliation failed")

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Reconciliation scheduled every {self.interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
