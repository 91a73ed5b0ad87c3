"""Reader side of bulk-run progress.

Polls ``GET /api/bulk-evaluate/progress/{competitionId}`` while the run is
``running`` and hands snapshots to a callback. Intermediate running snapshots
are debounced; a status change is delivered at once and a terminal status
stops the poll.
"""
import logging
import time
from typing import Callable, Optional

import requests

from app.core.config import settings
from app.schemas.evaluation import RunProgress

logger = logging.getLogger(__name__)


class ProgressPoller:
    def __init__(
        self,
        base_url: str,
        competition_id: str,
        on_update: Callable[[RunProgress], None],
        interval: Optional[float] = None,
        debounce: Optional[float] = None,
        fetch: Optional[Callable[[], Optional[RunProgress]]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.competition_id = competition_id
        self.on_update = on_update
        self.interval = settings.PROGRESS_POLL_INTERVAL_SECONDS if interval is None else interval
        self.debounce = settings.PROGRESS_DEBOUNCE_MS / 1000.0 if debounce is None else debounce
        self.fetch = fetch or self._fetch_http
        self.clock = clock
        self.sleep = sleep
        self.session = session or requests.Session()
        self._last_status = None
        self._last_delivered_at: Optional[float] = None
        self._pending: Optional[RunProgress] = None

    def _fetch_http(self) -> Optional[RunProgress]:
        url = f"{self.base_url}/api/bulk-evaluate/progress/{self.competition_id}"
        resp = self.session.get(url, timeout=10)
        resp.raise_for_status()
        body = resp.json().get("progress")
        return RunProgress.model_validate(body) if body else None

    def observe(self, progress: RunProgress) -> bool:
        """Feed one snapshot. Returns True once a terminal status is seen."""
        now = self.clock()
        transition = progress.status != self._last_status
        self._last_status = progress.status
        if transition or progress.is_terminal:
            self._deliver(progress, now)
            return progress.is_terminal
        if self._last_delivered_at is not None and now - self._last_delivered_at < self.debounce:
            self._pending = progress
            return False
        self._deliver(progress, now)
        return False

    def flush(self) -> None:
        """Deliver a debounced snapshot whose quiet period has elapsed."""
        if self._pending is None:
            return
        now = self.clock()
        if self._last_delivered_at is None or now - self._last_delivered_at >= self.debounce:
            self._deliver(self._pending, now)

    def _deliver(self, progress: RunProgress, now: float) -> None:
        self._pending = None
        self._last_delivered_at = now
        self.on_update(progress)

    def run(self, max_polls: Optional[int] = None) -> Optional[RunProgress]:
        """Poll until the run is terminal (or ``max_polls`` polls have been made)."""
        polls = 0
        last: Optional[RunProgress] = None
        while max_polls is None or polls < max_polls:
            polls += 1
            progress = None
            try:
                progress = self.fetch()
            except requests.RequestException as e:
                logger.warning(
                    f"Progress poll failed: {str(e)}",
                    extra={"competition_id": self.competition_id},
                )
            else:
                if progress is None and last is None:
                    # Nothing was ever started for this competition
                    return None
            if progress is not None:
                last = progress
                if self.observe(progress):
                    logger.info(
                        f"Run reached {progress.status.value}, polling stopped",
                        extra={"competition_id": self.competition_id},
                    )
                    return last
            self.sleep(self.interval)
            self.flush()
        return last
