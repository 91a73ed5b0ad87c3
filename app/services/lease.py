"""Global bulk-evaluation lease.

A single row (``evaluation_locks`` keyed by ``settings.LEASE_KEY``) guards the
whole deployment: at most one bulk run may hold it. Every mutation is a
compare-and-set on the row's ``version`` column, so correctness does not depend
on any process-local state. A lease older than ``stale_after`` is presumed to
belong to a crashed run and is reclaimed lazily by the next ``acquire``.
"""
import logging
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.metrics import LEASE_RECOVERIES_TOTAL
from app.db.base import utcnow
from app.db.session import SessionLocal
from app.models import EvaluationLease
from app.schemas.evaluation import LeaseInfo, LeaseResult
from app.services.progress import pause_statement

logger = logging.getLogger(__name__)

STALE_PAUSE_REASON = "Lease went stale - evaluation paused"


class LeaseLock:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        key: Optional[str] = None,
        stale_after: Optional[timedelta] = None,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.key = key or settings.LEASE_KEY
        self.stale_after = stale_after or timedelta(seconds=settings.LEASE_STALE_AFTER_SECONDS)
        self.clock = clock

    def _read_lease(self, db: Session) -> Optional[LeaseInfo]:
        row = db.get(EvaluationLease, self.key)
        return LeaseInfo.model_validate(row) if row is not None else None

    def _is_stale(self, lease: LeaseInfo, now, stale_after: timedelta) -> bool:
        if lease.locked_at is None:
            return True
        return now - lease.locked_at > stale_after

    def current(self) -> LeaseInfo:
        db = self.session_factory()
        try:
            return self._read_lease(db) or LeaseInfo()
        finally:
            db.close()

    def is_held_by(self, owner_id: str, version: Optional[int] = None) -> bool:
        lease = self.current()
        if not lease.is_locked or lease.locked_by != owner_id:
            return False
        return version is None or lease.version == version

    def held_clause(self, owner_id: str, version: int):
        """SQL condition that is true only while ``owner_id`` holds the lease at ``version``.

        Lets another table's UPDATE commit only for the current lease holder,
        in the same statement.
        """
        return (
            select(EvaluationLease.key)
            .where(EvaluationLease.key == self.key)
            .where(EvaluationLease.is_locked.is_(True))
            .where(EvaluationLease.locked_by == owner_id)
            .where(EvaluationLease.version == version)
            .exists()
        )

    def acquire(
        self,
        owner_id: str,
        user_id: Optional[str] = None,
        reason: str = "Starting evaluation",
        stale_after: Optional[timedelta] = None,
    ) -> LeaseResult:
        """Take the lease for ``owner_id`` or report Busy.

        The observed row version is the compare-and-set token: if anyone else
        mutated the lease between our read and our write, the conditional
        UPDATE matches zero rows and we report Busy. When the lease is stale,
        the previous holder's run is paused in the same transaction.
        """
        stale_after = stale_after or self.stale_after
        db = self.session_factory()
        try:
            now = self.clock()
            observed = self._read_lease(db)

            if observed is None:
                db.add(
                    EvaluationLease(
                        key=self.key,
                        is_locked=True,
                        locked_by=owner_id,
                        locked_by_user=user_id,
                        locked_at=now,
                        reason=reason,
                        version=1,
                    )
                )
                try:
                    db.commit()
                except IntegrityError:
                    # Another caller created the row first
                    db.rollback()
                    logger.info("lease_busy_lost_create_race", extra={"lease_owner": owner_id})
                    return LeaseResult(acquired=False, lease=self._read_lease(db) or LeaseInfo())
                lease = LeaseInfo(
                    is_locked=True, locked_by=owner_id, locked_by_user=user_id,
                    locked_at=now, reason=reason, version=1,
                )
                logger.info("lease_acquired", extra={"lease_owner": owner_id, "user_id": user_id})
                return LeaseResult(acquired=True, lease=lease)

            recovered_from = None
            if observed.is_locked:
                if not self._is_stale(observed, now, stale_after):
                    logger.info(
                        "lease_busy",
                        extra={"lease_owner": observed.locked_by, "competition_id": owner_id},
                    )
                    return LeaseResult(acquired=False, lease=observed)
                recovered_from = observed.locked_by
                reason = f"{reason} (recovered from stale lock)"

            new_version = observed.version + 1
            result = db.execute(
                update(EvaluationLease)
                .where(EvaluationLease.key == self.key)
                .where(EvaluationLease.version == observed.version)
                .values(
                    is_locked=True,
                    locked_by=owner_id,
                    locked_by_user=user_id,
                    locked_at=now,
                    reason=reason,
                    version=new_version,
                )
            )
            if result.rowcount != 1:
                db.rollback()
                logger.info("lease_busy_lost_cas", extra={"lease_owner": owner_id})
                return LeaseResult(acquired=False, lease=self._read_lease(db) or observed)

            if recovered_from:
                self._pause_run(db, recovered_from, now)
            db.commit()

            if recovered_from:
                LEASE_RECOVERIES_TOTAL.labels(source="acquire").inc()
                logger.warning(
                    "lease_recovered_from_stale_holder",
                    extra={"lease_owner": owner_id, "competition_id": recovered_from},
                )
            logger.info("lease_acquired", extra={"lease_owner": owner_id, "user_id": user_id})
            lease = LeaseInfo(
                is_locked=True, locked_by=owner_id, locked_by_user=user_id,
                locked_at=now, reason=reason, version=new_version,
            )
            return LeaseResult(acquired=True, lease=lease, recovered_from=recovered_from)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def release(self, owner_id: str, version: Optional[int] = None) -> bool:
        """Release the lease if ``owner_id`` (and ``version``, when given) still holds it.

        A mismatched release is a no-op so a late or duplicate release cannot
        clobber a newer run.
        """
        db = self.session_factory()
        try:
            stmt = (
                update(EvaluationLease)
                .where(EvaluationLease.key == self.key)
                .where(EvaluationLease.is_locked.is_(True))
                .where(EvaluationLease.locked_by == owner_id)
            )
            if version is not None:
                stmt = stmt.where(EvaluationLease.version == version)
            result = db.execute(
                stmt.values(
                    is_locked=False,
                    locked_by=None,
                    locked_by_user=None,
                    locked_at=None,
                    reason=None,
                    version=EvaluationLease.version + 1,
                )
            )
            db.commit()
            released = result.rowcount == 1
            if released:
                logger.info("lease_released", extra={"lease_owner": owner_id})
            else:
                logger.warning("lease_release_ignored_not_holder", extra={"lease_owner": owner_id})
            return released
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def recover_stale(self) -> Optional[str]:
        """One-shot startup sweep: release a stale lease and pause its run.

        Returns the competition id whose run was paused, if any.
        """
        db = self.session_factory()
        try:
            now = self.clock()
            observed = self._read_lease(db)
            if observed is None or not observed.is_locked:
                return None
            if not self._is_stale(observed, now, self.stale_after):
                logger.info("lease_valid_on_startup", extra={"lease_owner": observed.locked_by})
                return None
            result = db.execute(
                update(EvaluationLease)
                .where(EvaluationLease.key == self.key)
                .where(EvaluationLease.version == observed.version)
                .values(
                    is_locked=False,
                    locked_by=None,
                    locked_by_user=None,
                    locked_at=None,
                    reason="Released on startup (stale)",
                    version=observed.version + 1,
                )
            )
            if result.rowcount != 1:
                db.rollback()
                return None
            if observed.locked_by:
                self._pause_run(db, observed.locked_by, now)
            db.commit()
            LEASE_RECOVERIES_TOTAL.labels(source="startup").inc()
            logger.warning("lease_released_on_startup", extra={"competition_id": observed.locked_by})
            return observed.locked_by
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    @staticmethod
    def _pause_run(db: Session, competition_id: str, now) -> None:
        db.execute(pause_statement(competition_id, STALE_PAUSE_REASON, now))


evaluation_lease = LeaseLock()
