from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from mugfunnel.core.errors import STORAGE_OUTAGE_ERRORS, StorageUnavailableError
from mugfunnel.db.pg.models import QuotaCounter

logger = logging.getLogger(__name__)

GLOBAL_SUBJECT_KEY = "global"


def identity_subject_key(identity_hash: str) -> str:
    return f"identity:{identity_hash}"


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"atomic quota upsert not supported for dialect {dialect!r}")


class QuotaStore:
    """Durable daily counters keyed by ``(subject_key, day_key)``.

    ``increment`` is a single ``INSERT .. ON CONFLICT DO UPDATE .. RETURNING``
    statement, so concurrent callers never read-modify-write in application
    code and the returned value is the post-increment count.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _upsert_statement(self, subject_key: str, day_key: str, stamp: datetime):
        insert = _insert_for(self.db)
        statement = insert(QuotaCounter).values(
            id=str(uuid.uuid4()),
            subject_key=subject_key,
            day_key=day_key,
            count=1,
            last_incremented_at=stamp,
        )
        return statement.on_conflict_do_update(
            index_elements=[QuotaCounter.subject_key, QuotaCounter.day_key],
            set_={
                "count": QuotaCounter.count + 1,
                "last_incremented_at": stamp,
            },
        ).returning(QuotaCounter.count)

    def increment(self, subject_key: str, day_key: str, *, now: datetime | None = None) -> int:
        return self.increment_many([subject_key], day_key, now=now)[subject_key]

    def increment_many(self, subject_keys: list[str], day_key: str, *, now: datetime | None = None) -> dict[str, int]:
        """Increment several counters in one transaction; all land or none do."""
        stamp = now or datetime.now(timezone.utc)
        counts: dict[str, int] = {}
        try:
            for subject_key in subject_keys:
                new_count = self.db.execute(self._upsert_statement(subject_key, day_key, stamp)).scalar_one()
                counts[subject_key] = int(new_count)
            self.db.commit()
        except STORAGE_OUTAGE_ERRORS as exc:
            self.db.rollback()
            logger.error(
                "quota_increment_storage_unavailable",
                extra={"subject_keys": subject_keys, "day_key": day_key},
            )
            raise StorageUnavailableError("quota", str(exc)) from exc
        except Exception:
            self.db.rollback()
            raise
        return counts

    def get_count(self, subject_key: str, day_key: str) -> int:
        try:
            value = self.db.scalar(
                select(QuotaCounter.count).where(
                    QuotaCounter.subject_key == subject_key,
                    QuotaCounter.day_key == day_key,
                )
            )
        except STORAGE_OUTAGE_ERRORS as exc:
            self.db.rollback()
            logger.error("quota_read_storage_unavailable", extra={"subject_key": subject_key, "day_key": day_key})
            raise StorageUnavailableError("quota", str(exc)) from exc
        return int(value or 0)

    def top_subjects(self, day_key: str, *, prefix: str, limit: int = 10) -> list[QuotaCounter]:
        return list(
            self.db.scalars(
                select(QuotaCounter)
                .where(QuotaCounter.day_key == day_key, QuotaCounter.subject_key.startswith(prefix))
                .order_by(QuotaCounter.count.desc())
                .limit(limit)
            ).all()
        )

    def history(self, subject_key: str, *, since_day_key: str) -> list[QuotaCounter]:
        return list(
            self.db.scalars(
                select(QuotaCounter)
                .where(QuotaCounter.subject_key == subject_key, QuotaCounter.day_key >= since_day_key)
                .order_by(QuotaCounter.day_key.desc())
            ).all()
        )

    def purge_before(self, day_key: str) -> int:
        """Drop abandoned counters; day keys sort lexically in date order."""
        deleted = self.db.execute(delete(QuotaCounter).where(QuotaCounter.day_key < day_key)).rowcount
        self.db.commit()
        return int(deleted or 0)
