from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy.orm import Session

from mugfunnel.core.clock import Clock, SystemClock, day_key_for
from mugfunnel.services.quota.store import GLOBAL_SUBJECT_KEY, QuotaStore

IDENTITY_PREFIX = "identity:"


def usage_stats(
    db: Session,
    *,
    global_limit: int,
    clock: Clock | None = None,
    top: int = 10,
    history_days: int = 7,
) -> dict[str, Any]:
    clock = clock or SystemClock()
    now = clock.now()
    today = day_key_for(now)
    store = QuotaStore(db)

    total_today = store.get_count(GLOBAL_SUBJECT_KEY, today)
    percent_used = round(total_today / global_limit * 100, 1) if global_limit > 0 else 100.0

    top_identities = [
        {
            "identity_hash": row.subject_key[len(IDENTITY_PREFIX):],
            "count": row.count,
            "last_incremented_at": row.last_incremented_at,
        }
        for row in store.top_subjects(today, prefix=IDENTITY_PREFIX, limit=top)
    ]

    since = day_key_for(now - timedelta(days=history_days))
    history = [
        {"day_key": row.day_key, "count": row.count, "last_incremented_at": row.last_incremented_at}
        for row in store.history(GLOBAL_SUBJECT_KEY, since_day_key=since)
    ]

    return {
        "day_key": today,
        "total_today": total_today,
        "global_limit": global_limit,
        "remaining": max(0, global_limit - total_today),
        "percent_used": percent_used,
        "top_identities": top_identities,
        "history": history,
    }
