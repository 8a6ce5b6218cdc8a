"""
Exclusive row claiming for periodic sweeps.

Sweeps may overlap (several workers, or a slow run overlapping the next
tick). A sweep claims rows by stamping them with its own token and a lease
in a conditional UPDATE that only matches unleased rows; whichever sweep's
UPDATE lands first owns the row and the others skip it. On PostgreSQL the
candidate SELECT also uses FOR UPDATE SKIP LOCKED so concurrent sweeps do
not even contend for the same rows.
"""

import secrets
from datetime import datetime, timedelta
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session, lazyload

from backend.src.db.database import is_sqlite


def lease_is_free(model, now: datetime):
    """SQL criterion: the row has no lease, or its lease ran out."""
    return or_(model.claimed_until.is_(None), model.claimed_until <= now)


def claim_rows(
    db: Session,
    model,
    criteria: Sequence[Any],
    order_by: Sequence[Any],
    now: datetime,
    lease: timedelta,
    limit: int = 100,
) -> Tuple[str, List[Any]]:
    """
    Claim up to ``limit`` rows matching ``criteria``.

    Args:
        db: Database session (committed by this call)
        model: Mapped class using ClaimableMixin
        criteria: Filter criteria selecting due rows
        order_by: Claim order
        now: Current time
        lease: How long the claim is held
        limit: Maximum rows to claim

    Returns:
        Tuple of (claim token, claimed rows in claim order)
    """
    token = secrets.token_hex(8)

    query = (
        db.query(model.id)
        .filter(*criteria)
        .filter(lease_is_free(model, now))
        .order_by(*order_by)
        .limit(limit)
    )
    # FOR UPDATE SKIP LOCKED only on PostgreSQL (SQLite doesn't support it)
    if not is_sqlite(db):
        query = query.with_for_update(skip_locked=True)

    candidate_ids = [row.id for row in query.all()]
    if not candidate_ids:
        db.commit()
        return token, []

    (
        db.query(model)
        .filter(model.id.in_(candidate_ids), lease_is_free(model, now))
        .update(
            {model.claim_token: token, model.claimed_until: now + lease},
            synchronize_session=False,
        )
    )
    db.commit()

    rows = (
        db.query(model)
        .options(lazyload('*'))
        .filter(model.claim_token == token)
        .order_by(*order_by)
        .all()
    )
    return token, rows


def release(row) -> None:
    """Clear a row's lease; the caller commits."""
    row.claim_token = None
    row.claimed_until = None


def claim_row(db: Session, model, row_id: int, now: datetime, lease: timedelta) -> Optional[str]:
    """
    Claim a single row by id.

    Returns:
        The claim token, or None if another sweep holds the row
    """
    token = secrets.token_hex(8)
    updated = (
        db.query(model)
        .filter(model.id == row_id, lease_is_free(model, now))
        .update(
            {model.claim_token: token, model.claimed_until: now + lease},
            synchronize_session=False,
        )
    )
    db.commit()
    return token if updated else None
