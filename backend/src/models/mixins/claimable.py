"""
Claim lease mixin for rows processed by periodic sweeps.

A sweep claims a row by writing a fresh claim_token and a claimed_until
lease in a conditional UPDATE. Rows with an unexpired lease are skipped by
every other sweep, so overlapping invocations never process the same row.
A crashed sweep's lease simply runs out and the row becomes claimable again.
"""

from sqlalchemy import Column, String

from backend.src.models.types import UTCDateTime


class ClaimableMixin:
    """
    Mixin providing exclusive-claim lease columns.

    Adds:
    - claim_token: Token of the sweep currently holding the row (NULL = free)
    - claimed_until: Lease expiry; a stale lease is treated as free
    """

    claim_token = Column(String(32), nullable=True)
    claimed_until = Column(UTCDateTime(), nullable=True)
