# MiastoAlert Reputation Ledger
# Per-user integer rating kept as an explicit counter column on users.
#
# Events (one flat step each, never scaled by confirmation count):
#   Confirmation received on one of the user's reports:   +1
#   Moderator/owner deletes one of the user's reports:    -1
#   Report expires through the sweep:                      no change
#
# A report with three confirmations therefore nets +3 then -1 when a
# moderator removes it. That imbalance is the intended bookkeeping.
#
# The ledger never opens its own transaction: every adjustment runs on the
# caller's connection so it commits or rolls back with the confirmation or
# deletion that caused it.

import logging
from typing import Optional

from db import adapt_sql, get_engine

log = logging.getLogger("miastoalert")

CONFIRMATION_REWARD = 1
DELETION_PENALTY = -1


def adjust_rating(conn, user_id: Optional[str], delta: int, reason: str = "",
                  backend: str = "sqlite") -> bool:
    """Apply `delta` to a user's rating inside the caller's transaction.

    Returns False (and changes nothing) when there is no live author.
    """
    if not user_id:
        return False
    cur = conn.execute(
        adapt_sql("UPDATE users SET rating = rating + ? WHERE id = ?", backend),
        (delta, user_id),
    )
    if cur.rowcount == 0:
        return False
    log.info("REPUTATION %s %+d (%s)", user_id, delta, reason or "adjustment")
    return True


def record_confirmation_received(conn, author_id, report_id, backend="sqlite") -> bool:
    return adjust_rating(
        conn, author_id, CONFIRMATION_REWARD,
        reason=f"report {report_id} confirmed", backend=backend,
    )


def record_report_removed(conn, author_id, report_id, backend="sqlite") -> bool:
    return adjust_rating(
        conn, author_id, DELETION_PENALTY,
        reason=f"report {report_id} removed by moderation", backend=backend,
    )


def get_rating(user_id: str) -> Optional[int]:
    with get_engine().connection() as (conn, backend):
        row = conn.execute(
            adapt_sql("SELECT rating FROM users WHERE id = ?", backend),
            (user_id,),
        ).fetchone()
    return int(row["rating"]) if row else None
