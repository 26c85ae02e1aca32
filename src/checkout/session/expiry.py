"""Session expiry — command and handler for recording lapsed sessions.

Designed to be triggered periodically by an external scheduler (cron, K8s
CronJob) via the maintenance API endpoint. Reads already treat a lapsed
session as expired; this sweep only writes the status down, closes the
session's reservations as Expired and marks any other lapsed holds on the
ledgers.
"""

import structlog
from protean import handle
from protean.exceptions import InvalidStateError, ValidationError
from protean.fields import DateTime
from protean.utils.globals import current_domain

from checkout.domain import checkout
from checkout.session.finalization import settle
from checkout.session.session import CheckoutSession, SessionStatus
from checkout.stock.ledger import StockLedger
from checkout.utils.clock import as_utc, utcnow

logger = structlog.get_logger(__name__)


@checkout.command(part_of="CheckoutSession")
class ExpireLapsedSessions:
    """Record every Active session past its expiry as Expired."""

    as_of = DateTime()  # Optional: defaults to now


@checkout.command_handler(part_of=CheckoutSession)
class ExpireLapsedSessionsHandler:
    @handle(ExpireLapsedSessions)
    def expire_lapsed_sessions(self, command):
        as_of = as_utc(command.as_of) if command.as_of else utcnow()
        logger.info("Checking for lapsed checkout sessions", as_of=as_of.isoformat())

        active_sessions = (
            current_domain.repository_for(CheckoutSession)
            ._dao.query.filter(status=SessionStatus.ACTIVE.value)
            .all()
            .items
        )
        lapsed = [session for session in active_sessions if session.is_expired(as_of)]

        expired_count = 0
        for session in lapsed:
            try:
                if settle(session, SessionStatus.EXPIRED.value, reason="Session lapsed", now=as_of):
                    expired_count += 1
                    logger.info(
                        "Expired lapsed session",
                        session_id=str(session.id),
                        expires_at=str(session.expires_at),
                    )
            except (ValidationError, InvalidStateError) as exc:
                logger.warning(
                    "Failed to expire lapsed session",
                    session_id=str(session.id),
                    error=str(exc),
                )

        ledger_repo = current_domain.repository_for(StockLedger)
        swept_holds = 0
        for ledger in ledger_repo._dao.query.all().items:
            count = ledger.expire_lapsed(as_of)
            if count:
                ledger_repo.add(ledger)
                swept_holds += count

        logger.info(
            "Lapsed session cleanup complete",
            expired_count=expired_count,
            swept_holds=swept_holds,
        )
        return expired_count
