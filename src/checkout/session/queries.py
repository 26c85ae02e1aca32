"""Session lookups shared by the command handlers and the read endpoint."""

from protean.exceptions import ObjectNotFoundError
from protean.utils.globals import current_domain

from checkout.errors import NotFoundError, OwnershipError
from checkout.session.session import CheckoutSession, SessionStatus
from checkout.utils.clock import utcnow


def load_session(session_id, customer_id=None, guest_tracking_id=None, check_owner=True) -> CheckoutSession:
    """Fetch a session and make sure the acting shopper owns it."""
    try:
        session = current_domain.repository_for(CheckoutSession).get(session_id)
    except ObjectNotFoundError as exc:
        raise NotFoundError(f"Checkout session {session_id} not found") from exc

    if check_owner and not session.owned_by(customer_id, guest_tracking_id):
        raise OwnershipError("This checkout session belongs to another shopper")
    return session


def find_by_gateway_order(gateway_order_id) -> CheckoutSession | None:
    results = (
        current_domain.repository_for(CheckoutSession)
        ._dao.query.filter(gateway_order_id=gateway_order_id)
        .all()
        .items
    )
    return results[0] if results else None


def get_session(session_id, customer_id=None, guest_tracking_id=None, now=None) -> CheckoutSession:
    """Read a session for its owner; lapsed sessions read as not found."""
    session = load_session(session_id, customer_id, guest_tracking_id)
    if session.effective_status(now or utcnow()) == SessionStatus.EXPIRED:
        raise NotFoundError(f"Checkout session {session_id} has expired")
    return session
