"""Checkout tunables read from the ``[custom]`` section of domain.toml."""

from protean.utils.globals import current_domain

DEFAULTS = {
    "session_ttl_minutes": 15,
    "payment_low_water_minutes": 5,
    "payment_extension_minutes": 30,
    "validation_window_minutes": 5,
    "max_item_quantity": 10,
    "price_change_tolerance": 0.01,
    "currency": "INR",
}


def setting(name: str):
    """Return a domain constant, falling back to the built-in default."""
    return getattr(current_domain, name, DEFAULTS.get(name))
