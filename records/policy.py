"""
Checks on store policy values that arrive from outside the extractor.

Typed fields, community records and posted scrape results carry the same
fields the recognizers produce, so they are held to the same types and bounds.
"""
import math
from numbers import Real

from scraper.recognizers import MAX_WINDOW_DAYS, check_range
from .merge import is_empty

BOOLEAN_FIELDS = (
    'free_returns',
    'free_return_shipping',
    'exchange_only',
    'store_credit_only',
    'receipt_required',
    'original_packaging_required',
    'final_sale_items',
    'price_match_competitors',
    'price_match_own_sales',
)

DAY_FIELDS = ('return_window_days', 'price_match_window_days')

# field -> (low, high)
AMOUNT_FIELDS = {
    'restocking_fee_percent': (1, 100),
    'paid_return_cost': (0.01, 1000),
}

URL_FIELDS = ('return_policy_url', 'price_match_policy_url')
NOTE_FIELDS = ('return_policy_notes', 'price_match_policy_notes')

MAX_URL_LENGTH = 2048


def _number(name, value):
    # bool is an int subclass, but True is not a day count
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ValueError(f"{name} must be a number")
    if not math.isfinite(value):
        raise ValueError(f"{name} must be a finite number")
    return value


def clean_policy_value(name, value):
    """Return ``value`` checked for policy field ``name``; raise ValueError when it is unusable."""
    if name in BOOLEAN_FIELDS:
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be true or false")
        return value
    if name in DAY_FIELDS:
        value = _number(name, value)
        if value != int(value):
            raise ValueError(f"{name} must be a whole number of days")
        return check_range(name, int(value), 1, MAX_WINDOW_DAYS)
    if name in AMOUNT_FIELDS:
        low, high = AMOUNT_FIELDS[name]
        return check_range(name, float(_number(name, value)), low, high)
    if name in URL_FIELDS or name in NOTE_FIELDS:
        if not isinstance(value, str):
            raise ValueError(f"{name} must be a string")
        if name in URL_FIELDS and len(value) > MAX_URL_LENGTH:
            raise ValueError(f"{name} is longer than {MAX_URL_LENGTH} characters")
        return value
    raise ValueError(f"Unknown policy field: {name}")


def clean_policy_fields(values, allowed):
    """The non-empty ``allowed`` entries of ``values``, each checked by clean_policy_value."""
    if not isinstance(values, dict):
        raise ValueError('Policy fields must be an object')
    return {
        name: clean_policy_value(name, values[name])
        for name in allowed
        if name in values and not is_empty(values[name])
    }
