"""
Duplicate detection for items entering a wishlist.

``check`` is pure: it compares a candidate against the already stored items
and never touches the database. An exact match (same normalized URL) always
wins over similar matches, which are only looked for when no exact match
exists.
"""
import enum
import re
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

NONE = 'none'
EXACT = 'exact'
SIMILAR = 'similar'

# Relative price difference still treated as the same product
PRICE_TOLERANCE = 0.05

TRACKING_PARAMS = {
    'fbclid', 'gclid', 'dclid', 'msclkid', 'igshid', 'mc_cid', 'mc_eid',
    'ref', 'ref_', '_ga', '_gl', 'yclid', 'srsltid',
}
DEFAULT_PORTS = {'http': 80, 'https': 443}


class SubmissionState(enum.Enum):
    SUBMITTED = 'submitted'
    DUPLICATE_CHECK = 'duplicate_check'
    AWAITING_CONFIRMATION = 'awaiting_confirmation'
    INSERTED = 'inserted'
    CANCELLED = 'cancelled'


TRANSITIONS = {
    SubmissionState.SUBMITTED: {SubmissionState.DUPLICATE_CHECK, SubmissionState.INSERTED},
    SubmissionState.DUPLICATE_CHECK: {SubmissionState.INSERTED, SubmissionState.AWAITING_CONFIRMATION},
    SubmissionState.AWAITING_CONFIRMATION: {SubmissionState.INSERTED, SubmissionState.CANCELLED},
    SubmissionState.INSERTED: set(),
    SubmissionState.CANCELLED: set(),
}


def advance(state, target):
    """Move a submission to ``target``, refusing transitions the flow does not allow."""
    if target not in TRANSITIONS[state]:
        raise ValueError(f"Cannot move item submission from {state.value} to {target.value}")
    return target


def _is_tracking(name):
    name = name.lower()
    return name.startswith('utm') or name in TRACKING_PARAMS


def normalize_url(url: Optional[str]) -> Optional[str]:
    """
    Canonical form of a product URL for exact duplicate checks.

    https scheme, lowercase host without ``www.``, no default port, no
    trailing slash, tracking parameters dropped, remaining query sorted and
    the fragment removed.
    """
    if not url or not isinstance(url, str):
        return None
    url = url.strip()
    if '://' not in url:
        url = 'https://' + url
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    if parts.scheme.lower() not in DEFAULT_PORTS or not parts.hostname:
        return None

    host = parts.hostname.lower()
    if host.startswith('www.'):
        host = host[4:]
    if port and port not in DEFAULT_PORTS.values():
        host = f"{host}:{port}"

    path = re.sub(r'/{2,}', '/', parts.path or '').rstrip('/')
    query = sorted(
        (name, value) for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking(name)
    )
    return urlunsplit(('https', host, path, urlencode(query), ''))


def normalize_name(name: Optional[str]) -> str:
    """Lowercase, punctuation stripped, whitespace collapsed."""
    if not name:
        return ''
    name = re.sub(r'[^\w\s]', ' ', str(name).lower())
    return re.sub(r'\s+', ' ', name).strip()


def _effective_price(item):
    for key in ('sale_price', 'price'):
        value = item.get(key)
        if value in (None, ''):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


@dataclass(frozen=True)
class ItemKey:
    """Normalized comparison key of a candidate or stored item."""
    url: Optional[str]
    name: str
    brand: str
    price: Optional[float]

    @classmethod
    def of(cls, item: Mapping[str, Any]):
        return cls(
            url=normalize_url(item.get('canonical_url') or item.get('original_url')),
            name=normalize_name(item.get('product_name')),
            brand=normalize_name(item.get('brand')),
            price=_effective_price(item),
        )

    def same_url(self, other):
        return self.url is not None and self.url == other.url

    def similar_to(self, other):
        if not self.name or not other.name:
            return False
        if not (self.name == other.name or self.name in other.name or other.name in self.name):
            return False
        if self.brand and other.brand and self.brand != other.brand:
            return False
        if self.price is not None and other.price is not None:
            return abs(self.price - other.price) <= PRICE_TOLERANCE * other.price
        return True


@dataclass(frozen=True)
class DuplicateResult:
    type: str = NONE
    matches: List[Mapping[str, Any]] = field(default_factory=list)

    @property
    def is_duplicate(self):
        return self.type != NONE


def _sort_key(item):
    item_id = item.get('id')
    return (item_id is None, item_id if item_id is not None else 0)


def check(candidate: Mapping[str, Any], existing: Sequence[Mapping[str, Any]]) -> DuplicateResult:
    """Classify ``candidate`` against ``existing`` items as none, exact or similar."""
    key = ItemKey.of(candidate)
    stored = sorted(existing, key=_sort_key)
    keyed = [(item, ItemKey.of(item)) for item in stored]

    exact = [item for item, other in keyed if key.same_url(other)]
    if exact:
        return DuplicateResult(EXACT, exact)

    similar = [item for item, other in keyed if key.similar_to(other)]
    if similar:
        return DuplicateResult(SIMILAR, similar)
    return DuplicateResult(NONE, [])
