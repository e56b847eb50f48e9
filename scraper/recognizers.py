"""
Field recognizers for captured pages.

Each recognizer is an independent function registered for a capture kind
(and optionally a site). It looks at a PageContent and returns either None or
a ``(value, confidence)`` pair. Recognizers that find an implausible value
raise OutOfRangeField so the caller can drop the field with a warning.
"""
import json
import logging
import re
from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

from errors import OutOfRangeField

logger = logging.getLogger(__name__)

MAX_WINDOW_DAYS = 3650

COMMON_BRANDS = [
    'Apple', 'Samsung', 'Sony', 'LG', 'Microsoft', 'Google', 'Amazon', 'Dell', 'HP', 'Lenovo',
    'Asus', 'Acer', 'Nintendo', 'PlayStation', 'Xbox', 'Canon', 'Nikon', 'Panasonic', 'GoPro',
    'Nike', 'Adidas', 'Puma', 'Under Armour', 'Reebok', 'New Balance', 'Vans', 'Converse',
    'Lego', 'Hasbro', 'Mattel', 'Fisher-Price', 'Nerf', 'Hot Wheels', 'Barbie',
    'KitchenAid', 'Cuisinart', 'Ninja', 'Instant Pot', 'Keurig', 'Breville', 'OXO',
    'Dyson', 'Roomba', 'Shark', 'Bissell', 'Black+Decker', 'DeWalt', 'Bosch', 'Makita',
    'Bose', 'JBL', 'Beats', 'Sennheiser', 'Audio-Technica', 'Logitech', 'Razer', 'Corsair',
    'Fitbit', 'Garmin', 'Polar', 'TomTom',
    'North Face', 'Patagonia', 'Columbia', 'REI', "Arc'teryx",
    "Levi's", 'Gap', 'Old Navy', 'H&M', 'Zara', 'Uniqlo',
]

SITE_NAMES = {
    'amazon': 'Amazon',
    'target': 'Target',
    'walmart': 'Walmart',
    'bestbuy': 'Best Buy',
}


@dataclass
class PageContent:
    """What a recognizer gets to look at."""
    text: str
    soup: object = None
    url: Optional[str] = None
    hostname: str = ''


@dataclass(frozen=True)
class Recognizer:
    kind: str
    field: str
    func: Callable
    site: Optional[str] = None

    def applies_to(self, hostname):
        return self.site is None or self.site in hostname


_REGISTRY = defaultdict(list)


def recognizer(kinds, field, site=None):
    """Register ``func`` as a recognizer of ``field`` for each kind in ``kinds``."""
    if isinstance(kinds, str):
        kinds = (kinds,)

    def decorator(func):
        for kind in kinds:
            _REGISTRY[kind].append(Recognizer(kind, field, func, site))
        return func
    return decorator


def recognizers_for(kind, hostname=''):
    """
    Ordered recognizers for a kind: site-specific matches first, then the
    generic ones in registration order.
    """
    registered = _REGISTRY.get(kind, [])
    site_specific = [r for r in registered if r.site is not None and r.applies_to(hostname)]
    generic = [r for r in registered if r.site is None]
    return site_specific + generic


def check_range(field, value, low, high):
    if value < low or value > high:
        raise OutOfRangeField(field, value, low, high)
    return value


# --------------------------------------------------------------------------
# Policy text recognizers

POLICY_KINDS = ('return_policy', 'price_match_policy')

# (pattern, confidence) ordered from explicit to vague
RETURN_WINDOW_PATTERNS = [
    (re.compile(r'(\d+)\s*[-]?\s*days?\s+(?:return|refund|exchange)', re.I), 0.85),
    (re.compile(r'(?:return|refund|exchange)s?\s+(?:window|period)\s+(?:of\s+|is\s+)?(\d+)\s*days?', re.I), 0.85),
    (re.compile(r'within\s+(\d+)\s*days?', re.I), 0.75),
    (re.compile(r'(\d+)\s*[-]?\s*days?', re.I), 0.5),
]

PRICE_MATCH_WINDOW_PATTERNS = [
    (re.compile(r'within\s+(\d+)\s*days?\s+(?:of|after)\s+(?:purchase|buying)', re.I), 0.8),
    (re.compile(r'(\d+)\s*[-]?\s*days?\s+(?:after|of|from)\s+(?:purchase|buying)', re.I), 0.75),
    (re.compile(r'price\s+(?:match|adjustment).*?(\d+)\s*days?', re.I), 0.6),
]


def _day_candidates(text, patterns):
    """Best weight per matched number, keyed by the digit span so a phrase is only counted once."""
    by_span = {}
    for pattern, weight in patterns:
        for match in pattern.finditer(text):
            span = match.span(1)
            if weight > by_span.get(span, (None, 0))[1]:
                by_span[span] = (int(match.group(1)), weight)
    return list(by_span.values())


def _best_day_count(field, text, patterns):
    candidates = _day_candidates(text, patterns)
    if not candidates:
        return None

    counts = Counter(days for days, _ in candidates)
    best_weight = {}
    for days, weight in candidates:
        best_weight[days] = max(weight, best_weight.get(days, 0))

    # Repeated mentions of the same value add a little certainty
    scored = sorted(
        ((min(0.95, best_weight[days] + 0.05 * (counts[days] - 1)), counts[days], days) for days in counts),
        key=lambda entry: (-entry[0], -entry[1], entry[2]),
    )
    confidence, _, days = scored[0]
    check_range(field, days, 1, MAX_WINDOW_DAYS)
    return days, round(confidence, 4)


def _polarity(text, positive_patterns, negative_patterns):
    positive = sum(1 for pattern in positive_patterns if pattern.search(text))
    negative = sum(1 for pattern in negative_patterns if pattern.search(text))
    if positive > negative:
        return True, min(0.85, 0.5 + positive * 0.15)
    if negative > positive:
        return False, min(0.85, 0.5 + negative * 0.15)
    return None


def _compile(*patterns):
    return [re.compile(pattern, re.I) for pattern in patterns]


@recognizer(POLICY_KINDS, 'return_window_days')
def return_window_days(page):
    return _best_day_count('return_window_days', page.text, RETURN_WINDOW_PATTERNS)


@recognizer(POLICY_KINDS, 'free_returns')
def free_returns(page):
    return _polarity(
        page.text,
        _compile(
            r'free\s+returns?',
            r'returns?\s+(?:are\s+)?free',
            r'no\s+(?:cost|charge|fee)\s+(?:for\s+)?returns?',
            r'complimentary\s+returns?',
        ),
        _compile(
            r'return\s+(?:fee|cost|charge)',
            r'\$\d+(?:\.\d{2})?\s+(?:return|shipping)',
            r'deducted\s+from\s+(?:your\s+)?refund',
        ),
    )


@recognizer(POLICY_KINDS, 'free_return_shipping')
def free_return_shipping(page):
    return _polarity(
        page.text,
        _compile(
            r'free\s+(?:return\s+)?shipping',
            r'prepaid\s+(?:return\s+)?label',
            r"(?:we|we'll)\s+(?:provide|send|email)\s+(?:a\s+)?(?:prepaid\s+)?(?:return\s+)?label",
            r'shipping\s+(?:is\s+)?(?:on\s+us|free)',
            r'no\s+(?:shipping\s+)?(?:cost|charge)\s+(?:for\s+)?returns?',
        ),
        _compile(
            r'(?:you|customer)\s+(?:pay|responsible)\s+(?:for\s+)?(?:return\s+)?shipping',
            r'shipping\s+(?:fee|cost|charge)',
            r'deducted\s+(?:from|for)\s+(?:return\s+)?shipping',
        ),
    )


@recognizer(POLICY_KINDS, 'paid_return_cost')
def paid_return_cost(page):
    for pattern in _compile(
        r'\$(\d+(?:\.\d{2})?)\s+(?:return|shipping)\s+(?:fee|cost)',
        r'(?:return|shipping)\s+(?:fee|cost)\s+(?:of\s+)?\$(\d+(?:\.\d{2})?)',
        r'deduct(?:ed)?\s+\$(\d+(?:\.\d{2})?)',
    ):
        match = pattern.search(page.text)
        if match:
            cost = float(match.group(1))
            return check_range('paid_return_cost', cost, 0.01, 1000), 0.75
    return None


@recognizer(POLICY_KINDS, 'restocking_fee_percent')
def restocking_fee_percent(page):
    for pattern in _compile(
        r'(\d+)\s*(?:%|percent)\s*restocking\s+fee',
        r'restocking\s+fee\s+(?:of\s+)?(\d+)\s*(?:%|percent)',
    ):
        match = pattern.search(page.text)
        if match:
            fee = int(match.group(1))
            return check_range('restocking_fee_percent', fee, 1, 100), 0.8
    return None


@recognizer(POLICY_KINDS, 'exchange_only')
def exchange_only(page):
    return _polarity(
        page.text,
        _compile(
            r'exchange\s+only',
            r'exchanges?\s+only',
            r'no\s+refunds?,?\s+(?:only\s+)?exchanges?',
        ),
        _compile(
            r'refund\s+or\s+exchange',
            r'full\s+refund',
            r'money\s+back',
        ),
    )


@recognizer(POLICY_KINDS, 'store_credit_only')
def store_credit_only(page):
    return _polarity(
        page.text,
        _compile(
            r'store\s+credit\s+only',
            r'(?:refund|return)(?:ed|s)?\s+(?:as|for|in)\s+store\s+credit',
            r'no\s+(?:cash|monetary)\s+refunds?',
        ),
        _compile(
            r'(?:full|original)\s+(?:payment|refund)',
            r'refund\s+to\s+(?:original|your)\s+(?:payment|card)',
        ),
    )


@recognizer(POLICY_KINDS, 'receipt_required')
def receipt_required(page):
    return _polarity(
        page.text,
        _compile(
            r'receipt\s+(?:is\s+)?required',
            r'(?:must|need)\s+(?:to\s+)?(?:have|provide|show)\s+(?:a\s+|the\s+)?receipt',
            r'proof\s+of\s+purchase\s+(?:is\s+)?required',
            r'original\s+receipt',
        ),
        _compile(
            r'without\s+(?:a\s+)?receipt',
            r'no\s+receipt\s+(?:needed|required)',
        ),
    )


@recognizer(POLICY_KINDS, 'original_packaging_required')
def original_packaging_required(page):
    return _polarity(
        page.text,
        _compile(
            r'original\s+(?:packaging|box|container)\s+(?:is\s+)?required',
            r'(?:must|need\s+to)\s+(?:be\s+)?(?:in\s+)?(?:the\s+|its\s+)?original\s+(?:packaging|box)',
            r'unopened',
        ),
        _compile(
            r'without\s+(?:the\s+|original\s+)*packaging',
            r'opened\s+(?:items?|products?)\s+(?:are\s+)?(?:accepted|eligible)',
        ),
    )


@recognizer(POLICY_KINDS, 'final_sale_items')
def final_sale_items(page):
    return _polarity(
        page.text,
        _compile(
            r'final\s+sale',
            r'non[-\s]?returnable',
            r'all\s+sales\s+(?:are\s+)?final',
            r'no\s+returns?\s+on\s+(?:sale|clearance)',
        ),
        [],
    )


@recognizer(POLICY_KINDS, 'price_match_window_days')
def price_match_window_days(page):
    return _best_day_count('price_match_window_days', page.text, PRICE_MATCH_WINDOW_PATTERNS)


@recognizer(POLICY_KINDS, 'price_match_competitors')
def price_match_competitors(page):
    return _polarity(
        page.text,
        _compile(
            r'(?:match|beat)\s+(?:a\s+)?(?:competitor|other\s+retailer)',
            r'competitor(?:\'s|s)?\s+(?:price\s+)?match',
            r'(?:match|beat).{0,40}(?:amazon|walmart|target|best\s+buy)',
            r'authorized\s+(?:retailers?|dealers?)',
        ),
        _compile(
            r"(?:do\s+not|don't|won't|will\s+not)\s+(?:price\s+)?match\s+(?:competitor|other)",
        ),
    )


@recognizer(POLICY_KINDS, 'price_match_own_sales')
def price_match_own_sales(page):
    return _polarity(
        page.text,
        _compile(
            r'price\s+(?:adjustment|protection)',
            r'(?:match|adjust)\s+(?:our\s+)?(?:own\s+)?(?:lower\s+)?price',
            r'(?:if|when)\s+(?:the\s+)?(?:price|it)\s+(?:drops|goes\s+down)',
            r'(?:refund|credit)\s+(?:you\s+)?(?:the\s+)?difference',
        ),
        _compile(
            r'(?:no|not)\s+(?:price\s+)?adjustments?',
            r'(?:sale|promotional)\s+prices?\s+(?:are\s+)?(?:excluded|not\s+eligible)',
        ),
    )


# --------------------------------------------------------------------------
# Product page recognizers

PRODUCT = 'product'


def parse_price(raw):
    if raw is None:
        return None
    cleaned = re.sub(r'[^0-9.,]', '', str(raw))
    if not cleaned:
        return None
    # "1.299,00" style decimals
    if re.search(r',\d{2}$', cleaned) and '.' not in cleaned[-3:]:
        cleaned = cleaned.replace('.', '').replace(',', '.')
    cleaned = cleaned.replace(',', '')
    try:
        price = float(cleaned)
    except ValueError:
        return None
    return check_range('price', price, 0.01, 1000000)


def _select_text(soup, *selectors):
    for selector in selectors:
        element = soup.select_one(selector)
        if element is not None:
            text = element.get_text(strip=True)
            if text:
                return text
    return None


def _select_attr(soup, attr, *selectors):
    for selector in selectors:
        element = soup.select_one(selector)
        if element is not None and element.get(attr):
            return element.get(attr).strip()
    return None


def _meta(soup, *names):
    for name in names:
        element = soup.find('meta', attrs={'property': name}) or soup.find('meta', attrs={'name': name})
        if element is not None and element.get('content'):
            return element['content'].strip()
    return None


def extract_brand_from_title(title):
    """Known brand appearing at the start or as a word of a product title."""
    if not title:
        return None
    lowered = title.lower()
    for brand in COMMON_BRANDS:
        brand_lower = brand.lower()
        if (lowered.startswith(brand_lower + ' ') or lowered.startswith(brand_lower + '-')
                or f' {brand_lower} ' in lowered or f'-{brand_lower}-' in lowered):
            return brand
    return None


def _json_ld_product(soup):
    for script in soup.find_all('script', attrs={'type': 'application/ld+json'}):
        try:
            payload = json.loads(script.string or '')
        except (TypeError, ValueError):
            continue
        if isinstance(payload, dict):
            candidates = payload.get('@graph', [payload])
        elif isinstance(payload, list):
            candidates = payload
        else:
            continue
        for candidate in candidates:
            if isinstance(candidate, dict) and candidate.get('@type') in ('Product', ['Product']):
                return candidate
    return None


def _soup_only(func):
    def wrapper(page):
        if page.soup is None:
            return None
        return func(page)
    wrapper.__name__ = func.__name__
    wrapper.__doc__ = func.__doc__
    return wrapper


# Amazon

@recognizer(PRODUCT, 'product_name', site='amazon.')
@_soup_only
def amazon_product_name(page):
    name = _select_text(page.soup, '#productTitle', '#ebooksProductTitle', '#title span', 'h1.a-size-large')
    return (name[:500], 0.9) if name else None


@recognizer(PRODUCT, 'brand', site='amazon.')
@_soup_only
def amazon_brand(page):
    author = _select_text(page.soup, '.author a', '#bylineInfo a.contributorNameID')
    if author:
        return author, 0.8
    byline = _select_text(page.soup, '#bylineInfo')
    if byline:
        brand = re.sub(r'^(Brand:|Visit the|by)\s*', '', byline, flags=re.I)
        brand = re.sub(r'\s*(Store|Page)$', '', brand, flags=re.I).strip()
        return (brand, 0.8) if brand else None
    return None


@recognizer(PRODUCT, 'sale_price', site='amazon.')
@_soup_only
def amazon_sale_price(page):
    whole = _select_text(page.soup, '.a-price.aok-align-center .a-price-whole', '.a-price .a-price-whole')
    if whole:
        fraction = _select_text(page.soup, '.a-price.aok-align-center .a-price-fraction', '.a-price .a-price-fraction')
        whole_digits = re.sub(r'[^0-9]', '', whole) or '0'
        fraction_digits = re.sub(r'[^0-9]', '', fraction or '') or '00'
        price = parse_price(f'{whole_digits}.{fraction_digits}')
        return (price, 0.9) if price else None
    offscreen = _select_text(page.soup, '.a-price .a-offscreen')
    if offscreen:
        price = parse_price(offscreen)
        return (price, 0.8) if price else None
    return None


@recognizer(PRODUCT, 'price', site='amazon.')
@_soup_only
def amazon_list_price(page):
    listed = _select_text(page.soup, '.a-price.a-text-price .a-offscreen', '.a-text-strike .a-offscreen')
    price = parse_price(listed)
    return (price, 0.85) if price else None


@recognizer(PRODUCT, 'image_url', site='amazon.')
@_soup_only
def amazon_image(page):
    image = (_select_attr(page.soup, 'data-old-hires', '#landingImage')
             or _select_attr(page.soup, 'src', '#landingImage', '#imgBlkFront', '#ebooksImgBlkFront', 'img.a-dynamic-image'))
    return (image, 0.85) if image else None


# Target

@recognizer(PRODUCT, 'product_name', site='target.com')
@_soup_only
def target_product_name(page):
    name = _select_text(page.soup, 'h1[data-test="product-title"]')
    return (name[:500], 0.9) if name else None


@recognizer(PRODUCT, 'brand', site='target.com')
@_soup_only
def target_brand(page):
    brand = _select_text(page.soup, 'a[data-test="product-brand"]')
    return (brand, 0.85) if brand else None


@recognizer(PRODUCT, 'sale_price', site='target.com')
@_soup_only
def target_sale_price(page):
    price = parse_price(_select_text(page.soup, '[data-test="product-price"]'))
    return (price, 0.9) if price else None


@recognizer(PRODUCT, 'price', site='target.com')
@_soup_only
def target_regular_price(page):
    regular = _select_text(page.soup, '[data-test="product-price-reg"]')
    if regular and regular != _select_text(page.soup, '[data-test="product-price"]'):
        price = parse_price(regular)
        return (price, 0.85) if price else None
    return None


# Walmart

@recognizer(PRODUCT, 'product_name', site='walmart.com')
@_soup_only
def walmart_product_name(page):
    name = _select_text(page.soup, 'h1[itemprop="name"]')
    return (name[:500], 0.9) if name else None


@recognizer(PRODUCT, 'brand', site='walmart.com')
@_soup_only
def walmart_brand(page):
    brand = _select_text(page.soup, '[itemprop="brand"]')
    return (brand, 0.85) if brand else None


@recognizer(PRODUCT, 'sale_price', site='walmart.com')
@_soup_only
def walmart_sale_price(page):
    raw = _select_attr(page.soup, 'content', '[itemprop="price"]') or _select_text(page.soup, '.price-characteristic')
    price = parse_price(raw)
    return (price, 0.9) if price else None


@recognizer(PRODUCT, 'price', site='walmart.com')
@_soup_only
def walmart_was_price(page):
    price = parse_price(_select_text(page.soup, 'span.was-price .visuallyhidden'))
    return (price, 0.85) if price else None


# Best Buy

@recognizer(PRODUCT, 'product_name', site='bestbuy.com')
@_soup_only
def bestbuy_product_name(page):
    name = _select_text(page.soup, 'h1.sku-title')
    return (name[:500], 0.9) if name else None


@recognizer(PRODUCT, 'brand', site='bestbuy.com')
@_soup_only
def bestbuy_brand(page):
    brand = _select_text(page.soup, 'a.sku-value')
    return (brand, 0.8) if brand else None


@recognizer(PRODUCT, 'sale_price', site='bestbuy.com')
@_soup_only
def bestbuy_sale_price(page):
    price = parse_price(_select_text(page.soup, 'div[data-testid="customer-price"] span[aria-hidden="true"]'))
    return (price, 0.9) if price else None


# Generic metadata fallback, any site

@recognizer(PRODUCT, 'product_name')
@_soup_only
def meta_product_name(page):
    name = _meta(page.soup, 'og:title', 'title')
    if name:
        return name[:500], 0.7
    product = _json_ld_product(page.soup)
    if product and product.get('name'):
        return str(product['name'])[:500], 0.75
    if page.soup.title and page.soup.title.get_text(strip=True):
        return page.soup.title.get_text(strip=True)[:500], 0.4
    return None


@recognizer(PRODUCT, 'brand')
@_soup_only
def meta_brand(page):
    brand = _meta(page.soup, 'og:brand', 'product:brand')
    if brand:
        return brand, 0.7
    product = _json_ld_product(page.soup)
    if product and product.get('brand'):
        brand = product['brand']
        name = brand.get('name') if isinstance(brand, dict) else brand
        if name:
            return str(name), 0.75
    title = _meta(page.soup, 'og:title') or (page.soup.title.get_text(strip=True) if page.soup.title else '')
    brand = extract_brand_from_title(title)
    if brand:
        return brand, 0.5
    # "Product – Brand" / "Product | Brand" page titles
    match = re.search(r'[–—|]\s*(.+?)$', title or '')
    if match:
        brand = extract_brand_from_title(match.group(1).strip() + ' ')
        if brand:
            return brand, 0.45
    return None


@recognizer(PRODUCT, 'sale_price')
@_soup_only
def meta_price(page):
    raw = _meta(page.soup, 'og:price:amount', 'product:price:amount')
    if raw:
        price = parse_price(raw)
        return (price, 0.7) if price else None
    product = _json_ld_product(page.soup)
    if product:
        offers = product.get('offers')
        if isinstance(offers, list):
            offers = offers[0] if offers else None
        if isinstance(offers, dict) and offers.get('price') is not None:
            price = parse_price(offers['price'])
            return (price, 0.75) if price else None
    return None


@recognizer(PRODUCT, 'currency')
@_soup_only
def meta_currency(page):
    currency = _meta(page.soup, 'og:price:currency', 'product:price:currency')
    if currency:
        return currency.upper()[:8], 0.7
    product = _json_ld_product(page.soup)
    if product and isinstance(product.get('offers'), dict) and product['offers'].get('priceCurrency'):
        return str(product['offers']['priceCurrency']).upper()[:8], 0.7
    return None


@recognizer(PRODUCT, 'image_url')
@_soup_only
def meta_image(page):
    image = _meta(page.soup, 'og:image', 'og:image:url')
    return (image, 0.7) if image else None


@recognizer(PRODUCT, 'site_name')
def site_name(page):
    if not page.hostname:
        return None
    for marker, name in SITE_NAMES.items():
        if marker in page.hostname:
            return name, 0.95
    return re.sub(r'^www\.', '', page.hostname), 0.9
