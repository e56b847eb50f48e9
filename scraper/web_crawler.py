import trafilatura
import requests
from bs4 import BeautifulSoup
from urllib.parse import urljoin, urlparse
import time
import logging
from urllib.robotparser import RobotFileParser
import re
import threading

from .content_analyzer import ContentAnalyzer
from .results import ScrapeResult

logger = logging.getLogger(__name__)

MAX_RESPONSE_SIZE = 5 * 1024 * 1024
MIN_POLICY_PAGE_SIZE = 1000
CACHE_TTL = 24 * 60 * 60

RETURN_POLICY_PATHS = [
    '/return-policy',
    '/returns-policy',
    '/returns',
    '/return-exchange',
    '/returns-exchanges',
    '/returns-and-exchanges',
    '/customer-service/returns',
    '/help/returns',
    '/shipping-returns',
    '/shipping-and-returns',
    '/refund-policy',
    '/refunds',
    '/return-refund-policy',
    '/policies/refund-policy',
    '/policies/return-policy',
    '/policies/returns',
    '/pages/return-policy',
    '/pages/returns',
    '/pages/refund-policy',
    '/info/returns',
    '/support/returns',
    '/faq/returns',
    '/help/shipping-returns',
]

PRICE_MATCH_PATHS = [
    '/price-match',
    '/price-match-guarantee',
    '/price-match-policy',
    '/price-adjustment',
    '/price-matching',
    '/low-price-guarantee',
    '/best-price-guarantee',
    '/customer-service/price-match',
    '/help/price-match',
    '/pages/price-match',
]

DOMAIN_PATTERN = re.compile(r'^[a-z0-9][a-z0-9-]*(\.[a-z0-9-]+)*\.[a-z]{2,}$')


def clean_domain(domain):
    """'https://www.Store.example/path' -> 'store.example', or None when it is not a domain"""
    cleaned = re.sub(r'^(https?://)?(www\.)?', '', (domain or '').strip().lower()).split('/')[0]
    return cleaned if DOMAIN_PATTERN.match(cleaned) else None


class WebCrawler:
    """Server-side fetching of product pages and store policy pages."""

    def __init__(self, analyzer=None):
        self.headers = {
            'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9',
        }
        self.timeout = 15
        self.analyzer = analyzer or ContentAnalyzer()
        self.robots_cache = {}
        self._policy_cache = {}
        self._cache_lock = threading.Lock()

    def _check_robots_txt(self, url):
        """Check if fetching is allowed by robots.txt"""
        try:
            parsed_url = urlparse(url)
            robots_url = f"{parsed_url.scheme}://{parsed_url.netloc}/robots.txt"

            with self._cache_lock:
                cached = self.robots_cache.get(robots_url)
            if cached and time.time() - cached[1] < CACHE_TTL:
                rp = cached[0]
            else:
                rp = RobotFileParser()
                rp.set_url(robots_url)
                rp.read()
                with self._cache_lock:
                    self._store(self.robots_cache, robots_url, rp)

            return rp.can_fetch(self.headers['User-Agent'], url)
        except Exception as e:
            logger.warning(f"Failed to check robots.txt for {url}: {str(e)}")
            return True  # Allow by default if robots.txt check fails

    def _store(self, cache, key, value):
        """Cache ``value`` under ``key``, dropping entries older than CACHE_TTL. Call with _cache_lock held."""
        now = time.time()
        for stale in [k for k, (_, stored_at) in cache.items() if now - stored_at >= CACHE_TTL]:
            del cache[stale]
        cache[key] = (value, now)

    def fetch_page(self, url):
        """GET a page, returning its HTML or None"""
        if not self.is_valid_url(url):
            logger.warning(f"Refusing to fetch invalid URL: {url}")
            return None
        if not self._check_robots_txt(url):
            logger.warning(f"Robots.txt disallows fetching: {url}")
            return None
        try:
            response = requests.get(url, headers=self.headers, timeout=self.timeout, stream=True)
            response.raise_for_status()
            content = response.raw.read(MAX_RESPONSE_SIZE + 1, decode_content=True)
            if len(content) > MAX_RESPONSE_SIZE:
                logger.warning(f"Response from {url} exceeds {MAX_RESPONSE_SIZE} bytes, skipping")
                return None
            return content.decode(response.encoding or 'utf-8', errors='replace')
        except requests.exceptions.RequestException as e:
            logger.info(f"Failed to fetch {url}: {str(e)}")
            return None

    def extract_main_text(self, html_content):
        """Main text of a policy page, trafilatura first, BeautifulSoup as the fallback"""
        text = trafilatura.extract(html_content, include_comments=False, include_tables=True)
        if text and len(text) > 200:
            return re.sub(r'\s+', ' ', text).strip()

        soup = BeautifulSoup(html_content, 'html.parser')
        return self.analyzer._extract_text(soup)

    def fetch_product(self, url):
        """Fetch a product page and run it through the product recognizers"""
        html_content = self.fetch_page(url)
        if not html_content:
            return ScrapeResult.failed('product', ['Could not fetch the product page'], [url])
        return self.analyzer.analyze(html_content, 'product', source_url=url)

    def find_policy_url(self, base_url, paths):
        for path in paths:
            url = f"{base_url}{path}"
            html_content = self.fetch_page(url)
            if html_content and len(html_content) > MIN_POLICY_PAGE_SIZE:
                return url
        return None

    def find_policy_url_from_homepage(self, base_url, keywords):
        """Follow same-host links whose text or href mentions one of the keywords"""
        html_content = self.fetch_page(base_url)
        if not html_content:
            return None

        soup = BeautifulSoup(html_content, 'html.parser')
        base_host = urlparse(base_url).hostname
        links = []
        for anchor in soup.find_all('a', href=True):
            href = anchor['href']
            text = anchor.get_text(' ', strip=True).lower()
            if href.startswith('#') or href.startswith('javascript:'):
                continue
            if any(keyword in text or keyword in href.lower() for keyword in keywords):
                absolute_url = urljoin(base_url + '/', href)
                if urlparse(absolute_url).hostname == base_host and absolute_url not in links:
                    links.append(absolute_url)

        for url in links[:5]:
            page = self.fetch_page(url)
            if page and len(page) > MIN_POLICY_PAGE_SIZE:
                return url
        return None

    def _discover(self, domain, paths, keywords):
        for base_url in (f"https://{domain}", f"https://www.{domain}"):
            url = self.find_policy_url(base_url, paths)
            if url:
                return url
        for base_url in (f"https://{domain}", f"https://www.{domain}"):
            url = self.find_policy_url_from_homepage(base_url, keywords)
            if url:
                return url
        return None

    def scrape_policies(self, domain):
        """Discover and analyze a store's return and price match policy pages"""
        with self._cache_lock:
            cached = self._policy_cache.get(domain)
        if cached and time.time() - cached[1] < CACHE_TTL:
            logger.info(f"Policy scrape for {domain} served from cache")
            return cached[0]

        warnings = []
        texts = {}
        urls = {}
        for kind, paths, keywords in (
            ('return_policy', RETURN_POLICY_PATHS, ['return', 'refund']),
            ('price_match_policy', PRICE_MATCH_PATHS, ['price match', 'price-match', 'price adjustment', 'price guarantee']),
        ):
            label = kind.replace('_', ' ')
            url = self._discover(domain, paths, keywords)
            if not url:
                warnings.append(f"Could not find {label} URL")
                continue
            urls[kind] = url
            html_content = self.fetch_page(url)
            if html_content:
                texts[kind] = self.extract_main_text(html_content)
            else:
                warnings.append(f"Could not fetch {label} page")

        if not texts:
            homepage = self.fetch_page(f"https://{domain}") or self.fetch_page(f"https://www.{domain}")
            if homepage:
                page_text = self.extract_main_text(homepage)
                if 'return' in page_text.lower():
                    texts['return_policy'] = page_text
                if 'price match' in page_text.lower():
                    texts['price_match_policy'] = page_text

        if not texts:
            warnings.append('Could not find or access policy pages')
            return ScrapeResult.failed('return_policy', warnings)

        primary_kind = 'return_policy' if 'return_policy' in texts else 'price_match_policy'
        ordered_kinds = sorted(('return_policy', 'price_match_policy'), key=lambda kind: kind != primary_kind)
        combined = ' '.join(texts[kind] for kind in ordered_kinds if kind in texts)

        # Each page is analyzed on its own; a field comes from the page about its policy when that page has it
        fields = {}
        analysis_warnings = []
        for kind in ordered_kinds:
            if kind not in texts:
                continue
            analyzed = self.analyzer.analyze(texts[kind], kind)
            analysis_warnings.extend(w for w in analyzed.warnings if w not in analysis_warnings)
            for name, scraped in analyzed.fields.items():
                owner = 'price_match_policy' if name.startswith('price_match_') else 'return_policy'
                if name not in fields or kind == owner:
                    fields[name] = scraped
        if fields:
            analysis_warnings = [w for w in analysis_warnings if not w.startswith('No recognizable information')]

        result = ScrapeResult.from_fields(
            primary_kind,
            fields,
            warnings=analysis_warnings + warnings,
            source_urls=[urls[kind] for kind in ordered_kinds if kind in urls],
            source_kinds=[kind for kind in ordered_kinds if kind in urls],
            extracted_text=combined[:2000],
        )
        if result.success:
            with self._cache_lock:
                self._store(self._policy_cache, domain, result)
        return result

    def is_valid_url(self, url):
        """Check if URL is valid and has proper scheme"""
        try:
            result = urlparse(url)
            return all([result.scheme in ['http', 'https'], result.netloc])
        except Exception as e:
            logger.error(f"URL validation failed: {str(e)}")
            return False
