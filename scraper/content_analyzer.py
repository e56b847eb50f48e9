import logging
import re
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from errors import OutOfRangeField
from .recognizers import PageContent, recognizers_for
from .results import CAPTURE_KINDS, ScrapedField, ScrapeResult

logger = logging.getLogger(__name__)

MAX_TEXT_LENGTH = 10000

# Agent-side heuristics are trusted less than the server's own recognizers
AGENT_FIELD_CONFIDENCE = 0.6
AGENT_FIELDS = ('product_name', 'brand', 'price', 'sale_price', 'currency', 'image_url')


class ContentAnalyzer:
    """Turns captured page content into a confidence-scored ScrapeResult."""

    def analyze(self, content, capture_kind, source_url=None, agent_fields=None):
        if capture_kind not in CAPTURE_KINDS:
            raise ValueError(f"Unknown capture kind: {capture_kind}")

        warnings = []
        source_urls = [source_url] if source_url else []
        hostname = (urlparse(source_url).hostname or '').lower() if source_url else ''

        soup = None
        text = ''
        if content:
            try:
                soup = BeautifulSoup(content, 'html.parser')
                text = self._extract_text(BeautifulSoup(content, 'html.parser'))
            except Exception as e:
                logger.error(f"Error parsing captured content: {str(e)}", exc_info=True)
                warnings.append('Failed to parse captured page content')

        if not text and not agent_fields:
            logger.info(f"Nothing to analyze for {capture_kind} capture from {hostname or 'unknown host'}")
            warnings.append('No page content was captured')
            return ScrapeResult.failed(capture_kind, warnings, source_urls)

        page = PageContent(text=text, soup=soup, url=source_url, hostname=hostname)
        fields = {}
        dropped = set()
        for recognizer in recognizers_for(capture_kind, hostname):
            if recognizer.field in fields or recognizer.field in dropped:
                continue
            try:
                found = recognizer.func(page)
            except OutOfRangeField as e:
                logger.info(f"Dropped {e.field}={e.value} from {hostname or 'capture'}")
                warnings.append(str(e))
                dropped.add(recognizer.field)
                continue
            if found is not None:
                value, confidence = found
                fields[recognizer.field] = ScrapedField(value, confidence, recognizer.func.__name__)

        if capture_kind == 'product' and agent_fields:
            self._add_agent_fields(fields, dropped, agent_fields, warnings)

        result = ScrapeResult.from_fields(
            capture_kind,
            fields,
            warnings=warnings,
            source_urls=source_urls,
            extracted_text=text[:2000] if capture_kind != 'product' else None,
        )
        logger.info(f"Analyzed {capture_kind} capture: {len(result.fields)} fields, confidence {result.confidence:.2f}")
        return result

    def _add_agent_fields(self, fields, dropped, agent_fields, warnings):
        """Fill fields the server could not recognise with values the agent found in the live page."""
        for name in AGENT_FIELDS:
            value = agent_fields.get(name)
            if name in fields or name in dropped or value in (None, ''):
                continue
            if name in ('price', 'sale_price'):
                try:
                    value = float(value)
                except (TypeError, ValueError):
                    warnings.append(f"Ignored unreadable {name.replace('_', ' ')} from the page")
                    continue
                if not 0 < value <= 1000000:
                    warnings.append(f"Ignored implausible {name.replace('_', ' ')} of {value}")
                    continue
            elif not isinstance(value, str):
                continue
            else:
                value = value.strip()[:500]
            fields[name] = ScrapedField(value, AGENT_FIELD_CONFIDENCE, 'agent')

    def _extract_text(self, soup):
        """Main visible text of a page, whitespace collapsed"""
        for element in soup(['script', 'style', 'nav', 'header', 'footer', 'aside', 'noscript']):
            element.decompose()
        for element in soup.select('.nav, .header, .footer, .sidebar'):
            element.decompose()

        main_content = ' '.join(
            element.get_text(' ') for element in soup.select('main, article, .content, .main-content, #content, #main')
        )
        main_content = self._clean_text(main_content)
        if len(main_content) > 500:
            return main_content[:MAX_TEXT_LENGTH]

        body = soup.body if soup.body else soup
        return self._clean_text(body.get_text(' '))[:MAX_TEXT_LENGTH]

    def _clean_text(self, text):
        text = re.sub(r'\s+', ' ', text or '')
        return ''.join(char for char in text if char.isprintable()).strip()
