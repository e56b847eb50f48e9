"""
Page extraction package

This package turns captured or fetched pages into structured, confidence-scored records:
- ContentAnalyzer: Runs the registered field recognizers over page content
- WebCrawler: Fetches product pages and discovers store policy pages server-side
- ScrapeResult: Immutable outcome of an extraction, with per-field confidence
"""

from .content_analyzer import ContentAnalyzer
from .results import ScrapeResult, ScrapedField
from .web_crawler import WebCrawler

__all__ = ['ContentAnalyzer', 'ScrapeResult', 'ScrapedField', 'WebCrawler']
