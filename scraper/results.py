from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

CAPTURE_KINDS = ('return_policy', 'price_match_policy', 'product')

# Where a capture's source URL lands in the structured record
SOURCE_URL_FIELDS = {
    'return_policy': 'return_policy_url',
    'price_match_policy': 'price_match_policy_url',
    'product': 'original_url',
}


@dataclass(frozen=True)
class ScrapedField:
    value: Any
    confidence: float
    source: Optional[str] = None

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {self.confidence}")


@dataclass(frozen=True)
class ScrapeResult:
    """
    Outcome of one extraction run.

    Either failed (no recognised fields, warnings explain why) or successful
    (at least one field). The overall confidence is always derived from the
    per-field confidences, so it cannot drift from them.
    """
    success: bool
    capture_kind: str
    fields: Mapping[str, ScrapedField] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()
    source_urls: Tuple[str, ...] = ()
    extracted_text: Optional[str] = None
    # kind of page each source URL came from, parallel to source_urls; empty means positional
    source_kinds: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.capture_kind not in CAPTURE_KINDS:
            raise ValueError(f"Unknown capture kind: {self.capture_kind}")
        if self.success != bool(self.fields):
            raise ValueError("A successful result needs fields and a failed one must have none")
        object.__setattr__(self, 'fields', MappingProxyType(dict(self.fields)))
        object.__setattr__(self, 'warnings', tuple(self.warnings))
        object.__setattr__(self, 'source_urls', tuple(self.source_urls))
        object.__setattr__(self, 'source_kinds', tuple(self.source_kinds))
        if self.source_kinds:
            if len(self.source_kinds) != len(self.source_urls):
                raise ValueError("source_kinds must name the kind of every source URL")
            unknown = [kind for kind in self.source_kinds if kind not in CAPTURE_KINDS]
            if unknown:
                raise ValueError(f"Unknown source kind: {unknown[0]}")

    @classmethod
    def failed(cls, capture_kind, warnings, source_urls=(), extracted_text=None):
        return cls(False, capture_kind, {}, tuple(warnings), tuple(source_urls), extracted_text)

    @classmethod
    def from_fields(cls, capture_kind, fields, warnings=(), source_urls=(), extracted_text=None, source_kinds=()):
        warnings = list(warnings)
        if not fields:
            warnings.append('No recognizable information was found on this page. You can enter the details manually.')
        return cls(bool(fields), capture_kind, fields, tuple(warnings), tuple(source_urls), extracted_text,
                   tuple(source_kinds))

    @property
    def data(self) -> Dict[str, Any]:
        return {name: scraped.value for name, scraped in self.fields.items()}

    @property
    def confidence(self) -> float:
        if not self.success:
            return 0.0
        return float(np.mean([scraped.confidence for scraped in self.fields.values()]))

    def as_record(self) -> Dict[str, Any]:
        """Field values plus the capture's source URL, ready for merging."""
        record = self.data
        if self.source_kinds:
            for kind, url in zip(self.source_kinds, self.source_urls):
                record.setdefault(SOURCE_URL_FIELDS[kind], url)
            return record
        url_fields = [SOURCE_URL_FIELDS[self.capture_kind]]
        if self.capture_kind != 'product':
            # a policy capture may also have fetched the other policy's page
            url_fields += [SOURCE_URL_FIELDS[kind] for kind in ('return_policy', 'price_match_policy')
                           if kind != self.capture_kind]
        for url_field, url in zip(url_fields, self.source_urls):
            record.setdefault(url_field, url)
        return record

    def to_dict(self):
        body = {
            'success': self.success,
            'captureKind': self.capture_kind,
            'warnings': list(self.warnings),
            'sourceUrls': list(self.source_urls),
        }
        if self.source_kinds:
            body['sourceKinds'] = list(self.source_kinds)
        if self.success:
            body['data'] = self.data
            body['confidence'] = {
                'overall': self.confidence,
                'fields': {name: scraped.confidence for name, scraped in self.fields.items()},
            }
        if self.extracted_text:
            body['extractedText'] = self.extracted_text[:2000]
        return body

    @classmethod
    def from_dict(cls, body):
        if not isinstance(body, dict):
            raise ValueError("Scrape result must be an object")
        kind = body.get('captureKind')
        data = body.get('data') or {}
        confidences = (body.get('confidence') or {}).get('fields') or {}
        fields = {
            name: ScrapedField(value, float(confidences.get(name, 0.0)))
            for name, value in data.items()
        }
        if not body.get('success'):
            fields = {}
        return cls(
            bool(fields),
            kind,
            fields,
            tuple(body.get('warnings') or ()),
            tuple(body.get('sourceUrls') or ()),
            body.get('extractedText'),
            tuple(body.get('sourceKinds') or ()),
        )
