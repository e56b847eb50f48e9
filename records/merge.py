"""
Source-priority merge of record fields.

Three inputs may describe the same record: what the user typed, a community
record they imported, and what the extractor scraped. Fields are resolved in
that order; a lower source only fills a field that is still empty. ``False``
and ``0`` are real answers and count as populated.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional

MANUAL = 'manual'
COMMUNITY = 'community'
SCRAPE = 'scrape'

PRIORITY = (MANUAL, COMMUNITY, SCRAPE)


def is_empty(value):
    return value is None or value == ''


@dataclass(frozen=True)
class MergedRecord:
    fields: Dict[str, Any] = field(default_factory=dict)
    # field name -> source it came from
    sources: Dict[str, str] = field(default_factory=dict)

    def fields_from(self, source):
        return {name: self.fields[name] for name, origin in self.sources.items() if origin == source}

    def to_dict(self):
        return {'fields': dict(self.fields), 'sources': dict(self.sources)}


def merge(manual: Optional[Mapping[str, Any]] = None,
          community: Optional[Mapping[str, Any]] = None,
          scraped: Optional[Mapping[str, Any]] = None,
          allowed: Optional[Iterable[str]] = None) -> MergedRecord:
    """
    Merge the three sources, highest priority first.

    ``allowed`` restricts the output to a known set of field names, so stray
    keys from a community row or a scrape never reach the stored record.
    """
    allowed = set(allowed) if allowed is not None else None
    fields = {}
    sources = {}
    for source, values in zip(PRIORITY, (manual, community, scraped)):
        for name, value in (values or {}).items():
            if allowed is not None and name not in allowed:
                continue
            if is_empty(value) or name in fields:
                continue
            fields[name] = value
            sources[name] = source
    return MergedRecord(fields, sources)


def reimport(current: MergedRecord, community: Optional[Mapping[str, Any]],
             scraped: Optional[Mapping[str, Any]] = None,
             allowed: Optional[Iterable[str]] = None) -> MergedRecord:
    """
    Re-run the merge against a different community record.

    Manual fields are carried over untouched. Fields the previous community
    record supplied are replaced by the new record's values, but are kept
    where the new record is silent. Scraped fields fill what is left.
    """
    previous_community = current.fields_from(COMMUNITY)
    community_input = dict(previous_community)
    community_input.update({name: value for name, value in (community or {}).items() if not is_empty(value)})
    if scraped is None:
        scraped = current.fields_from(SCRAPE)
    return merge(current.fields_from(MANUAL), community_input, scraped, allowed=allowed)
