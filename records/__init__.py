"""
Record building package

- merge: Combines manual, community and scraped fields under a fixed priority
- duplicates: Classifies a candidate item against a wishlist's stored items
- policy: Type and range checks for policy values that come from outside the extractor
"""

from .duplicates import DuplicateResult, SubmissionState, check, normalize_name, normalize_url
from .merge import MergedRecord, merge

__all__ = [
    'DuplicateResult',
    'MergedRecord',
    'SubmissionState',
    'check',
    'merge',
    'normalize_name',
    'normalize_url',
]
