"""
Out-of-band capture package

Moves page content from a third-party page into the application without cookies:
- TokenIssuer: Mints, validates and revokes (by generation) capture tokens
- CaptureSessionStore: One-shot mailbox between the agent and the application tab
- build_bookmarklet: Renders the injected capture agent for a token
- CapturePoller: Polls the result endpoint until a capture arrives
"""

from .agent import build_agent_script, build_bookmarklet
from .client import CapturePoller
from .sessions import CapturePayload, CaptureSessionStore, RetrievedCapture
from .tokens import TokenIssuer

__all__ = [
    'CapturePayload',
    'CapturePoller',
    'CaptureSessionStore',
    'RetrievedCapture',
    'TokenIssuer',
    'build_agent_script',
    'build_bookmarklet',
]
