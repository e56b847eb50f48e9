import logging
import re
from urllib.parse import quote

from flask import render_template

logger = logging.getLogger(__name__)

AGENT_TEMPLATE = 'capture_agent.js'


def build_agent_script(api_url, token, max_content_bytes=1024 * 1024):
    """
    Render the self-contained capture agent for one token.

    The agent only ever sends the capture token it was built with; requests go
    out with ``credentials: 'omit'`` so cookies for the application are never
    attached.
    """
    script = render_template(
        AGENT_TEMPLATE,
        submit_url=api_url.rstrip('/') + '/api/capture/submit',
        token=token,
        max_content_bytes=max_content_bytes,
    )
    # Bookmarklets break on line comments once newlines are stripped by some browsers
    script = re.sub(r'^\s*//.*$', '', script, flags=re.M)
    return '\n'.join(line for line in script.splitlines() if line.strip())


def build_bookmarklet(api_url, token, max_content_bytes=1024 * 1024):
    script = build_agent_script(api_url, token, max_content_bytes)
    logger.debug(f"Built capture bookmarklet ({len(script)} chars) for token {token[:8]}...")
    return 'javascript:' + quote(script, safe='')
