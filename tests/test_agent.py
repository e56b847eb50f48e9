"""Tests for the rendered capture agent."""

from urllib.parse import unquote

from capture.agent import build_agent_script, build_bookmarklet

TOKEN = 'ab' * 32


def test_agent_posts_token_without_cookies(app):
    script = build_agent_script('https://wishlist.example/', TOKEN)

    assert '"https://wishlist.example/api/capture/submit"' in script
    assert f'"{TOKEN}"' in script
    assert "credentials: 'omit'" in script
    assert 'document.documentElement.outerHTML' in script


def test_agent_truncates_to_configured_size(app):
    script = build_agent_script('https://wishlist.example', TOKEN, max_content_bytes=2048)

    assert 'var MAX_CONTENT = 2048;' in script
    # the limit is in UTF-8 bytes, so the agent slices encoded bytes rather than characters
    assert 'new TextEncoder().encode(content)' in script
    assert 'encoded.slice(0, MAX_CONTENT)' in script


def test_line_comments_are_stripped(app):
    script = build_agent_script('https://wishlist.example', TOKEN)

    assert not any(line.strip().startswith('//') for line in script.splitlines())
    assert '\n\n' not in script


def test_bookmarklet_is_url_encoded(app):
    bookmarklet = build_bookmarklet('https://wishlist.example', TOKEN)

    assert bookmarklet.startswith('javascript:')
    assert ' ' not in bookmarklet
    assert unquote(bookmarklet[len('javascript:'):]) == build_agent_script('https://wishlist.example', TOKEN)


def test_token_is_escaped_as_a_string_literal(app):
    script = build_agent_script('https://wishlist.example', '"; alert(1); "')

    assert 'var TOKEN = "\\"; alert(1); \\"";' in script
