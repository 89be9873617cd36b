"""
HTML sanitizing and body decoding helpers.

Outgoing bodies come from a rich text editor and are rendered as HTML by the
recipients' clients, so they are always reduced to a safe subset of markup
before they are handed to a provider.
"""

import html
import re

from bs4 import BeautifulSoup, Comment

# Removed together with everything inside them
DROP_TAGS = frozenset({
    'script', 'style', 'iframe', 'frame', 'frameset', 'object', 'embed',
    'applet', 'form', 'input', 'button', 'select', 'textarea', 'link',
    'meta', 'base', 'noscript', 'template', 'svg', 'math',
})

ALLOWED_TAGS = frozenset({
    'a', 'b', 'blockquote', 'br', 'code', 'div', 'em', 'h1', 'h2', 'h3',
    'h4', 'h5', 'h6', 'hr', 'i', 'img', 'li', 'mark', 'ol', 'p', 'pre', 's',
    'span', 'strong', 'sub', 'sup', 'table', 'tbody', 'td', 'th', 'thead',
    'tr', 'u', 'ul',
})

ALLOWED_ATTRIBUTES = {
    'a': frozenset({'href', 'title', 'target', 'rel'}),
    'img': frozenset({'src', 'alt', 'title', 'width', 'height'}),
    'td': frozenset({'colspan', 'rowspan'}),
    'th': frozenset({'colspan', 'rowspan'}),
    'ol': frozenset({'start'}),
}
GLOBAL_ATTRIBUTES = frozenset({'style', 'class', 'dir', 'align'})

URL_ATTRIBUTES = frozenset({'href', 'src'})
SAFE_URL_SCHEMES = ('http:', 'https:', 'mailto:', 'tel:', 'cid:')

# expression() and url(javascript:...) in inline styles
UNSAFE_STYLE = re.compile(r'expression\s*\(|javascript:|vbscript:|@import', re.IGNORECASE)


def _is_safe_url(tag_name: str, value: str) -> bool:
    url = re.sub(r'[\s\x00-\x1f]', '', html.unescape(value)).lower()
    if not url or url.startswith(('#', '/')) or ':' not in url.split('/', 1)[0]:
        return True
    if tag_name == 'img' and url.startswith('data:image/'):
        return True
    return url.startswith(SAFE_URL_SCHEMES)


def sanitize_html(content: str) -> str:
    """
    Strip unsafe markup from an HTML fragment.

    Script-like elements are removed with their content, unknown elements are
    unwrapped so their text survives, and attributes are reduced to a small
    allow list with event handlers and unsafe URLs dropped.

    Args:
        content: HTML produced by the compose editor

    Returns:
        Sanitized HTML
    """
    if not content:
        return ""

    soup = BeautifulSoup(content.strip(), 'html.parser')

    for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
        comment.extract()

    for tag in soup.find_all(True):
        if tag.decomposed:
            continue
        if tag.name in DROP_TAGS:
            tag.decompose()
            continue
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue

        allowed = ALLOWED_ATTRIBUTES.get(tag.name, frozenset()) | GLOBAL_ATTRIBUTES
        for attr in list(tag.attrs):
            value = tag.attrs[attr]
            if isinstance(value, list):
                value = ' '.join(value)
            if attr not in allowed:
                del tag.attrs[attr]
            elif attr in URL_ATTRIBUTES and not _is_safe_url(tag.name, value):
                del tag.attrs[attr]
            elif attr == 'style' and UNSAFE_STYLE.search(value):
                del tag.attrs[attr]

        if tag.name == 'a' and tag.get('target') == '_blank':
            tag['rel'] = 'noopener noreferrer'

    return str(soup)


def decode_entities(text: str) -> str:
    """Decode HTML entities in provider-supplied subjects and snippets."""
    return html.unescape(text or '').strip()


def text_to_html(text: str) -> str:
    """Turn a plain text body into render-ready HTML."""
    escaped = html.escape(html.unescape(text or ''), quote=False)
    return escaped.replace('\r\n', '\n').replace('\n', '<br>')
