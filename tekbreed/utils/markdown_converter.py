"""
HTML <-> markdown conversion for comment bodies.

Comments arrive as editor HTML, are stored as markdown, and are rendered
back to sanitized HTML for display.
"""
import bleach
import markdown
from markdownify import markdownify

ALLOWED_TAGS = [
    'p', 'br', 'hr', 'strong', 'em', 'del', 's', 'code', 'pre', 'blockquote',
    'ul', 'ol', 'li', 'a', 'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'table', 'thead', 'tbody', 'tr', 'th', 'td',
]
ALLOWED_ATTRS = {
    'a': ['href', 'title', 'rel', 'target'],
    'code': ['class'],
}
ALLOWED_PROTOCOLS = ['http', 'https', 'mailto']


def to_markdown(html: str) -> str:
    if not html:
        return ""
    return markdownify(
        html,
        heading_style="ATX",
        bullets="-",
        strip=["script", "style"],
    ).strip()


def to_html(markdown_text: str) -> str:
    """Render stored markdown with GFM-style line breaks, then apply the allow-list."""
    if not markdown_text:
        return ""
    rendered = markdown.markdown(
        markdown_text,
        extensions=["fenced_code", "tables", "nl2br", "sane_lists"],
    )
    return bleach.clean(
        rendered,
        tags=ALLOWED_TAGS,
        attributes=ALLOWED_ATTRS,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
    )
