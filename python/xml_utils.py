"""
Shared XML utilities for the Entity Risk Screening System

Secure parsing of downloaded XML feeds (RSS announcements, news search)
and scraped HTML search pages, plus log sanitization helpers used across
modules.

SECURITY: All XML parsing uses secure defaults to prevent XXE attacks.
"""

import logging
import re
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

from lxml import etree, html

logger = logging.getLogger(__name__)


def get_secure_parser() -> etree.XMLParser:
    """Get a secure XML parser that prevents XXE attacks

    DTDs, entity resolution and network access are disabled.
    """
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        dtd_validation=False,
        load_dtd=False,
        huge_tree=False,
        recover=False
    )


def secure_parse_bytes(content: bytes) -> Any:
    """Securely parse an XML document held in memory

    Args:
        content: Raw XML bytes as downloaded

    Returns:
        Root element

    Raises:
        ValueError: If the document is empty or not well-formed
    """
    if not content or not content.strip():
        raise ValueError("Empty XML document")
    try:
        return etree.fromstring(content, parser=get_secure_parser())
    except etree.XMLSyntaxError as e:
        raise ValueError(f"Invalid XML: {e}") from e


def sanitize_for_logging(text: str, max_length: int = 500) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text
        max_length: Truncate to this many characters

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    # Remove newlines, carriage returns, and other control characters
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    # Collapse multiple spaces
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:max_length] if len(sanitized) > max_length else sanitized


def get_text_from_element(elem: Any, path: str) -> Optional[str]:
    """Safely get text content from an XML element

    Args:
        elem: Parent XML element
        path: XPath-style path to child element

    Returns:
        Stripped text content or None if element not found or empty
    """
    child = elem.find(path)
    if child is not None and child.text:
        return child.text.strip()
    return None


def parse_rss_items(content: bytes) -> List[Dict[str, Optional[str]]]:
    """Extract <item> entries from an RSS 2.0 feed

    Returns:
        List of dicts with title, link, description, published and source keys
    """
    root = secure_parse_bytes(content)
    items = []
    for item in root.iter('item'):
        title = get_text_from_element(item, 'title')
        if not title:
            continue
        items.append({
            'title': title,
            'link': get_text_from_element(item, 'link'),
            'description': get_text_from_element(item, 'description'),
            'published': get_text_from_element(item, 'pubDate'),
            'source': get_text_from_element(item, 'source'),
        })
    logger.debug(f"Parsed {len(items)} RSS items")
    return items


def rss_date(value: Optional[str]) -> str:
    """RFC 822 pubDate as an ISO date, '' when absent or unparseable"""
    if not value:
        return ''
    try:
        return parsedate_to_datetime(value).date().isoformat()
    except (TypeError, ValueError):
        return ''


def get_secure_html_parser() -> html.HTMLParser:
    """HTML parser for scraped search pages; no network access, no entity expansion"""
    return html.HTMLParser(
        no_network=True,
        remove_comments=True,
        remove_pis=True,
        huge_tree=False,
    )


def secure_parse_html(content: bytes) -> Any:
    """Parse a downloaded HTML page

    Raises:
        ValueError: If the page is empty or cannot be parsed
    """
    if not content or not content.strip():
        raise ValueError("Empty HTML document")
    try:
        return html.document_fromstring(content, parser=get_secure_html_parser())
    except (etree.ParserError, etree.XMLSyntaxError) as e:
        raise ValueError(f"Invalid HTML: {e}") from e


def element_text(elem: Any) -> str:
    """Whitespace-collapsed text content of an HTML element"""
    if elem is None:
        return ''
    return ' '.join(elem.text_content().split())


def html_table_rows(content: bytes) -> List[List[str]]:
    """Cell texts of every <tr> in an HTML page, one list per row"""
    doc = secure_parse_html(content)
    rows = []
    for row in doc.iter('tr'):
        rows.append([element_text(cell) for cell in row.findall('td')])
    return rows
