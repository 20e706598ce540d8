import logging
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional, Union

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

TAG_RE = re.compile(r"<\s*[a-zA-Z!]")
NON_CONTENT_TAGS = ("script", "style", "noscript", "template")


@dataclass
class LinkCounts:
    internal: int = 0
    external: int = 0
    total: int = 0


@dataclass
class PageFacts:
    title: str = ""
    description: str = ""
    h1: str = ""
    h2s: List[str] = field(default_factory=list)
    word_count: int = 0
    links: LinkCounts = field(default_factory=LinkCounts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _text(tag) -> str:
    return tag.get_text(" ", strip=True) if tag else ""


def _is_internal(href: Optional[str], base_uri: str) -> bool:
    if not href:
        return False
    href = href.strip()
    return href.startswith("/") or bool(base_uri and base_uri in href)


def extract_page_content(html: Union[str, bytes, None], base_url: str = "") -> Optional[PageFacts]:
    """
    Parse an HTML document into PageFacts.

    Returns None instead of raising when the input is empty, is not markup
    or cannot be parsed; callers skip the page in that case.
    """
    if isinstance(html, bytes):
        html = html.decode("utf-8", errors="replace")
    if not isinstance(html, str) or not html.strip() or not TAG_RE.search(html):
        return None

    try:
        doc = BeautifulSoup(html, "lxml")

        base_tag = doc.find("base", href=True)
        base_uri = (base_tag["href"].strip() if base_tag else "") or base_url

        title = _text(doc.find("title"))
        meta = doc.find("meta", attrs={"name": re.compile(r"^description$", re.I)})
        description = (meta.get("content") or "").strip() if meta else ""
        h1 = _text(doc.find("h1"))
        h2s = [text for text in (_text(h2) for h2 in doc.find_all("h2")) if text]

        anchors = doc.find_all("a")
        internal = sum(1 for a in anchors if _is_internal(a.get("href"), base_uri))

        word_count = 0
        if doc.body is not None:
            for tag in doc.body.find_all(NON_CONTENT_TAGS):
                tag.decompose()
            word_count = len([w for w in doc.body.get_text(" ").split() if len(w) > 0])

        return PageFacts(
            title=title,
            description=description,
            h1=h1,
            h2s=h2s,
            word_count=word_count,
            links=LinkCounts(internal=internal, external=len(anchors) - internal, total=len(anchors)),
        )
    except Exception as e:
        logger.warning(f"Could not parse HTML document: {e}")
        return None
