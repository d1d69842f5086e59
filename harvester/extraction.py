"""
Extraction collaborator.

The orchestrator only needs a record list and pagination cursors from each
page. SelectorExtractor provides them from CSS selectors supplied as
configuration, parsing with BeautifulSoup over lxml.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from pydantic import BaseModel, Field

from harvester.errors import ParsingError

logger = logging.getLogger(__name__)


@dataclass
class PageExtraction:
    """Records and pagination cursors from one result page."""

    records: List[Dict[str, Any]] = field(default_factory=list)
    total_results: Optional[int] = None
    current_page: int = 1
    total_pages: Optional[int] = None
    next_page_url: Optional[str] = None


class Extractor(Protocol):
    """Turns page content into raw records."""

    def extract(self, content: str, url: str) -> PageExtraction: ...


class SelectorMap(BaseModel):
    """CSS selectors describing a result page layout."""

    results_container: str = Field(default=".search-results", description="Wrapper around all result cards")
    item: str = Field(default=".listing", description="One result card")
    empty_marker: Optional[str] = Field(default=".no-results", description="Present when the search has no hits")

    # Raw record field -> selector inside a card (text content)
    fields: Dict[str, str] = Field(default_factory=lambda: {
        "title": ".title",
        "asking_price": ".asking-price",
        "revenue": ".revenue",
        "cash_flow": ".cash-flow",
        "location": ".location",
        "industry": ".industry",
        "description": ".description",
        "listed_date": ".listed-date",
        "established": ".established",
        "employees": ".employees",
    })
    features: str = Field(default=".features li", description="Feature tags inside a card")
    images: str = Field(default="img", description="Images inside a card")
    link: str = Field(default="a[href]", description="Link to the listing detail page")
    listing_id_attr: str = Field(default="data-listing-id", description="Card attribute holding the listing id")

    total_results: Optional[str] = Field(default=".result-count")
    current_page: Optional[str] = Field(default=".pagination .active")
    last_page: Optional[str] = Field(default=".pagination li:not(.next):last-of-type")
    next_page: Optional[str] = Field(default=".pagination .next a[href]")


_NUMBER = re.compile(r"\d[\d,]*")


def _first_int(text: str) -> Optional[int]:
    match = _NUMBER.search(text or "")
    return int(match.group().replace(",", "")) if match else None


class SelectorExtractor:
    """
    Selector-driven extractor.

    Example:
        extractor = SelectorExtractor(SelectorMap(item=".result-card"))
        page = extractor.extract(html, url)
        for raw in page.records:
            ...
    """

    def __init__(self, selectors: SelectorMap | None = None, parser: str = "lxml"):
        self.selectors = selectors or SelectorMap()
        self._parser = parser

    def _text(self, node: Tag, selector: str) -> Optional[str]:
        found = node.select_one(selector)
        if found is None:
            return None
        text = found.get_text(" ", strip=True)
        return text or None

    def _record(self, card: Tag, page_url: str) -> Dict[str, Any]:
        s = self.selectors
        record: Dict[str, Any] = {}

        for name, selector in s.fields.items():
            value = self._text(card, selector)
            if value is not None:
                record[name] = value

        listing_id = card.get(s.listing_id_attr)
        if listing_id:
            record["listing_id"] = listing_id

        link = card.select_one(s.link)
        if link is not None and link.get("href"):
            record["url"] = urljoin(page_url, link["href"])

        features = [f.get_text(" ", strip=True) for f in card.select(s.features)]
        if features:
            record["features"] = features

        images = [urljoin(page_url, img["src"]) for img in card.select(s.images) if img.get("src")]
        if images:
            record["images"] = images

        return record

    def extract(self, content: str, url: str) -> PageExtraction:
        """
        Extract records and pagination from a result page.

        Raises:
            ParsingError: If the results container is missing
        """
        s = self.selectors
        soup = BeautifulSoup(content, self._parser)

        container = soup.select_one(s.results_container)
        if container is None:
            if s.empty_marker and soup.select_one(s.empty_marker):
                return PageExtraction(total_results=0, total_pages=0)
            raise ParsingError(
                f"Results container '{s.results_container}' not found on {url}",
                context={"url": url, "selector": s.results_container},
            )

        records = [self._record(card, url) for card in container.select(s.item)]

        page = PageExtraction(records=records)
        if s.total_results:
            page.total_results = _first_int(self._text(soup, s.total_results) or "")
        if s.current_page:
            page.current_page = _first_int(self._text(soup, s.current_page) or "") or 1
        if s.last_page:
            page.total_pages = _first_int(self._text(soup, s.last_page) or "")
        if s.next_page:
            link = soup.select_one(s.next_page)
            if link is not None and link.get("href"):
                page.next_page_url = urljoin(url, link["href"])

        logger.debug(
            f"Extracted {len(records)} records from {url} "
            f"(page {page.current_page}/{page.total_pages or '?'})"
        )
        return page
