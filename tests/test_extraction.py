"""
Tests for the selector-driven extractor.
"""

import pytest

from harvester.errors import ParsingError
from harvester.extraction import SelectorExtractor, SelectorMap

from tests.helpers import SEARCH_URL, listing_card, results_page


class TestSelectorExtractor:
    """Tests for SelectorExtractor.extract."""

    def test_records_from_cards(self):
        """Test raw records are read from each card."""
        html = results_page([listing_card("A1"), listing_card("B2", title="Corner Bakery")], total=2)
        page = SelectorExtractor().extract(html, SEARCH_URL)

        assert [r["listing_id"] for r in page.records] == ["A1", "B2"]
        first = page.records[0]
        assert first["title"] == "Busy Downtown Cafe"
        assert first["asking_price"] == "$250,000"
        assert first["location"] == "Austin, TX"
        assert first["features"] == ["Seller Financing"]
        assert page.records[1]["title"] == "Corner Bakery"
        assert page.total_results == 2

    def test_last_page_without_next(self):
        """Test pagination when there is no next link."""
        page = SelectorExtractor().extract(results_page([listing_card("A1")]), SEARCH_URL)
        assert page.current_page == 1
        assert page.total_pages == 1
        assert page.next_page_url is None

    def test_next_link_resolved(self):
        """Test that relative next links resolve against the page URL."""
        html = results_page([listing_card("A1")], next_href="/search?page=2")
        page = SelectorExtractor().extract(html, SEARCH_URL)
        assert page.next_page_url == "https://listings.example.com/search?page=2"

    def test_links_and_images(self):
        card = (
            '<div class="listing" data-listing-id="C3"><h3 class="title">Shop</h3>'
            '<a href="/listing/C3">View</a><img src="/img/c3.jpg"></div>'
        )
        page = SelectorExtractor().extract(results_page([card]), SEARCH_URL)
        record = page.records[0]
        assert record["url"] == "https://listings.example.com/listing/C3"
        assert record["images"] == ["https://listings.example.com/img/c3.jpg"]

    def test_empty_marker(self):
        """Test that a 'no results' page yields an empty extraction."""
        html = '<html><body><div class="no-results">No listings match</div></body></html>'
        page = SelectorExtractor().extract(html, SEARCH_URL)
        assert page.records == []
        assert page.total_results == 0

    def test_missing_container_raises(self):
        """Test that an unrecognized page is a parsing failure."""
        with pytest.raises(ParsingError) as exc_info:
            SelectorExtractor().extract("<html><body><p>Maintenance</p></body></html>", SEARCH_URL)
        assert exc_info.value.context["url"] == SEARCH_URL

    def test_custom_selectors(self):
        """Test that selectors are configuration, not code."""
        selectors = SelectorMap(
            results_container="#results",
            item=".card",
            fields={"title": "h2"},
            listing_id_attr="data-id",
            total_results=None,
            current_page=None,
            last_page=None,
            next_page=None,
        )
        html = '<div id="results"><div class="card" data-id="9"><h2>Laundromat</h2></div></div>'
        page = SelectorExtractor(selectors).extract(html, SEARCH_URL)
        assert page.records == [{"title": "Laundromat", "listing_id": "9"}]
        assert page.total_pages is None
