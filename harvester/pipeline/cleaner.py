"""
Listing Cleaner Module

Cleans and normalizes raw listing records before validation.
Handles whitespace, HTML entities, emojis, money strings, locations,
dates, industry slugs and feature tags.
"""

import html
import re
import unicodedata
from datetime import date, datetime
from typing import Any, Dict, List, Optional


# Raw industry text (slugified) -> canonical industry slug
INDUSTRY_MAP = {
    "restaurant": "restaurants",
    "restaurants": "restaurants",
    "food-service": "restaurants",
    "automotive": "automotive",
    "auto": "automotive",
    "retail": "retail",
    "healthcare": "healthcare-medical",
    "medical": "healthcare-medical",
    "technology": "internet-technology",
    "tech": "internet-technology",
    "it": "internet-technology",
    "construction": "construction",
    "manufacturing": "manufacturing",
    "real-estate": "real-estate",
    "realty": "real-estate",
    "business-services": "business-services",
    "services": "business-services",
}

FEATURE_MAP = {
    "seller financing": "seller-financing",
    "owner financing": "seller-financing",
    "real estate included": "real-estate-included",
    "franchise": "franchise",
    "absentee owned": "absentee-owned",
    "management stays": "management-stays",
    "home based": "home-based",
}

DATE_FORMATS = ("%B %d, %Y", "%B %d %Y", "%b %d, %Y", "%b %d %Y", "%m/%d/%Y", "%Y-%m-%d")

LISTING_URL_PATTERNS = (
    re.compile(r"/business/(\d+)-"),
    re.compile(r"/listing/(\d+)"),
    re.compile(r"/(\d+)/business"),
    re.compile(r"id=(\d+)"),
)

MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 2000
MAX_FEATURE_LENGTH = 100
MAX_IMAGES = 20


class ListingCleaner:
    """
    Normalizes raw listing records.

    Features:
    - Whitespace normalization
    - HTML entity decoding
    - Emoji removal
    - Money and integer parsing
    - Multi-format date parsing
    - Canonical industry and feature slugs

    Example:
        cleaner = ListingCleaner()
        cleaned = cleaner.clean_record({"title": "  Busy   Cafe ", "asking_price": "$250,000"})
        # {"title": "Busy Cafe", "asking_price": 250000.0, ...}
    """

    # Emoji pattern (covers most common emojis)
    EMOJI_PATTERN = re.compile(
        "["
        "\U0001F600-\U0001F64F"  # Emoticons
        "\U0001F300-\U0001F5FF"  # Symbols & pictographs
        "\U0001F680-\U0001F6FF"  # Transport & map
        "\U0001F1E0-\U0001F1FF"  # Flags
        "\U00002702-\U000027B0"  # Dingbats
        "]+",
        flags=re.UNICODE,
    )

    MULTI_WHITESPACE = re.compile(r"\s+")
    CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
    STATE_CODE = re.compile(r"\b([A-Z]{2})\b")
    SELLER_FINANCING = re.compile(r"seller\s+financing|owner\s+financing", re.I)
    IMAGE_EXTENSION = re.compile(r"\.(jpg|jpeg|png|gif|webp)$", re.I)

    def clean_text(self, text: Any) -> str:
        """
        Decode entities, drop control characters and emojis, collapse whitespace.

        Args:
            text: Raw text (None and non-strings are coerced)

        Returns:
            Cleaned text, "" for empty input
        """
        if text is None:
            return ""
        result = html.unescape(str(text))
        result = self.CONTROL_CHARS.sub("", result)
        result = unicodedata.normalize("NFKC", result)
        result = self.EMOJI_PATTERN.sub("", result)
        return self.MULTI_WHITESPACE.sub(" ", result).strip()

    def clean_title(self, title: Any) -> str:
        text = self.clean_text(title)
        # Strip leading/trailing punctuation
        text = re.sub(r"^[^\w]+|[^\w]+$", "", text)
        return text[:MAX_TITLE_LENGTH]

    def clean_listing_id(self, listing_id: Any) -> str:
        return re.sub(r"[^\w-]", "", str(listing_id)).upper()

    def extract_id_from_url(self, url: str) -> Optional[str]:
        for pattern in LISTING_URL_PATTERNS:
            match = pattern.search(url)
            if match:
                return f"BBS{match.group(1)}"
        return None

    def listing_key(self, raw: Dict[str, Any]) -> Optional[str]:
        """Natural dedup key of a raw record (listing id, else derived from URL)."""
        raw_id = raw.get("listing_id")
        if raw_id:
            key = self.clean_listing_id(raw_id)
            if key:
                return key
        url = raw.get("url")
        if url:
            return self.extract_id_from_url(str(url))
        return None

    def parse_price(self, value: Any) -> Optional[float]:
        """
        Parse a money string.

        Args:
            value: e.g. "$1,250,000", "(45,000)", 99000

        Returns:
            Float amount or None if no number is present
        """
        if value is None or value == "":
            return None
        if isinstance(value, (int, float)):
            return float(value)

        text = str(value).strip()
        negative = text.startswith("-") or (text.startswith("(") and text.endswith(")"))
        digits = re.sub(r"[^\d.]", "", text)
        if not digits:
            return None
        try:
            amount = float(digits)
        except ValueError:
            return None
        return -amount if negative else amount

    def parse_location(self, location: Any) -> Dict[str, Optional[str]]:
        """
        Split "City, ST" style locations.

        Returns:
            Dict with full, city and state (two-letter code) keys
        """
        full = self.clean_text(location)
        parts = [p.strip() for p in full.split(",") if p.strip()]
        city = None
        state = None
        if len(parts) >= 2:
            city = parts[0]
            match = self.STATE_CODE.search(parts[-1])
            if match:
                state = match.group(1)
        elif full:
            match = self.STATE_CODE.search(full)
            if match:
                state = match.group(1)
        return {"full": full, "city": city, "state": state}

    def map_industry(self, industry: Any) -> str:
        slug = self.clean_text(industry).lower()
        slug = re.sub(r"[^\w\s-]", "", slug)
        slug = re.sub(r"\s+", "-", slug)
        return INDUSTRY_MAP.get(slug, slug)

    def clean_description(self, description: Any) -> str:
        return self.clean_text(description)[:MAX_DESCRIPTION_LENGTH]

    def parse_date(self, value: Any) -> Optional[date]:
        """
        Parse a listing date, trying several formats.

        Returns:
            The date, or None if no format matches
        """
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        text = self.clean_text(value)
        if not text:
            return None

        for fmt in DATE_FORMATS:
            try:
                return datetime.strptime(text, fmt).date()
            except ValueError:
                continue
        try:
            return datetime.fromisoformat(text).date()
        except ValueError:
            return None

    def parse_int(self, value: Any) -> Optional[int]:
        """Parse a whole number from an int, float or text such as "1,200 staff".

        Fractions are truncated.
        """
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            return int(value)
        match = re.search(r"\d[\d,]*(?:\.\d+)?", str(value or ""))
        if not match:
            return None
        return int(float(match.group().replace(",", "")))

    def clean_features(self, features: Optional[List[Any]]) -> List[str]:
        cleaned = []
        for feature in features or []:
            text = self.clean_text(feature).lower()
            if not text or len(text) >= MAX_FEATURE_LENGTH:
                continue
            cleaned.append(FEATURE_MAP.get(text, text))
        return cleaned

    def clean_image_urls(self, images: Optional[List[Any]]) -> List[str]:
        urls = [
            str(url).strip()
            for url in images or []
            if url and str(url).startswith("http") and self.IMAGE_EXTENSION.search(str(url).strip())
        ]
        return urls[:MAX_IMAGES]

    def detect_seller_financing(self, raw: Dict[str, Any]) -> bool:
        sources = " ".join([
            " ".join(str(f) for f in raw.get("features") or []),
            str(raw.get("description") or ""),
            str(raw.get("title") or ""),
        ])
        return bool(self.SELLER_FINANCING.search(sources))

    def clean_record(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """
        Clean a raw record into BusinessListing field names.

        Fields that are absent or unparseable are left out so that the
        validator can report them.
        """
        cleaned: Dict[str, Any] = {}

        title = self.clean_title(raw.get("title"))
        if title:
            cleaned["title"] = title

        key = self.listing_key(raw)
        if key:
            cleaned["listing_id"] = key

        for source, target in (("asking_price", "asking_price"), ("revenue", "revenue"), ("cash_flow", "cash_flow")):
            amount = self.parse_price(raw.get(source))
            if amount is not None:
                cleaned[target] = amount

        if self.clean_text(raw.get("location")):
            location = self.parse_location(raw["location"])
            cleaned["location"] = location["full"]
            if location["city"]:
                cleaned["city"] = location["city"]
            if location["state"]:
                cleaned["state"] = location["state"]

        if self.clean_text(raw.get("industry")):
            cleaned["industry"] = self.map_industry(raw["industry"])

        description = self.clean_description(raw.get("description"))
        if description:
            cleaned["description"] = description

        listed = self.parse_date(raw.get("listed_date"))
        if listed:
            cleaned["listed_date"] = listed

        # Kept unfiltered here so the validator can flag implausible years
        established = self.parse_int(raw.get("established"))
        if established is not None:
            cleaned["established"] = established

        employees = self.parse_int(raw.get("employees"))
        if employees is not None:
            cleaned["employees"] = employees

        features = self.clean_features(raw.get("features"))
        if features:
            cleaned["features"] = features

        images = self.clean_image_urls(raw.get("images"))
        if images:
            cleaned["image_urls"] = images

        cleaned["seller_financing"] = self.detect_seller_financing(raw)

        if raw.get("url"):
            cleaned["listing_url"] = str(raw["url"]).strip()

        return cleaned
