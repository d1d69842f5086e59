"""
Listing Exporters Module

Write harvested listings to JSON, JSON Lines or CSV files.
"""

import csv
import io
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List

import aiofiles

from harvester.config import config
from harvester.models import BusinessListing

logger = logging.getLogger(__name__)


class ListingExporter(ABC):
    """Abstract base class for listing exporters."""

    extension = ""

    def __init__(self, export_dir: Path | str | None = None):
        """
        Args:
            export_dir: Output directory (default from config)
        """
        self._export_dir = Path(export_dir) if export_dir else config.storage.export_path

    @abstractmethod
    async def _write(self, filepath: Path, rows: List[Dict[str, Any]]) -> None: ...

    async def export(self, listings: List[BusinessListing], filename: str | None = None) -> Path:
        """
        Export listings to a file.

        Args:
            listings: Listings to write
            filename: Optional filename (timestamped if None)

        Returns:
            Path to the exported file
        """
        self._export_dir.mkdir(parents=True, exist_ok=True)
        filename = filename or self._generate_filename()
        filepath = self._export_dir / filename

        rows = [listing.model_dump(mode="json") for listing in listings]
        await self._write(filepath, rows)
        logger.info(f"Exported {len(rows)} listings to {filepath}")
        return filepath

    def _generate_filename(self) -> str:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        return f"listings_{timestamp}.{self.extension}"


class JSONExporter(ListingExporter):
    """Pretty-printed JSON array."""

    extension = "json"

    def __init__(self, export_dir: Path | str | None = None, pretty: bool = True):
        super().__init__(export_dir)
        self._pretty = pretty

    async def _write(self, filepath: Path, rows: List[Dict[str, Any]]) -> None:
        async with aiofiles.open(filepath, "w", encoding="utf-8") as f:
            await f.write(json.dumps(rows, indent=2 if self._pretty else None, ensure_ascii=False))


class JSONLExporter(ListingExporter):
    """One JSON object per line."""

    extension = "jsonl"

    async def _write(self, filepath: Path, rows: List[Dict[str, Any]]) -> None:
        async with aiofiles.open(filepath, "w", encoding="utf-8") as f:
            for row in rows:
                await f.write(json.dumps(row, ensure_ascii=False) + "\n")


class CSVExporter(ListingExporter):
    """
    CSV with one column per listing field.

    List fields (features, image_urls) are joined with "|".
    """

    extension = "csv"

    def __init__(self, export_dir: Path | str | None = None, delimiter: str = ","):
        super().__init__(export_dir)
        self._delimiter = delimiter

    async def _write(self, filepath: Path, rows: List[Dict[str, Any]]) -> None:
        buffer = io.StringIO()
        writer = csv.DictWriter(
            buffer,
            fieldnames=list(BusinessListing.model_fields),
            delimiter=self._delimiter,
            extrasaction="ignore",
        )
        writer.writeheader()
        for row in rows:
            writer.writerow({
                key: "|".join(value) if isinstance(value, list) else value
                for key, value in row.items()
            })

        async with aiofiles.open(filepath, "w", encoding="utf-8", newline="") as f:
            await f.write(buffer.getvalue())


EXPORTERS = {
    "json": JSONExporter,
    "jsonl": JSONLExporter,
    "csv": CSVExporter,
}


def create_exporter(format: str = "json", **kwargs) -> ListingExporter:
    """
    Create an exporter for the specified format.

    Args:
        format: "json", "jsonl" or "csv"
        **kwargs: Additional arguments for the specific exporter

    Returns:
        Configured exporter instance
    """
    if format not in EXPORTERS:
        raise ValueError(f"Unknown format: {format}. Use: {list(EXPORTERS)}")
    return EXPORTERS[format](**kwargs)
