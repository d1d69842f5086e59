"""
Data Processor Module

Turns raw extracted records into canonical listings:
dedup by natural key, clean, validate, then remember the key.
"""

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Set

from harvester.models import BusinessListing
from harvester.pipeline.cleaner import ListingCleaner
from harvester.pipeline.validator import ListingValidator

logger = logging.getLogger(__name__)


@dataclass
class ProcessingStats:
    """Running counters for one processor."""

    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    warnings: int = 0
    duplicates: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProcessingResult:
    """Outcome for one raw record."""

    success: bool
    raw: Dict[str, Any]
    listing: Optional[BusinessListing] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    duplicate: bool = False


@dataclass
class BatchResult:
    """Outcome for a batch of raw records."""

    successful: List[BusinessListing]
    failed: List[ProcessingResult]
    stats: ProcessingStats


class DataProcessor:
    """
    Cleans, validates and dedups raw listing records.

    Features:
    - Rejects records whose key was already seen in this run
    - Hard errors reject a record, soft warnings are counted
    - Running statistics, resettable between runs

    Example:
        processor = DataProcessor()
        batch = processor.process_batch(page.records)
        await store.create_records_if_absent(batch.successful)
    """

    def __init__(
        self,
        cleaner: ListingCleaner | None = None,
        validator: ListingValidator | None = None,
    ):
        self._cleaner = cleaner or ListingCleaner()
        self._validator = validator or ListingValidator()
        self._seen: Set[str] = set()
        self._stats = ProcessingStats()

    def process(self, raw: Dict[str, Any]) -> ProcessingResult:
        """
        Process one raw record.

        Args:
            raw: Extracted record (snake_case keys)

        Returns:
            ProcessingResult with the listing or the reasons it was rejected
        """
        self._stats.total_processed += 1

        key = self._cleaner.listing_key(raw)
        if key and key in self._seen:
            self._stats.duplicates += 1
            return ProcessingResult(
                success=False,
                raw=raw,
                errors=["Duplicate listing ID detected"],
                duplicate=True,
            )

        try:
            cleaned = self._cleaner.clean_record(raw)
            validation = self._validator.validate(cleaned)
        except Exception as e:
            logger.exception(f"Failed to process record {key or '<no id>'}")
            self._stats.failed += 1
            return ProcessingResult(success=False, raw=raw, errors=[f"Processing error: {e}"])

        result = ProcessingResult(
            success=validation.is_valid,
            raw=raw,
            listing=validation.listing,
            errors=validation.errors,
            warnings=validation.warnings,
        )

        if validation.is_valid:
            self._stats.successful += 1
            self._seen.add(validation.listing.listing_id)
        else:
            self._stats.failed += 1
            logger.debug(f"Rejected record {key or '<no id>'}: {validation.errors}")

        if result.warnings:
            self._stats.warnings += 1

        return result

    def process_batch(self, raws: List[Dict[str, Any]]) -> BatchResult:
        successful: List[BusinessListing] = []
        failed: List[ProcessingResult] = []

        for raw in raws:
            result = self.process(raw)
            if result.success:
                successful.append(result.listing)
            else:
                failed.append(result)

        return BatchResult(successful=successful, failed=failed, stats=self.get_stats())

    def get_stats(self) -> ProcessingStats:
        return ProcessingStats(**asdict(self._stats))

    def reset_stats(self) -> None:
        """Zero the counters and forget seen keys."""
        self._stats = ProcessingStats()
        self._seen.clear()
