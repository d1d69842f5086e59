"""Pipeline module - Listing cleaning, validation, dedup and export."""

from .cleaner import ListingCleaner
from .exporters import CSVExporter, JSONExporter, JSONLExporter, create_exporter
from .processor import BatchResult, DataProcessor, ProcessingResult, ProcessingStats
from .validator import ListingValidator, ValidationIssue, ValidationResult, ValidationSeverity

__all__ = [
    "BatchResult",
    "CSVExporter",
    "DataProcessor",
    "JSONExporter",
    "JSONLExporter",
    "ListingCleaner",
    "ListingValidator",
    "ProcessingResult",
    "ProcessingStats",
    "ValidationIssue",
    "ValidationResult",
    "ValidationSeverity",
    "create_exporter",
]
