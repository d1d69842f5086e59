"""
Listing Harvester - Job orchestration for rate-constrained listing extraction.

This package provides:
- Persistent priority job queue with polling scheduler and stall reaper
- Two-level browser session pool
- Failure classification, retry with backoff and circuit breaking
- Sliding window rate limiting and proxy rotation
- Listing cleaning, validation and deduplication
- Signed, retried webhook delivery
"""

__version__ = "1.0.0"
__author__ = "Listing Harvester contributors"
