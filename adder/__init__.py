"""Safety-governed group member adder.

The package contains the batch engine and its safety components.

MODULES:
    - bootstrap: settings, logging, metrics and the application context
    - processor: batch admission, the per-item add loop, pause and resume
    - quota / circuit_breaker / timing: daily and hourly limits, protection mode, pacing
    - failures: bookkeeping of identifiers that could not be added
    - store: JSON persistence of stats, failures and the in-flight batch
    - client / mock_client: messaging client interface and the in-process mock
    - targets: group ids, invite links and phone number normalization
    - csv_import: phone numbers from uploaded CSV files

USAGE:
    from adder import BatchProcessor, SafetyConfig, JsonStateStore
    processor = BatchProcessor(SafetyConfig(), JsonStateStore("data"), client)
    result = await processor.submit_batch("123456789@g.us", ["15551234567"])
"""

from .processor import BatchProcessor, BatchResult, BatchStatus, ItemStatus  # noqa: F401
from .state import Batch, SafetyConfig, SafetyState  # noqa: F401
from .store import JsonStateStore, MemoryStateStore  # noqa: F401

__all__ = [
    "BatchProcessor",
    "BatchResult",
    "BatchStatus",
    "ItemStatus",
    "Batch",
    "SafetyConfig",
    "SafetyState",
    "JsonStateStore",
    "MemoryStateStore",
]
