"""Storage abstractions for the dkit process registry."""

from .models import ProcessIndex, ProcessRecord, ProcessStatus, SENTINEL_EXIT_CODE, new_process_id
from .store import ProcessStore, read_tail

__all__ = [
    "ProcessIndex",
    "ProcessRecord",
    "ProcessStatus",
    "ProcessStore",
    "SENTINEL_EXIT_CODE",
    "new_process_id",
    "read_tail",
]
