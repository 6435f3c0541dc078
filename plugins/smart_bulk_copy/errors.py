"""
Error Taxonomy

Exceptions raised by the bulk copy engine. Connectivity and metadata
errors are fatal to a run; copy errors are recovered per task by the
worker pool; monitor errors never leave the throughput monitor.
"""

from typing import List, Optional


class BulkCopyError(Exception):
    """Base class for all bulk copy errors."""


class ConnectivityError(BulkCopyError):
    """A source or destination connection could not be opened at startup."""


class MetadataError(BulkCopyError):
    """A partition/catalog query failed or returned an unexpected shape."""


class CopyError(BulkCopyError):
    """Streaming one partition from source to destination failed."""

    def __init__(
        self,
        message: str,
        table_name: Optional[str] = None,
        partition_number: Optional[int] = None,
        rows_committed: int = 0,
    ):
        super().__init__(message)
        self.table_name = table_name
        self.partition_number = partition_number
        # Batches committed before the failure stay in the destination
        self.rows_committed = rows_committed


class MonitorError(BulkCopyError):
    """The log flush counter could not be resolved or sampled."""


def error_chain(exc: BaseException) -> List[str]:
    """
    Flatten an exception and all of its nested causes into messages.

    Follows explicit causes (``raise ... from``) first and implicit context
    otherwise, so driver errors wrapped in a CopyError are not lost.

    Args:
        exc: Outermost exception

    Returns:
        One "ExceptionType: message" string per link, outermost first
    """
    chain = []
    seen = set()
    current: Optional[BaseException] = exc

    while current is not None and id(current) not in seen:
        seen.add(id(current))
        chain.append(f"{type(current).__name__}: {current}")
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None

    return chain
