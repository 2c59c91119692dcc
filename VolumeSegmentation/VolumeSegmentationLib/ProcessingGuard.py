"""One-operation-at-a-time guard shared by the engines and the facade."""

import logging
from contextlib import contextmanager
from typing import Iterator

from .SegmentationErrors import BusyError

logger = logging.getLogger(__name__)


class ProcessingGuard:
    """Mixin that tracks whether an instance is currently processing.

    A second operation started while one is in flight fails fast with
    BusyError rather than queuing.
    """

    _is_processing: bool = False
    _current_operation: str = ""

    @property
    def is_processing(self) -> bool:
        """Return True while an operation is running on this instance."""
        return self._is_processing

    @contextmanager
    def processing(self, operation: str) -> Iterator[None]:
        """Mark this instance busy for the duration of the block.

        Args:
            operation: Name of the operation, used in the busy message.

        Raises:
            BusyError: If another operation is already running.
        """
        if self._is_processing:
            raise BusyError(
                f"Cannot start '{operation}': '{self._current_operation}' "
                f"already in progress on {type(self).__name__}"
            )

        self._is_processing = True
        self._current_operation = operation
        try:
            yield
        finally:
            self._is_processing = False
            self._current_operation = ""
            logger.debug(f"{type(self).__name__} finished '{operation}'")
