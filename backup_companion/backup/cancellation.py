"""
Cancellation support for long-running backup operations.

Long operations accept a ``cancellation_check`` callable and call it between
units of work (dump process polls, multipart chunks). The check raises
BackupCancelled once cancellation has been requested.
"""

import threading
from typing import Callable, Optional


class BackupCancelled(Exception):
    """Raised when a running backup is asked to stop."""
    pass


def make_cancellation_check(cancel_event: Optional[threading.Event]) -> Optional[Callable[[], None]]:
    """
    Build a cancellation check bound to an event.

    Args:
        cancel_event: Event that is set when the run should stop, or None

    Returns:
        Callable raising BackupCancelled once the event is set, or None if no event was given
    """
    if cancel_event is None:
        return None

    def check():
        if cancel_event.is_set():
            raise BackupCancelled("Backup cancelled")

    return check
