"""Local identifier generation for optimistic messages and directives."""

import itertools
import time
import uuid

_counter = itertools.count(1)


def new_message_id(prefix: str = "local") -> str:
    """
    Return a collision-resistant local id.

    Combines a millisecond timestamp, a process-wide monotonic counter and a
    random suffix, so two calls within the same millisecond still differ.
    """
    millis = int(time.time() * 1000)
    return f"{prefix}-{millis}-{next(_counter)}-{uuid.uuid4().hex[:8]}"
