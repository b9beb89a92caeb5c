"""GitHub Actions log groups.

``log_group`` brackets a unit of work with ``::group::`` / ``::endgroup::``
workflow commands so CI log viewers can fold it. The wrapped block's
return value and exceptions pass through untouched.
"""

from __future__ import annotations

from collections.abc import Iterator
import contextlib
import sys
from typing import TextIO


@contextlib.contextmanager
def log_group(name: str, enabled: bool, *, stream: TextIO | None = None) -> Iterator[None]:
    """Wrap a block in a named, foldable log group.

    Groups nest: an inner group is simply emitted between the outer
    markers. When *enabled* is false nothing is written.

    Args:
        name: Group title shown by the log viewer.
        enabled: Whether to emit the markers at all.
        stream: Output stream; defaults to ``sys.stdout`` at call time.
    """
    if not enabled:
        yield
        return

    out = stream if stream is not None else sys.stdout
    out.write(f"::group::{name}\n")
    out.flush()
    try:
        yield
    finally:
        out.write("::endgroup::\n")
        out.flush()
