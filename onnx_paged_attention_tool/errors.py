"""Exception types.

The transformation itself reports structural precondition failures as a boolean
(`False`). Exceptions are used only inside pattern matchers and by convenience
wrappers that prefer raising over returning a flag.
"""

from __future__ import annotations


class PatternMismatch(Exception):
    """A candidate node does not match the structural pattern of a rewrite pass.

    Raised by matchers and caught by the owning pass; never escapes a pass.
    """


class TransformationError(RuntimeError):
    """The SDPA -> paged-attention transformation reported failure.

    The model it ran on is partially edited and must be discarded.
    """
