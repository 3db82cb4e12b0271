"""
Errors raised while decomposing a wide table.

Every failure is a NormalizationError; the HTTP layer maps the
data-driven ones to 422 and lets KeyNotFoundError surface as a 500.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence


class NormalizationError(Exception):
    """Base class for decomposition failures."""


class SchemaMismatchError(NormalizationError):
    """Input is missing columns the plan expects."""

    def __init__(self, missing: Sequence[str], message: Optional[str] = None):
        self.missing = list(missing)
        super().__init__(message or f"missing expected columns: {', '.join(self.missing)}")


class KeyNotFoundError(NormalizationError):
    """A natural key has no surrogate key entry.

    Key tables are built from the same rows they are joined back onto,
    so this indicates a bug rather than bad input.
    """

    def __init__(self, columns: Sequence[str], unmatched: List[Any]):
        self.columns = list(columns)
        self.unmatched = unmatched
        super().__init__(
            f"{len(unmatched)} natural key(s) on {self.columns} have no key entry, "
            f"first: {unmatched[0]!r}"
        )


class FunctionalDependencyError(NormalizationError):
    """A declared functional dependency does not hold in the data."""

    def __init__(self, determinant: Sequence[str], dependents: Sequence[str], violations: List[Any]):
        self.determinant = list(determinant)
        self.dependents = list(dependents)
        self.violations = violations
        super().__init__(
            f"{self.determinant} does not determine {self.dependents}: "
            f"{len(violations)} conflicting value(s), first: {violations[0]!r}"
        )


class CompositeKeyError(NormalizationError):
    """Rows share a value of what should be a unique composite key."""

    def __init__(self, columns: Sequence[str], duplicates: List[Any]):
        self.columns = list(columns)
        self.duplicates = duplicates
        super().__init__(
            f"{len(duplicates)} duplicate key(s) on {self.columns}, first: {duplicates[0]!r}"
        )
