"""Non-fatal findings collected while building a story graph."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Literal

WarningCode = Literal[
    "DANGLING_CHOICE",
    "UNREACHABLE_PASSAGE",
    "MALFORMED_LINK",
    "IGNORED_PASSAGE",
]


@dataclass(frozen=True, slots=True)
class BuildWarning:
    """A single non-fatal build finding.

    Attributes:
        code: Machine-readable category.
        message: Human-readable description.
        passage: Passage the finding refers to, if any.
        context: Extra key/value details (target names, offsets, ...).
    """

    code: WarningCode
    message: str
    passage: str | None = None
    context: dict[str, str] = field(default_factory=dict)


def format_warning(warning: BuildWarning) -> str:
    """Render a warning as a single log-friendly line."""
    details = dict(warning.context)
    if warning.passage is not None:
        details = {"passage": warning.passage, **details}
    context = " ".join(f"{key}={value}" for key, value in details.items())
    suffix = f" ({context})" if context else ""
    return f"[WARN] {warning.code}: {warning.message}{suffix}"


@dataclass
class BuildReport:
    """Aggregated warnings from one story build.

    Attributes:
        warnings: Findings in the order they were discovered.
    """

    warnings: list[BuildWarning] = field(default_factory=list)

    def add(
        self,
        code: WarningCode,
        message: str,
        *,
        passage: str | None = None,
        **context: str,
    ) -> None:
        """Record a finding."""
        self.warnings.append(BuildWarning(code, message, passage, dict(context)))

    def by_code(self, code: WarningCode) -> list[BuildWarning]:
        """Return the findings with the given code."""
        return [w for w in self.warnings if w.code == code]

    @property
    def has_warnings(self) -> bool:
        """True if anything was recorded."""
        return bool(self.warnings)

    @property
    def summary(self) -> str:
        """Human-readable summary, e.g. ``2 dangling choice, 1 unreachable passage``."""
        if not self.warnings:
            return "no warnings"
        counts = Counter(w.code for w in self.warnings)
        return ", ".join(
            f"{count} {code.lower().replace('_', ' ')}" for code, count in counts.items()
        )
