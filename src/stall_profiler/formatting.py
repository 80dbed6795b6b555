"""Formatting utilities for consistent output across logs and CLI."""

from stall_profiler.aggregator import Slice


def format_micros(micros: float) -> str:
    """Format a microsecond duration compactly.

    Returns:
        - Under a second: "250.0ms"
        - Otherwise: "5.5s"
    """
    if abs(micros) < 1_000_000:
        return f"{micros / 1e3:.1f}ms"
    return f"{micros / 1e6:.1f}s"


def stall_seconds(duration: float) -> int:
    """Whole seconds a capture of the given microsecond duration covered."""
    return round(duration / 1e6)


def format_slice_table(slices: list[Slice], top: Slice | None = None) -> list[str]:
    """Format slices as aligned table rows, highest share first.

    The dominant slice is marked with an asterisk.
    """
    width = max([len(s.id) for s in slices] + [11])
    rows = [f"  {'Contributor':{width}}  {'CPU':>10}  {'Share':>6}"]
    rows.append("  " + "-" * (width + 20))
    for s in sorted(slices, key=lambda s: s.percentage, reverse=True):
        marker = "*" if s is top else " "
        rows.append(
            f"{marker} {s.id:{width}}  {format_micros(s.total):>10}  {s.percentage:>5}%"
        )
    return rows
