from __future__ import annotations


def compute_reconciliation_diff(
    *,
    stale_received_events_count: int,
    success_without_access_count: int,
    open_mismatches_count: int,
) -> int:
    return (
        max(0, stale_received_events_count)
        + max(0, success_without_access_count)
        + max(0, open_mismatches_count)
    )


def reconciliation_status(diff_count: int) -> str:
    return "OK" if diff_count == 0 else "DIFF"
