from __future__ import annotations

import allure

from taskfleet.fleet.metrics import compute_metrics, render_metrics_lines
from taskfleet.fleet.models import CompletionRecord, FailureStatus

pytestmark = [
    allure.epic("Observability"),
    allure.feature("Metrics"),
]

COMPLETIONS = [
    CompletionRecord("2026-10-17", "[API] Auth API", "dev/auth-api", "20m"),
    CompletionRecord("2026-10-17", "[UI] Login page", "dev/login-page", "1h 10m"),
    CompletionRecord("2026-10-18", "[API] Session store", "dev/session-store", "< 1m"),
    CompletionRecord("2026-10-19", "Write changelog", "dev/write-changelog", ""),
]


def test_compute_metrics() -> None:
    metrics = compute_metrics(
        COMPLETIONS,
        {FailureStatus.PENDING: 2, FailureStatus.FIXED: 3, FailureStatus.BLOCKED: 1},
    )

    assert metrics.completed == 4
    assert metrics.timed == 2
    assert metrics.average_minutes == 45
    assert metrics.by_tag == {"API": 2, "UI": 1, "untagged": 1}
    assert metrics.by_day == {"2026-10-17": 2, "2026-10-18": 1, "2026-10-19": 1}
    assert metrics.resolved == 4
    assert metrics.fix_rate == 75
    assert metrics.failures[FailureStatus.SUPERSEDED] == 0


def test_render_metrics_lines() -> None:
    metrics = compute_metrics(COMPLETIONS, {FailureStatus.PENDING: 2, FailureStatus.FIXED: 3})

    lines = render_metrics_lines(metrics, days=2)

    assert lines == [
        "Completed tasks: 4",
        "Average duration: 45m (over 2 timed tasks)",
        "By tag:",
        "  API: 2",
        "  UI: 1",
        "  untagged: 1",
        "Last 2 active days:",
        "  2026-10-18: 1",
        "  2026-10-19: 1",
        "Failures:",
        "  pending: 2",
        "  fixed: 3",
        "Fix success rate: 100% (3 resolved)",
    ]


def test_render_metrics_for_empty_project() -> None:
    lines = render_metrics_lines(compute_metrics([], {}))

    assert lines == [
        "Completed tasks: 0",
        "Average duration: n/a",
        "Failures:",
        "  none",
        "Fix success rate: n/a (nothing resolved yet)",
    ]
