from __future__ import annotations

import allure
import pytest

from queued_jobs.engine.queues import QueueType, queue_name, resolve_queue

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Queue Selection"),
]


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("immediate", QueueType.IMMEDIATE),
        ("Large", QueueType.LARGE),
        ("queued", QueueType.DEFAULT),
        ("anything-else", QueueType.DEFAULT),
        ("", QueueType.DEFAULT),
        (None, QueueType.DEFAULT),
        ("3", QueueType.LARGE),
        ("7", 7),
        (1, QueueType.IMMEDIATE),
    ],
)
def test_resolve_queue(value, expected) -> None:
    assert resolve_queue(value) == expected


@pytest.mark.parametrize("value", [0, -1, "0"])
def test_resolve_queue_rejects_non_positive_numbers(value) -> None:
    with pytest.raises(ValueError, match="positive"):
        resolve_queue(value)


def test_queue_name() -> None:
    assert queue_name(1) == "immediate"
    assert queue_name(2) == "default"
    assert queue_name(9) == "custom-9"
