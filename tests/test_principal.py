from __future__ import annotations

import allure

from queued_jobs.engine.principal import Principal, current_principal, run_as

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Run-as Principal"),
]


def test_run_as_sets_and_restores_principal() -> None:
    alice = Principal(user_id="alice", display_name="Alice")
    bob = Principal(user_id="bob", display_name="Bob")

    with run_as(alice) as active:
        assert active == alice
        with run_as(bob):
            assert current_principal() == bob
        assert current_principal() == alice

    assert current_principal() is None


def test_run_as_none_keeps_current_principal() -> None:
    alice = Principal(user_id="alice", display_name="Alice")

    with run_as(alice), run_as(None) as active:
        assert active == alice
        assert current_principal() == alice


def test_principal_is_restored_when_block_raises() -> None:
    alice = Principal(user_id="alice", display_name="Alice")

    try:
        with run_as(alice):
            raise RuntimeError("job failed")
    except RuntimeError:
        pass

    assert current_principal() is None
