"""Unit tests for account run locks and cancellation tokens"""

import pytest
from recon_gateway.domain.exceptions import RunLockedError
from recon_gateway.domain.state import lock_key
from recon_gateway.services.run_control import RunRegistry


@pytest.fixture
def registry(state):
    return RunRegistry(state, lock_ttl=60)


async def test_account_lock_holds_lease(registry, state):
    async with registry.account_lock("acc-1", "run-1"):
        assert state.get(lock_key("acc-1")) == "run-1"

    assert state.get(lock_key("acc-1")) is None


async def test_account_lock_rejects_second_run(registry):
    """Test a second run for the same account is refused while the first holds the lock"""
    async with registry.account_lock("acc-1", "run-1"):
        with pytest.raises(RunLockedError):
            async with registry.account_lock("acc-1", "run-2"):
                pass

        # Other accounts are independent
        async with registry.account_lock("acc-2", "run-3"):
            pass


async def test_account_lock_respects_lease_from_other_worker(registry, state):
    state.set(lock_key("acc-1"), "remote-run", ttl=60)

    with pytest.raises(RunLockedError, match="remote-run"):
        async with registry.account_lock("acc-1", "run-1"):
            pass

    # The other worker's lease is left alone
    assert state.get(lock_key("acc-1")) == "remote-run"


async def test_account_lock_released_on_error(registry, state):
    with pytest.raises(ValueError):
        async with registry.account_lock("acc-1", "run-1"):
            raise ValueError("boom")

    assert state.get(lock_key("acc-1")) is None


async def test_cancel_sets_token(registry):
    token = registry.token_for("run-1")

    assert registry.is_active("run-1")
    assert registry.cancel("run-1") is True
    assert token.cancelled
    assert registry.cancel("unknown") is False


async def test_token_released_after_run(registry):
    registry.token_for("run-1")

    async with registry.account_lock("acc-1", "run-1"):
        assert registry.is_active("run-1")

    assert not registry.is_active("run-1")
