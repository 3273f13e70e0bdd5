"""Test configuration for the patchwatch test suite."""

import os

import pytest

# Keep a developer's .env or shell overrides out of the default settings.
for _name in list(os.environ):
    if _name.upper().startswith("PATCHWATCH_"):
        os.environ.pop(_name)

from patchwatch.core.config import Settings  # noqa: E402
from patchwatch.core.models import MachineIdentifier  # noqa: E402


@pytest.fixture
def vm_id():
    def _make(name: str, group: str = "rgA", subscription: str = "s1") -> str:
        return (
            f"/subscriptions/{subscription}/resourceGroups/{group}"
            f"/providers/Microsoft.Compute/virtualMachines/{name}"
        )

    return _make


@pytest.fixture
def machine():
    def _make(name: str, group: str = "rgA", subscription: str = "s1") -> MachineIdentifier:
        return MachineIdentifier(
            subscription_id=subscription, resource_group=group, machine_name=name
        )

    return _make


@pytest.fixture
def fast_settings():
    """Settings with every wait shortened for tests."""

    return Settings(
        _env_file=None,
        refresh_interval_seconds=1,
        settle_period_seconds=0,
        install_stagger_seconds=0,
        cancel_grace_seconds=0.05,
        graceful_exit_grace_seconds=0.05,
        query_timeout_seconds=1.0,
    )
