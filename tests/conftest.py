"""
Pytest configuration and fixtures for copytrader tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from infra.metrics import MetricsRecorder
from tests.helpers.fakes import FakeExecution, FakeLedger, FakeOracle, build_context, make_config


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def execution():
    return FakeExecution()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def ctx(tmp_path, execution, oracle, ledger):
    """SAFE-mode context backed by a temporary JSON store."""
    return build_context(tmp_path, make_config(), execution=execution, oracle=oracle, ledger=ledger)
