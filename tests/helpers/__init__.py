"""Test helpers for the copytrader test suite"""

from tests.helpers.fakes import (
    MINT,
    OWNER,
    WATCHED,
    FakeExecution,
    FakeLedger,
    FakeOracle,
    RecordingAlertService,
    build_context,
    make_config,
    trade_message,
)

__all__ = [
    "MINT",
    "OWNER",
    "WATCHED",
    "FakeExecution",
    "FakeLedger",
    "FakeOracle",
    "RecordingAlertService",
    "build_context",
    "make_config",
    "trade_message",
]
