from __future__ import annotations

import logging

import pytest

from tests.fakes import NOW, FakeGateway


@pytest.fixture
def now() -> int:
    return NOW


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(autouse=True)
def _quiet_logs(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING, logger="deribit_risk")
