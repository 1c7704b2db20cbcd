"""Shared fixtures for the client core and server tests."""

from __future__ import annotations

import pytest

from src.dealboard.notifications import Notifier
from tests.doubles import InMemoryGateway


@pytest.fixture
def gateway() -> InMemoryGateway:
    return InMemoryGateway()


@pytest.fixture
def notifier() -> Notifier:
    return Notifier()
