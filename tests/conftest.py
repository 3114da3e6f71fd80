"""Shared pytest fixtures."""

import pytest

from fakes import FakeTransport


@pytest.fixture
def transport():
    return FakeTransport()
