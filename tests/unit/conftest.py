"""Shared fixtures."""
import pytest

from .kusto_fakes import FakeKustoClient


@pytest.fixture
def kusto_client():
    return FakeKustoClient()
