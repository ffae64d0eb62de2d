"""Shared pytest configuration and fakes for apiforge tests."""
import copy

import pytest


class FakeProviderClient:
    """
    Stands in for HttpProviderClient: canned JSON per provider id, every
    call recorded. Set `error` to make every call raise it.
    """

    def __init__(self):
        self.responses = {}
        self.error = None
        self.calls = []

    async def call(self, provider):
        self.calls.append(provider)
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.responses.get(provider.id))

    async def probe(self, provider):
        self.calls.append(provider)
        return {"success": True, "status": 200, "statusText": "OK", "duration": 1}

    async def close(self):
        pass


class FakeReader:
    """Database reader that returns fixed rows and records its arguments."""

    def __init__(self, rows=None):
        self.rows = rows if rows is not None else []
        self.calls = []

    async def read(self, uri, database, collection, query):
        self.calls.append((uri, database, collection, query))
        return copy.deepcopy(self.rows)


@pytest.fixture
def fake_client():
    return FakeProviderClient()


@pytest.fixture
def fake_reader():
    return FakeReader
