from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

import supabase_io

ENV_VARS = (
    "SUPABASE_URL", "SUPABASE_KEY", "SUPABASE_DB_URL", "KEEPALIVE_TABLE", "KEEPALIVE_VIA",
    "KEEPALIVE_REQUIRE_ROWS",
)


def make_client(rows=None, error=None):
    """Fake supabase client whose table().select().limit().execute() returns rows or raises error."""
    client = MagicMock()
    execute = client.table.return_value.select.return_value.limit.return_value.execute
    if error is not None:
        execute.side_effect = error
    else:
        execute.return_value = SimpleNamespace(data=rows if rows is not None else [])
    return client


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fake_supabase(monkeypatch):
    """Install a fake create_client; returns a dict recording calls and a slot for the client."""
    state = {"calls": [], "client": make_client(rows=[{"id": 1}])}

    def fake_create_client(url, key):
        state["calls"].append((url, key))
        return state["client"]

    monkeypatch.setattr(supabase_io, "create_client", fake_create_client)
    return state


@pytest.fixture()
def configured(monkeypatch):
    monkeypatch.setenv("SUPABASE_URL", "https://abc.supabase.co")
    monkeypatch.setenv("SUPABASE_KEY", "anon-key")
