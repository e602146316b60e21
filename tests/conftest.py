"""
Shared fixtures: temporary SQLite stores and in-memory Redis doubles.
"""

import os
import re
import tempfile
import shutil
import threading
from datetime import datetime, timedelta, timezone

import pytest
import redis

from ai_cost_meter.storage.models import QuotaDefinition, QuotaPeriod
from ai_cost_meter.storage.repository import SQLiteMeteringStore, initialize_schema


def glob_to_regex(pattern):
    """Compile a Redis MATCH pattern, honoring backslash escapes like the server does."""
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "\\" and i + 1 < len(pattern):
            i += 1
            out.append(re.escape(pattern[i]))
        elif ch == "*":
            out.append(".*")
        elif ch == "?":
            out.append(".")
        elif ch == "[":
            end = pattern.find("]", i + 1)
            if end == -1:
                out.append(re.escape(ch))
            else:
                body = pattern[i + 1:end]
                if body.startswith("^"):
                    body = "^" + re.escape(body[1:])
                else:
                    body = re.escape(body)
                out.append("[" + body.replace("\\-", "-") + "]")
                i = end
        else:
            out.append(re.escape(ch))
        i += 1
    return re.compile("".join(out), re.DOTALL)


class FakeRedis:
    """Dict-backed stand-in for the subset of redis.Redis the cache uses."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self._lock = threading.Lock()

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        removed = 0
        with self._lock:
            for key in keys:
                if self.data.pop(key, None) is not None:
                    self.ttls.pop(key, None)
                    removed += 1
        return removed

    def scan_iter(self, match=None, count=None):
        pattern = None if match is None else glob_to_regex(match)
        for key in list(self.data):
            if pattern is None or pattern.fullmatch(key):
                yield key

    def exists(self, key):
        return 1 if key in self.data else 0

    def ttl(self, key):
        return self.ttls.get(key, -2)

    def ping(self):
        return True

    def dbsize(self):
        return len(self.data)


class BrokenRedis:
    """Redis client whose every call fails as if the server were down."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("Connection refused")
        return fail


@pytest.fixture
def db_path():
    """Path to a freshly initialized database in a temporary directory."""
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def store(db_path):
    return SQLiteMeteringStore(db_path)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def broken_redis():
    return BrokenRedis()


def future(days: int = 1) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


def make_quota(
    organization_id="org-1",
    period=QuotaPeriod.DAILY,
    limit=100.0,
    usage=0.0,
    provider=None,
    model=None,
    reset_at=None,
) -> QuotaDefinition:
    """Quota that is live unless ``reset_at`` says otherwise."""
    return QuotaDefinition(
        organization_id=organization_id,
        period=period,
        limit_amount=limit,
        current_usage=usage,
        provider=provider,
        model=model,
        reset_at=reset_at or future(),
    )
