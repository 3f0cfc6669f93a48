import os
import tempfile
from types import SimpleNamespace

import pytest

# Keep log files out of the checkout; must be set before configs is imported
os.environ.setdefault("TRANSCRIBER_LOG_DIR", tempfile.mkdtemp(prefix="transcriber-logs-"))

from configs.config import get_config  # noqa: E402


class FakeResult:
    def __init__(self, upserted_id=None, modified_count=0, deleted_count=0):
        self.upserted_id = upserted_id
        self.modified_count = modified_count
        self.deleted_count = deleted_count


class FakeCollection:
    """Just enough of a pymongo collection for the status repository."""

    def __init__(self):
        self.docs = {}
        self._next_id = 1

    def update_one(self, flt, update, upsert=False):
        key = flt["document_id"]
        doc = self.docs.get(key)
        if doc is None:
            if not upsert:
                return FakeResult()
            doc = {"_id": self._next_id, "document_id": key}
            self._next_id += 1
            doc.update(update.get("$setOnInsert", {}))
            doc.update(update.get("$set", {}))
            self.docs[key] = doc
            return FakeResult(upserted_id=doc["_id"])
        doc.update(update.get("$set", {}))
        return FakeResult(modified_count=1)

    def find_one(self, flt):
        doc = self.docs.get(flt["document_id"])
        return dict(doc) if doc else None

    def delete_one(self, flt):
        if self.docs.pop(flt["document_id"], None) is None:
            return FakeResult()
        return FakeResult(deleted_count=1)


class FakeDatabase:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())


class FakeReporter:
    """Records every status report in order."""

    def __init__(self):
        self.calls = []

    async def report(self, document_id, status, message, progress_percent):
        self.calls.append((document_id, status, message, progress_percent))

    @property
    def statuses(self):
        return [call[1] for call in self.calls]

    @property
    def percents(self):
        return [call[3] for call in self.calls]

    @property
    def last(self):
        return self.calls[-1]


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_settings(**overrides):
    values = dict(vars(get_config()))
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDatabase()
    monkeypatch.setattr("src.database.status_repository.get_db", lambda: db)
    return db


@pytest.fixture
def contents(fake_db):
    return fake_db[get_config().DOCUMENT_CONTENTS_COLLECTION]


@pytest.fixture
def reporter():
    return FakeReporter()


@pytest.fixture
def sleep():
    return RecordingSleep()
