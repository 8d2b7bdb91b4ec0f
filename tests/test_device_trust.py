"""Tests for client storage, device trust and revision watermarks."""

import json

import pytest

from expense_auth.client.device_trust import (
    DEVICE_TRUST_KEY,
    DeviceTrustStore,
    RevisionWatermarkStore,
)
from expense_auth.client.storage import JsonFileStorage, MemoryStorage


class TestStorage:
    def test_memory_storage(self):
        storage = MemoryStorage()
        storage.set("k", {"a": 1})
        assert storage.get("k") == {"a": 1}
        storage.delete("k")
        storage.delete("k")
        assert storage.get("k") is None

    def test_json_file_persists(self, tmp_path):
        path = tmp_path / "state" / "client.json"
        JsonFileStorage(path).set("device_trust", {"email": "a@x.com", "remembered": True})

        reopened = JsonFileStorage(path)
        assert reopened.get("device_trust") == {"email": "a@x.com", "remembered": True}
        assert json.loads(path.read_text())["device_trust"]["email"] == "a@x.com"

    @pytest.mark.parametrize("content", ["{not json", "[1, 2]"])
    def test_json_file_unreadable_is_empty(self, tmp_path, content):
        path = tmp_path / "client.json"
        path.write_text(content)
        storage = JsonFileStorage(path)

        assert storage.get("device_trust") is None
        storage.set("k", 1)
        assert storage.get("k") == 1


class TestDeviceTrustStore:
    def test_set_get_clear(self):
        trust = DeviceTrustStore(MemoryStorage())
        assert not trust.get("a@x.com")

        trust.set("A@x.com")
        assert trust.get("a@x.com")
        assert trust.current_email() == "a@x.com"

        trust.clear()
        assert not trust.get("a@x.com")
        assert trust.current_email() is None

    def test_single_slot_last_write_wins(self):
        trust = DeviceTrustStore(MemoryStorage())
        trust.set("user@example.com")
        trust.set("other@example.com")

        assert trust.get("other@example.com")
        assert not trust.get("user@example.com")

    def test_wire_shape(self):
        storage = MemoryStorage()
        DeviceTrustStore(storage).set("a@x.com")
        assert storage.get(DEVICE_TRUST_KEY) == {"email": "a@x.com", "remembered": True}

    def test_unremembered_record_is_not_trust(self):
        storage = MemoryStorage()
        storage.set(DEVICE_TRUST_KEY, {"email": "a@x.com", "remembered": False})
        assert not DeviceTrustStore(storage).get("a@x.com")


class TestRevisionWatermarkStore:
    def test_per_email(self):
        marks = RevisionWatermarkStore(MemoryStorage())
        marks.set("a@x.com", 3)
        marks.set("b@x.com", 7)

        assert marks.get("A@X.com") == 3
        assert marks.get("b@x.com") == 7

        marks.clear("a@x.com")
        assert marks.get("a@x.com") is None
        assert marks.get("b@x.com") == 7

    @pytest.mark.parametrize("value", ["3", True, None, 2.5])
    def test_non_integer_ignored(self, value):
        storage = MemoryStorage()
        storage.set("revision_watermark:a@x.com", value)
        assert RevisionWatermarkStore(storage).get("a@x.com") is None
