"""Tests for the JSON idempotency record."""

from __future__ import annotations

import json

import pytest

from adapters.state_store import JsonStateStore
from core.domain.errors import ValidationError
from core.domain.models import AccountState, Environment
from core.interfaces import IdempotencyStore
from core.services.provisioning_pipeline import provision


class TestJsonStateStore:
    def test_missing_file_gives_empty_record(self, tmp_path):
        record = JsonStateStore(tmp_path / "state.json").load("TPA")
        assert record.project_code == "TPA"
        assert record.accounts == {}
        assert not record.repository_configured

    def test_roundtrip_keeps_legacy_keys(self, tmp_path):
        path = tmp_path / "nested" / "state.json"
        store = JsonStateStore(path)
        record = store.load("TPA")
        entry = record.account(Environment.STAGING)
        entry.account_id = "123456789012"
        entry.state = AccountState.TRUST_BOOTSTRAPPED
        store.save(record)

        raw = json.loads(path.read_text(encoding="utf-8"))
        assert raw["stagingAccountId"] == "123456789012"
        assert "devAccountId" not in raw
        assert raw["accounts"]["staging"]["state"] == "trust_bootstrapped"
        assert not path.with_suffix(".json.tmp").exists()

        loaded = store.load("TPA")
        assert loaded.account(Environment.STAGING).state is AccountState.TRUST_BOOTSTRAPPED

    def test_other_project_is_rejected(self, tmp_path):
        store = JsonStateStore(tmp_path / "state.json")
        store.save(store.load("ABC"))
        with pytest.raises(ValidationError, match="belongs to project ABC"):
            store.load("TPA")

    def test_garbage_is_rejected(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(ValidationError):
            JsonStateStore(path).load("TPA")

    def test_truncated_file_is_a_validation_error(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text('{"project_code": "TPA", ', encoding="utf-8")
        store = JsonStateStore(path)
        with pytest.raises(ValidationError, match="not valid JSON"):
            store.load("TPA")
        with pytest.raises(ValidationError, match="not valid JSON"):
            store.read_raw()

    def test_read_raw(self, tmp_path):
        store = JsonStateStore(tmp_path / "state.json")
        assert store.read_raw() is None
        store.save(store.load("TPA"))
        assert store.read_raw()["project_code"] == "TPA"

    def test_satisfies_protocol(self, tmp_path):
        assert isinstance(JsonStateStore(tmp_path / "s.json"), IdempotencyStore)

    @pytest.mark.asyncio
    async def test_resume_from_file_across_runs(self, make_context, settings, log):
        store = JsonStateStore(settings.state_file)
        first = await provision(make_context(store=store))
        assert first.ok

        raw = json.loads(settings.state_file.read_text(encoding="utf-8"))
        assert raw["devAccountId"] == first.accounts[Environment.DEV].account.account_id
        assert raw["repository_configured"] is True

        log.clear()
        second = await provision(make_context(store=JsonStateStore(settings.state_file)))
        assert second.ok
        assert log.calls("bootstrap_deploy_trust") == []
