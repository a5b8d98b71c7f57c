#!/usr/bin/env python3
#
# tests/test_store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

import os
import stat
from datetime import datetime, timedelta, timezone

import pytest

from certwarden.models.certificates import DomainSet
from certwarden.store.cert_store import FileCertificateStore, StoreError

from conftest import DOMAINS, make_record


@pytest.fixture
def store(tmp_path):
	return FileCertificateStore(tmp_path / "certs", keep_versions=2)


def test_lookup_empty_store(store):
	assert store.lookup(DOMAINS) is None
	assert store.records() == []


def test_read_after_write(store):
	record = make_record(days_left=60)
	store.put(record)

	found = store.lookup(DOMAINS)
	assert found is not None
	assert found.expires_at == record.expires_at
	assert found.issued_at == record.issued_at
	assert found.certificate_chain == record.certificate_chain
	assert found.private_key == record.private_key
	assert found.issuer_account_ref == "test-account"


def test_put_supersedes_previous(store):
	store.put(make_record(days_left=5))
	newer = make_record(days_left=90)
	store.put(newer)

	assert store.lookup(DOMAINS).expires_at == newer.expires_at
	assert len(store.records()) == 1


def test_live_paths_point_at_current_files(store):
	record = make_record()
	store.put(record)

	fullchain, privkey = store.live_paths(DOMAINS)
	assert fullchain.read_bytes() == record.certificate_chain
	assert privkey.read_bytes() == record.private_key
	assert (store.live_dir / DOMAINS.primary).is_symlink()


def test_private_key_is_owner_only(store):
	store.put(make_record())
	_, privkey = store.live_paths(DOMAINS)
	assert stat.S_IMODE(os.stat(privkey).st_mode) == 0o600


def test_lookup_with_different_names_is_absent(store):
	store.put(make_record())
	bigger = DomainSet(DOMAINS.names + ("static.example.test",))
	assert store.lookup(bigger) is None


def test_corrupt_entry_raises(store):
	store.put(make_record())
	meta = store.live_dir / DOMAINS.primary / "meta.json"
	meta.write_text("{not json", encoding="utf-8")

	with pytest.raises(StoreError):
		store.lookup(DOMAINS)
	assert store.records() == []


def test_dangling_live_link_raises(store):
	store.live_dir.mkdir(parents=True)
	os.symlink("../archive/example.test/missing", store.live_dir / DOMAINS.primary)

	with pytest.raises(StoreError):
		store.lookup(DOMAINS)


def test_prune_keeps_recent_versions(store):
	for days in (10, 20, 30, 40):
		store.put(make_record(days_left=days))

	versions = list((store.archive_dir / DOMAINS.primary).iterdir())
	assert len(versions) == 2
	assert store.lookup(DOMAINS) is not None


def test_put_failure_keeps_previous_record(store, monkeypatch):
	first = make_record(days_left=20)
	store.put(first)

	def broken_swap(primary, target):
		raise OSError("no space left on device")

	monkeypatch.setattr(store, "_swap_live", broken_swap)
	with pytest.raises(StoreError):
		store.put(make_record(days_left=90))
	assert store.lookup(DOMAINS).expires_at == first.expires_at


def test_time_until_expiry():
	now = datetime(2026, 5, 1, tzinfo=timezone.utc)
	record = make_record(now=now, days_left=12)
	assert FileCertificateStore.time_until_expiry(record, now) == timedelta(days=12)
	assert FileCertificateStore.time_until_expiry(record, now + timedelta(days=13)) < timedelta(0)


def test_lock_is_exclusive(store):
	with store.lock(DOMAINS) as first:
		assert first
		with store.lock(DOMAINS) as second:
			assert not second
	with store.lock(DOMAINS) as again:
		assert again
