"""
Tests for the account store, resolver and configuration loading.

These tests verify:
- Lookup by id and by case-insensitive email
- Re-registration and invalidation callbacks
- Default account selection
- Tolerant loading of bulk JSON configuration
"""

import json
import threading

import pytest

from gsc_accounts import AccountStore, load_accounts
from gsc_config import Settings
from gsc_errors import AccountNotFound, InvalidParameter, NoAccountsConfigured


class TestRegistration:
    """Tests for AccountStore.register()."""

    def test_register_makes_account_reachable_by_id_and_email(self, store):
        account = store.register("main", "Owner@Example.com", "1//refresh")

        assert store.lookup("main") is account
        assert store.lookup("owner@example.com") is account
        assert store.lookup("OWNER@EXAMPLE.COM") is account

    def test_id_lookup_is_exact(self, store):
        store.register("Main", "owner@example.com", "1//refresh")

        assert store.lookup("main") is None

    def test_reregistration_replaces_credentials(self, store):
        store.register("main", "owner@example.com", "1//old", "ya29.old")
        store.register("main", "owner@example.com", "1//new")

        account = store.lookup("main")
        assert account.refresh_token == "1//new"
        assert account.access_token is None
        assert store.count == 1

    def test_reregistration_with_new_email_drops_old_email_key(self, store):
        store.register("main", "old@example.com", "1//refresh")
        store.register("main", "new@example.com", "1//refresh")

        assert store.lookup("old@example.com") is None
        assert store.lookup("new@example.com").id == "main"

    def test_reregistration_notifies_listeners(self, store):
        invalidated = []
        store.add_invalidation_listener(invalidated.append)

        store.register("main", "owner@example.com", "1//old")
        store.register("main", "owner@example.com", "1//new")

        assert invalidated == ["main", "main"]

    def test_identical_registration_is_idempotent(self, store):
        first = store.register("main", "owner@example.com", "1//refresh", "ya29.token")
        invalidated = []
        store.add_invalidation_listener(invalidated.append)

        second = store.register("main", "owner@example.com", "1//refresh", "ya29.token")

        assert second is first
        assert invalidated == []

    def test_ids_sharing_an_email_both_stay_reachable(self, store):
        first = store.register("client-a", "agency@example.com", "1//a")
        second = store.register("client-b", "AGENCY@example.com", "1//b")

        assert store.lookup("client-a") is first
        assert store.lookup("client-b") is second
        assert store.lookup("agency@example.com") is second
        assert [a.id for a in store.list()] == ["client-a", "client-b"]

    def test_moving_away_from_shared_email_keeps_the_other_owner(self, store):
        store.register("client-a", "agency@example.com", "1//a")
        store.register("client-b", "agency@example.com", "1//b")

        store.register("client-a", "a@example.com", "1//a")

        assert store.lookup("agency@example.com").id == "client-b"
        assert store.lookup("a@example.com").id == "client-a"

    def test_non_string_refresh_token_is_rejected(self, store):
        with pytest.raises(InvalidParameter) as exc:
            store.register("main", "owner@example.com", 12345)

        assert exc.value.field == "refreshToken"
        assert store.count == 0

    @pytest.mark.parametrize("id,email,token,field", [
        ("", "owner@example.com", "1//refresh", "id"),
        ("main", "", "1//refresh", "email"),
        ("main", "owner@example.com", "", "refreshToken"),
    ])
    def test_missing_fields_are_rejected(self, store, id, email, token, field):
        with pytest.raises(InvalidParameter) as exc:
            store.register(id, email, token)

        assert exc.value.field == field
        assert store.count == 0

    def test_concurrent_registrations_are_not_lost(self, store):
        def register(n):
            store.register(f"account-{n}", f"user{n}@example.com", f"1//token-{n}")

        threads = [threading.Thread(target=register, args=(n,)) for n in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.count == 50
        assert all(store.lookup(f"user{n}@example.com") for n in range(50))


class TestResolve:
    """Tests for AccountStore.resolve()."""

    def test_id_and_email_resolve_to_same_record(self, store):
        store.register("client-a", "a@example.com", "1//a")

        assert store.resolve("client-a") is store.resolve("A@Example.com")

    def test_id_match_wins_over_email_match(self, store):
        store.register("x@example.com", "first@example.com", "1//first")
        store.register("second", "x@example.com", "1//second")

        assert store.resolve("x@example.com").id == "x@example.com"

    def test_unknown_selector_raises_not_found(self, store):
        store.register("main", "owner@example.com", "1//refresh")

        with pytest.raises(AccountNotFound) as exc:
            store.resolve("nobody@example.com")

        assert exc.value.selector == "nobody@example.com"

    def test_no_selector_without_accounts_raises(self, store):
        with pytest.raises(NoAccountsConfigured):
            store.resolve()

    def test_no_selector_picks_lexicographically_first_id(self, store):
        store.register("zeta", "z@example.com", "1//z")
        store.register("alpha", "a@example.com", "1//a")
        store.register("mid", "m@example.com", "1//m")

        assert store.resolve().id == "alpha"
        assert store.resolve(None).id == "alpha"

    def test_list_is_deduplicated(self, store):
        store.register("b", "b@example.com", "1//b")
        store.register("a", "a@example.com", "1//a")

        assert [a.to_public() for a in store.list()] == [
            {"id": "a", "email": "a@example.com"},
            {"id": "b", "email": "b@example.com"},
        ]


class TestUpdateTokens:
    """Tests for the refresh write-through path."""

    def test_updates_current_record(self, store):
        account = store.register("main", "owner@example.com", "1//refresh")

        assert store.update_tokens(account, "ya29.new", 123) is True
        assert store.lookup("main").access_token == "ya29.new"
        assert store.lookup("main").expires_at == 123

    def test_ignores_replaced_record(self, store):
        stale = store.register("main", "owner@example.com", "1//old")
        store.register("main", "owner@example.com", "1//new")

        assert store.update_tokens(stale, "ya29.stale", 123) is False
        assert store.lookup("main").access_token is None

    def test_token_sink_receives_written_tokens(self):
        persisted = []
        store = AccountStore(token_sink=lambda account: persisted.append((account.id, account.access_token)))
        account = store.register("main", "owner@example.com", "1//refresh")

        store.update_tokens(account, "ya29.new", 123)

        assert persisted == [("main", "ya29.new")]

    def test_token_sink_skipped_for_replaced_record(self):
        persisted = []
        store = AccountStore(token_sink=persisted.append)
        stale = store.register("main", "owner@example.com", "1//old")
        store.register("main", "owner@example.com", "1//new")

        store.update_tokens(stale, "ya29.stale", 123)

        assert persisted == []

    def test_token_sink_failure_keeps_local_tokens(self, caplog):
        def failing_sink(account):
            raise RuntimeError("secret store unavailable")

        store = AccountStore(token_sink=failing_sink)
        account = store.register("main", "owner@example.com", "1//refresh")

        assert store.update_tokens(account, "ya29.new", 123) is True
        assert account.access_token == "ya29.new"
        assert "Failed to persist access token" in caplog.text


class TestAccountSource:
    """Tests for resolving accounts through an external account source."""

    def test_miss_is_loaded_from_source_and_registered(self):
        requested = []

        def source(selector):
            requested.append(selector)
            return {"id": "remote-1", "email": "remote@example.com", "refreshToken": "1//remote", "accessToken": "ya29.remote"}

        store = AccountStore(account_source=source)

        account = store.resolve("Remote@example.com")

        assert requested == ["Remote@example.com"]
        assert account.id == "remote-1"
        assert account.access_token == "ya29.remote"
        assert store.lookup("remote-1") is account

    def test_registered_accounts_do_not_hit_source(self):
        requested = []
        store = AccountStore(account_source=lambda selector: requested.append(selector))
        store.register("main", "owner@example.com", "1//refresh")

        store.resolve("owner@example.com")

        assert requested == []

    def test_source_returning_nothing_is_not_found(self):
        store = AccountStore(account_source=lambda selector: None)

        with pytest.raises(AccountNotFound):
            store.resolve("nobody@example.com")

    def test_source_entry_without_refresh_token_is_rejected(self):
        store = AccountStore(account_source=lambda selector: {"id": "x", "email": "x@example.com"})

        with pytest.raises(InvalidParameter):
            store.resolve("x@example.com")

        assert store.count == 0


class TestLoadAccounts:
    """Tests for loading accounts from configuration sources."""

    def test_loads_inline_json(self, store):
        document = {"accounts": [
            {"id": "main", "email": "main@example.com", "refreshToken": "1//main"},
            {"id": "other", "email": "other@example.com", "refreshToken": "1//other", "accessToken": "ya29.x"},
        ]}

        loaded = load_accounts(store, Settings(accounts_json=json.dumps(document)))

        assert loaded == 2
        assert store.lookup("other").access_token == "ya29.x"

    def test_skips_malformed_entries(self, store, caplog):
        document = {"accounts": [
            {"id": "main", "email": "main@example.com", "refreshToken": "1//main"},
            {"id": "no-token", "email": "x@example.com"},
            "not-an-object",
            {"email": "noid@example.com", "refreshToken": "1//noid"},
        ]}

        loaded = load_accounts(store, Settings(accounts_json=json.dumps(document)))

        assert loaded == 1
        assert [a.id for a in store.list()] == ["main"]
        assert "Skipping" in caplog.text

    def test_unparsable_json_is_treated_as_empty(self, store, caplog):
        loaded = load_accounts(store, Settings(accounts_json="{not json"))

        assert loaded == 0
        assert "Failed to parse GSC_ACCOUNTS_JSON" in caplog.text
        with pytest.raises(NoAccountsConfigured):
            store.resolve()

    def test_loads_accounts_file(self, store, tmp_path):
        path = tmp_path / "accounts.json"
        path.write_text(json.dumps({"accounts": [
            {"id": "file", "email": "file@example.com", "refreshToken": "1//file"},
        ]}))

        load_accounts(store, Settings(accounts_file=str(path)))

        assert store.resolve().id == "file"

    def test_missing_file_does_not_block_other_sources(self, store, tmp_path):
        settings = Settings(
            accounts_file=str(tmp_path / "missing.json"),
            refresh_token="1//single",
            email="single@example.com",
        )

        loaded = load_accounts(store, settings)

        assert loaded == 1
        account = store.resolve("single@example.com")
        assert account.id == "default"
        assert account.refresh_token == "1//single"

    def test_accepts_bare_list_document(self, store):
        document = [{"id": "main", "email": "main@example.com", "refreshToken": "1//main"}]

        assert load_accounts(store, Settings(accounts_json=json.dumps(document))) == 1

    def test_no_sources_leaves_store_empty(self, store):
        assert load_accounts(store, Settings()) == 0
        assert store.count == 0

    def test_bulk_accounts_sharing_an_email_are_all_loaded(self, store):
        document = {"accounts": [
            {"id": "client-a", "email": "agency@example.com", "refreshToken": "1//a"},
            {"id": "client-b", "email": "agency@example.com", "refreshToken": "1//b"},
        ]}

        loaded = load_accounts(store, Settings(accounts_json=json.dumps(document)))

        assert loaded == 2
        assert [a.id for a in store.list()] == ["client-a", "client-b"]
        assert store.resolve("agency@example.com").id == "client-b"

    def test_non_string_refresh_token_entry_is_skipped(self, store, caplog):
        document = {"accounts": [{"id": "main", "email": "main@example.com", "refreshToken": 12345}]}

        assert load_accounts(store, Settings(accounts_json=json.dumps(document))) == 0
        assert "Skipping" in caplog.text
