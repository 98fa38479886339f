import pytest

import config
import storage
from token_crypto import TokenCryptoError, decrypt_token, encrypt_token

OTHER_KEY = "ffeeddccbbaa99887766554433221100" * 2


def _raw_tokens(account_id):
    with storage.get_db() as conn:
        row = conn.execute(
            "SELECT access_token, refresh_token FROM linked_accounts WHERE id = ?", (account_id,)
        ).fetchone()
    return row["access_token"], row["refresh_token"]


def test_round_trip_uses_a_fresh_iv():
    first = encrypt_token("ya29.token")
    second = encrypt_token("ya29.token")
    assert first != second
    assert decrypt_token(first) == decrypt_token(second) == "ya29.token"


def test_empty_token_stays_empty():
    assert encrypt_token("") == ""
    assert decrypt_token("") == ""


def test_wrong_key_is_rejected(monkeypatch):
    sealed = encrypt_token("ya29.token")
    monkeypatch.setattr(config, "ENCRYPTION_KEY", OTHER_KEY)
    with pytest.raises(TokenCryptoError):
        decrypt_token(sealed)


@pytest.mark.parametrize("key", ["", "not-hex", "abcd"])
def test_bad_key_config(monkeypatch, key):
    monkeypatch.setattr(config, "ENCRYPTION_KEY", key)
    with pytest.raises(TokenCryptoError):
        encrypt_token("ya29.token")


def test_plaintext_row_is_not_a_token():
    with pytest.raises(TokenCryptoError):
        decrypt_token("ya29.plaintext")


class TestStoredTokens:
    def test_tokens_are_encrypted_in_the_database(self, user):
        account_id = storage.create_linked_account(user["id"], "me@example.com", "ya29.access", "1//refresh", "", True)

        access, refresh = _raw_tokens(account_id)
        assert "ya29.access" not in access
        assert "1//refresh" not in refresh
        account = storage.get_linked_account(account_id)
        assert (account["access_token"], account["refresh_token"]) == ("ya29.access", "1//refresh")

    def test_updates_are_encrypted(self, user):
        account_id = storage.create_linked_account(user["id"], "me@example.com", "a1", "r1", "", True)

        storage.update_primary_account_tokens(user["id"], "a2", "", "2024-01-01T00:00:00+00:00")
        assert storage.get_linked_account(account_id)["refresh_token"] == "r1"

        storage.update_account_access_token(account_id, "a3", "2024-01-01T01:00:00+00:00")
        assert _raw_tokens(account_id)[0] != "a3"
        assert storage.get_linked_account(account_id)["access_token"] == "a3"

    def test_enabled_calendars_carry_plain_tokens(self, user):
        account_id = storage.create_linked_account(user["id"], "me@example.com", "a1", "r1", "", True)
        storage.add_selected_calendars(account_id, [{"id": "primary", "summary": "Me"}], enabled=True)

        row = storage.list_enabled_calendars(user["id"])[0]

        assert (row["access_token"], row["refresh_token"]) == ("a1", "r1")

    def test_unreadable_token_reads_as_missing(self, monkeypatch, user):
        account_id = storage.create_linked_account(user["id"], "me@example.com", "a1", "r1", "", True)
        monkeypatch.setattr(config, "ENCRYPTION_KEY", OTHER_KEY)

        account = storage.get_linked_account(account_id)

        assert (account["access_token"], account["refresh_token"]) == ("", "")
