import json

import pytest

from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.models import Otp, Permission, RefreshToken


def _state(tmp_path):
    return json.loads((tmp_path / "state" / "gatekeep_store.json").read_text())


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key="k")
    user = store.create_user("persist@example.com")
    user.enable_otp("JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP")
    store.update_user(user)
    store.create_otp(Otp.new(user.id, "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ", 5))
    store.create_refresh_token(RefreshToken.new(user.id, "tok-1", 7))
    store.create_permission(Permission.new("posts:read", "", "posts", "read"))

    reloaded = MemoryStore(fs_root=str(tmp_path), secret_key="k")
    restored = reloaded.get_user(user.id)
    assert restored.email == "persist@example.com"
    assert restored.otp_secret == "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"
    assert reloaded.get_otp_for_user(user.id).secret == "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
    assert reloaded.get_refresh_token("tok-1").user_id == user.id
    assert reloaded.get_permission_by_name("posts:read") is not None


def test_secrets_are_encrypted_at_rest(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key="k")
    user = store.create_user("enc@example.com")
    user.enable_otp("JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP")
    store.update_user(user)
    store.create_otp(Otp.new(user.id, "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ", 5))

    raw = (tmp_path / "state" / "gatekeep_store.json").read_text()
    assert "JBSWY3DPEHPK3PXP" not in raw
    assert "GEZDGNBVGY3TQOJQ" not in raw
    assert _state(tmp_path)["users"][0]["otp_secret"]


def test_wrong_key_cannot_read_secrets(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), secret_key="k")
    user = store.create_user("enc@example.com")
    user.enable_otp("JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP")
    store.update_user(user)

    with pytest.raises(RuntimeError):
        MemoryStore(fs_root=str(tmp_path), secret_key="other")


def test_records_are_copies(memory_store, test_user):
    fetched = memory_store.get_user(test_user.id)
    fetched.is_active = False
    assert memory_store.get_user(test_user.id).is_active is True


def test_duplicate_email(memory_store, test_user):
    with pytest.raises(ConstraintViolation):
        memory_store.create_user("test@example.com")


def test_otp_requires_user(memory_store):
    with pytest.raises(ConstraintViolation):
        memory_store.create_otp(Otp.new("missing-user", "GEZDGNBVGY3TQOJQ", 5))


def test_replace_refresh_tokens(memory_store, test_user):
    memory_store.create_refresh_token(RefreshToken.new(test_user.id, "old-1", 7))
    memory_store.create_refresh_token(RefreshToken.new(test_user.id, "old-2", 7))
    memory_store.replace_refresh_tokens(RefreshToken.new(test_user.id, "new", 7))

    assert memory_store.get_refresh_token("old-1") is None
    assert memory_store.get_refresh_token("old-2") is None
    assert memory_store.get_refresh_token("new") is not None


def test_delete_user_refresh_tokens_counts(memory_store, test_user):
    memory_store.create_refresh_token(RefreshToken.new(test_user.id, "a", 7))
    memory_store.create_refresh_token(RefreshToken.new(test_user.id, "b", 7))
    assert memory_store.delete_user_refresh_tokens(test_user.id) == 2
    assert memory_store.delete_user_refresh_tokens(test_user.id) == 0


def test_cipher_key_comes_only_from_argument_or_key_file(monkeypatch, tmp_path):
    monkeypatch.setenv("MFA_SECRET_KEY", "ignored-by-the-store")
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("keyfile@example.com")
    user.enable_otp("JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP")
    store.update_user(user)

    key_file = tmp_path / ".mfa_key"
    assert key_file.exists()
    assert key_file.read_text() != "ignored-by-the-store"

    monkeypatch.delenv("MFA_SECRET_KEY")
    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_user(user.id).otp_secret == "JBSWY3DPEHPK3PXPJBSWY3DPEHPK3PXP"
