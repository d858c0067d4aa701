from datetime import timedelta

import pytest
from cryptography.fernet import Fernet

from chartdeck.errors import ServiceError
from chartdeck.security import CredentialVault, create_access_token, decode_token
from chartdeck.services.permissions import ROLE_ACTIONS
from chartdeck.settings import Settings


def test_access_tokens_carry_the_subject_as_string() -> None:
    settings = Settings(environment="test")
    token = create_access_token({"sub": 7}, settings)
    assert decode_token(token, settings)["sub"] == "7"

    expired = create_access_token({"sub": 7}, settings, expires_delta=timedelta(seconds=-5))
    assert decode_token(expired, settings) is None


def test_vault_rejects_ciphertext_from_another_key() -> None:
    vault = CredentialVault(Fernet.generate_key().decode())
    other = CredentialVault(Fernet.generate_key().decode())
    secret = vault.encrypt("postgresql://user:pw@db/app")

    assert vault.decrypt(secret) == "postgresql://user:pw@db/app"
    with pytest.raises(ServiceError) as exc_info:
        other.decrypt(secret)
    assert exc_info.value.code == "credential_decryption_failed"


def test_role_matrix() -> None:
    assert "chart.read" in ROLE_ACTIONS["viewer"]
    assert "chart.export" in ROLE_ACTIONS["viewer"]
    assert "chart.create" not in ROLE_ACTIONS["viewer"]
    assert "cache.manage" in ROLE_ACTIONS["editor"]
    assert "dashboard.delete" not in ROLE_ACTIONS["editor"]
    assert "dataset.manage" in ROLE_ACTIONS["owner"]


def test_production_settings_refuse_insecure_defaults() -> None:
    with pytest.raises(ValueError):
        Settings(environment="production", secret_key="x" * 40, cors_origins="*")
