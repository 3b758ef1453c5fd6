"""Tests for environment-dependent settings validation."""

import pytest

from verifactu_api.settings import Settings


@pytest.mark.parametrize("environment", ["development", "test", "dev", "Development"])
def test_local_environments_allow_local_provider(environment):
    settings = Settings(environment=environment, certificate_encryption_provider="local")

    assert settings.is_local
    settings.validate_production_settings()


@pytest.mark.parametrize("environment", ["production", "staging"])
def test_non_local_environments_reject_local_provider(environment):
    settings = Settings(environment=environment, certificate_encryption_provider="local")

    assert not settings.is_local
    with pytest.raises(ValueError, match="CERTIFICATE_ENCRYPTION_PROVIDER"):
        settings.validate_production_settings()


def test_production_requires_secret_key():
    settings = Settings(environment="production", certificate_encryption_provider="aws_kms")

    with pytest.raises(ValueError, match="SECRET_KEY"):
        settings.validate_production_settings()


def test_production_requires_notifier_secret_with_url():
    settings = Settings(
        environment="production",
        certificate_encryption_provider="aws_kms",
        secret_key="s3cret",
        notifier_url="https://crm.example.com/hooks/verifactu",
    )

    with pytest.raises(ValueError, match="NOTIFIER_SECRET"):
        settings.validate_production_settings()
