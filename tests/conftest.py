import os

import pytest

BUILD_ENVIRONMENT = [
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_REGION",
    "PULUMI_CONFIG_PASSPHRASE",
    "PULUMI_ACCESS_TOKEN",
    "PULUMI_DEBUG",
    "PULUMI_VERSION",
    "Configuration",
    "Root",
    "CI",
]


@pytest.fixture
def clean_environ(monkeypatch):
    """Start from an environment without build parameters; restored after the test."""
    for name in BUILD_ENVIRONMENT:
        # setenv first so variables the build exports are removed on teardown
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.setenv("PATH", os.environ.get("PATH", ""))
    return monkeypatch


@pytest.fixture
def credentials(clean_environ):
    clean_environ.setenv("AWS_ACCESS_KEY_ID", "AKIAEXAMPLE")
    clean_environ.setenv("AWS_SECRET_ACCESS_KEY", "secret")
    clean_environ.setenv("AWS_REGION", "eu-west-1")
    clean_environ.setenv("PULUMI_CONFIG_PASSPHRASE", "passphrase")
    return clean_environ
