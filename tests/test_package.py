from __future__ import annotations

import pytest

import screen_vault
from screen_vault.app import create_app
from screen_vault.config import AppConfig


def test_package_exports() -> None:
    assert screen_vault.create_app is create_app
    assert screen_vault.AppConfig is AppConfig
    assert screen_vault.APP_VERSION.count(".") == 2


def test_unknown_attribute_raises() -> None:
    with pytest.raises(AttributeError):
        screen_vault.not_a_thing  # noqa: B018


def test_app_reports_package_version(tmp_path, pool) -> None:
    app = create_app(AppConfig(database_path=tmp_path / "v.db", system_log_path=None), pool=pool)
    assert app.version == screen_vault.APP_VERSION
