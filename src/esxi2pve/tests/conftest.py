"""Shared pytest fixtures."""

from pathlib import Path

import pytest


@pytest.fixture
def app_config(tmp_path, monkeypatch):
    from esxi2pve.config import AppConfig

    monkeypatch.delenv("PVE_PASSWORD", raising=False)
    return AppConfig(
        esxi={"host": "esxi.local", "username": "root", "password": "s3cret"},
        proxmox={"volume_group": "pve"},
        conversion={"work_dir": tmp_path / "work"},
    )


@pytest.fixture
def work_dir(app_config) -> Path:
    return app_config.conversion.work_dir
