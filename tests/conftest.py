from unittest.mock import MagicMock

import pytest

import config


def make_job(**overrides) -> config.BackupJob:
    fields = {
        "name": "shop-db",
        "endpoint": "s3.example.com",
        "access_key": "AKIA",
        "secret_key": "secret",
        "region": "eu-west-1",
        "bucket_name": "backups",
        "db_host": "db.internal",
        "db_port": 3306,
        "db_user": "backup",
        "db_password": "pa$$word",
        "db_name": "shop",
    }
    fields.update(overrides)
    return config.BackupJob(**fields)


@pytest.fixture
def job():
    return make_job()


@pytest.fixture
def s3_client():
    client = MagicMock(name="s3")
    client.head_bucket.return_value = {}
    return client


@pytest.fixture
def mysqldump(tmp_path):
    path = tmp_path / "mysqldump"
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return str(path)


@pytest.fixture
def scratch_dir(tmp_path):
    path = tmp_path / "scratch"
    path.mkdir()
    return path
