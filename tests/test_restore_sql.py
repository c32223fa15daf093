"""
Tests for the psql restore runner - upload cleanup and exit code handling
"""

import io
from dataclasses import replace

import pytest

from backup import restore_sql as mod


def _upload(config, content: bytes, name: str = "restore.sql"):
    return mod.save_upload(config.upload_dir, io.BytesIO(content), name)


class TestSaveUpload:

    def test_keeps_safe_suffix(self, utility_config):
        path = _upload(utility_config, b"SELECT 1;", "nightly.dump")
        assert path.parent == utility_config.upload_dir
        assert path.suffix == ".dump"
        assert path.read_bytes() == b"SELECT 1;"

    def test_drops_suspicious_suffix(self, utility_config):
        path = _upload(utility_config, b"", "../../etc/passwd.s q l")
        assert path.parent == utility_config.upload_dir
        assert path.suffix == ""

    def test_unique_names(self, utility_config):
        first = _upload(utility_config, b"a")
        second = _upload(utility_config, b"b")
        assert first != second


class TestRestoreSqlFile:

    @pytest.mark.asyncio
    async def test_success_removes_upload(self, utility_config, psql_marker, caplog):
        path = _upload(utility_config, b"CREATE TABLE gates (id int);\n")

        with caplog.at_level("INFO"):
            result = await mod.restore_sql_file(utility_config, path)

        assert result.ok
        assert result.returncode == 0
        assert not path.exists()
        assert "psql: CREATE TABLE" in caplog.text

        args = psql_marker.read_text()
        assert "--dbname postgresql://postgres@localhost:5432/warehouse_test" in args
        assert "ON_ERROR_STOP=1" in args
        assert f"-f {path}" in args

    @pytest.mark.asyncio
    async def test_invalid_sql_fails_and_removes_upload(self, utility_config, caplog):
        path = _upload(utility_config, b"SELEC * FROM customers;\n")

        result = await mod.restore_sql_file(utility_config, path)

        assert not result.ok
        assert result.returncode == 3
        assert not path.exists()
        assert "psql exited with code 3" in caplog.text
        assert "syntax error" in caplog.text

    @pytest.mark.asyncio
    async def test_timeout_terminates_psql(self, utility_config):
        config = replace(utility_config, restore_timeout=0.5)
        path = _upload(config, b"SELECT pg_sleep(60);\n")

        result = await mod.restore_sql_file(config, path)

        assert result.timed_out
        assert not result.ok
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_missing_psql_still_removes_upload(self, utility_config, tmp_path):
        config = replace(utility_config, psql_path=str(tmp_path / "nowhere" / "psql"))
        path = _upload(config, b"SELECT 1;\n")

        result = await mod.restore_sql_file(config, path)

        assert not result.ok
        assert result.returncode is None
        assert not path.exists()


def test_restore_result_ok_requires_zero_exit():
    assert mod.RestoreResult(returncode=0).ok
    assert not mod.RestoreResult(returncode=1).ok
    assert not mod.RestoreResult(returncode=None).ok
    assert not mod.RestoreResult(returncode=0, timed_out=True).ok
