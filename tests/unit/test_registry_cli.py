"""Tests for the registry inspection CLI."""

import pytest

import registry_cli
from apk_registry.sqlite_apk_storage import SQLiteApkStorage

from tests.conftest import COORDINATOR


@pytest.fixture
def db_path(tmp_path, registry, clock, operators):
    a, b, _ = operators
    clock.set_block(100)
    registry.register_operator(COORDINATOR, a.address, [3], a.pubkey)
    clock.set_block(150)
    registry.register_operator(COORDINATOR, b.address, [3], b.pubkey)

    path = tmp_path / "apk.db"
    storage = SQLiteApkStorage(str(path))
    storage.save_registry(registry)
    storage.close()
    return str(path)


class TestCommands:

    def test_apk(self, db_path, capsys):
        assert registry_cli.main(["--db", db_path, "apk", "3"]) == 0
        out = capsys.readouterr().out
        assert "QUORUM 3 APK" in out
        assert "History length: 2" in out

    def test_history(self, db_path, capsys, operators):
        assert registry_cli.main(["--db", db_path, "history", "3"]) == 0
        out = capsys.readouterr().out
        assert operators[0].pubkey_hash in out
        assert "open" in out

    def test_empty_history(self, db_path, capsys):
        assert registry_cli.main(["--db", db_path, "history", "8"]) == 0
        assert "No apk updates" in capsys.readouterr().out

    def test_index(self, db_path, capsys):
        assert registry_cli.main(["--db", db_path, "index", "3", "149"]) == 0
        out = capsys.readouterr().out
        assert "index 0" in out
        assert "[100, 150)" in out

    def test_hash_valid(self, db_path, capsys, operators):
        assert registry_cli.main(["--db", db_path, "hash", "3", "120", "0"]) == 0
        assert operators[0].pubkey_hash in capsys.readouterr().out

    def test_hash_rejected(self, db_path, capsys):
        assert registry_cli.main(["--db", db_path, "hash", "3", "120", "1"]) == 1
        assert "IndexTooRecent" in capsys.readouterr().out

    def test_index_before_history(self, db_path, capsys):
        assert registry_cli.main(["--db", db_path, "index", "3", "10"]) == 1
        assert "NoHistoryBeforeBlock" in capsys.readouterr().out

    def test_bad_quorum(self, db_path, capsys):
        assert registry_cli.main(["--db", db_path, "apk", "300"]) == 1

    def test_verify(self, db_path, capsys):
        assert registry_cli.main(["--db", db_path, "verify"]) == 0
        out = capsys.readouterr().out
        assert "integrity check passed" in out
        assert "Updates: 2" in out

    def test_missing_database(self, tmp_path, capsys):
        assert registry_cli.main(["--db", str(tmp_path / "none.db"), "verify"]) == 1
        assert "not found" in capsys.readouterr().out
