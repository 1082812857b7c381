"""Tests for the command line tool."""

import gzip

import orjson
import pytest

from pgmass import cli, config as config_mod
from pgmass.core.io import chunked_rows


@pytest.fixture(autouse=True)
def no_dotenv(monkeypatch):
    monkeypatch.setattr(config_mod, "load_dotenv", lambda: None)


def _write_jsonl(path, rows):
    path.write_bytes(b"".join(orjson.dumps(r) + b"\n" for r in rows))
    return path


ROWS = [
    {"id": 1, "name": "alpha", "note": None},
    {"id": 2, "name": "be\ta\x03", "note": "multi\nline"},
]


class TestChunkedRows:
    """Tests for chunked_rows."""

    def test_chunks_and_blank_lines(self, tmp_path):
        path = tmp_path / "rows.jsonl"
        path.write_bytes(b'{"a": 1}\n\n{"a": 2}\n{"a": 3}\n')

        assert list(chunked_rows(path, 2)) == [[{"a": 1}, {"a": 2}], [{"a": 3}]]

    def test_gzip(self, tmp_path):
        path = tmp_path / "rows.jsonl.gz"
        with gzip.open(path, "wb") as fh:
            fh.write(b'{"a": 1}\n')

        assert list(chunked_rows(path, 10)) == [[{"a": 1}]]


class TestEncodeCommand:
    """Tests for `pgmass encode`."""

    def test_verify_ok(self, tmp_path, capsys):
        path = _write_jsonl(tmp_path / "rows.jsonl", ROWS)

        assert cli.main(["encode", str(path), "--verify"]) == 0
        out = capsys.readouterr().out
        assert "verify     : ok" in out
        assert "attempts   : 2" in out
        assert "escaped    : True" in out

    def test_forbid_mode_fails(self, tmp_path, capsys):
        path = _write_jsonl(tmp_path / "rows.jsonl", ROWS)

        assert cli.main(["encode", str(path), "--escape", "forbid"]) == 2
        assert "UnescapableSequence" in capsys.readouterr().err

    def test_column_mismatch(self, tmp_path, capsys):
        path = _write_jsonl(tmp_path / "rows.jsonl", [{"a": 1}, {"b": 2}])

        assert cli.main(["encode", str(path)]) == 2
        assert "ColumnMismatch" in capsys.readouterr().err


class TestDeleteCommand:
    """Tests for `pgmass delete`."""

    @pytest.fixture
    def connect(self, monkeypatch, mock_conn):
        mock_conn.__enter__.return_value = mock_conn
        mock_conn.cur.rowcount = 2
        monkeypatch.setattr(cli.psycopg, "connect", lambda dsn: mock_conn)
        return mock_conn

    def test_in_list_size_comes_from_config(self, tmp_path, monkeypatch, connect):
        monkeypatch.setenv("PGMASS_DELETE_CHUNK", "2")
        path = _write_jsonl(tmp_path / "ids.jsonl", [{"id": i} for i in range(1, 6)])

        assert cli.main(["delete", str(path), "--table", "widgets"]) == 0

        params = [c.args[1] for c in connect.cur.execute.call_args_list]
        assert params == [[1, 2], [3, 4], [5]]
        connect.commit.assert_called_once_with()

    def test_single_row_file(self, tmp_path, connect):
        path = _write_jsonl(tmp_path / "ids.jsonl", [{"id": 7}])

        assert cli.main(["delete", str(path), "--table", "widgets", "--id-type", "integer"]) == 0

        assert connect.cur.execute.call_count == 1
        assert connect.cur.execute.call_args.args[1] == [7]
