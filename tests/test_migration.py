import io
import threading

import pytest

from migrator.migration import DEFAULT_BUFFER_SIZE, Migration


def test_log_string_up():
    body = io.BytesIO(b"dumy migration that creates users table")
    migr = Migration(body, "create_users_table", 1486686016, 1486689359)
    assert migr.log_string() == "1486686016/u create_users_table"


def test_log_string_nil_migration():
    migr = Migration(None, "", 1486686016, 1486689359)
    assert migr.log_string() == "1486686016/u <empty>"


def test_log_string_nil_version():
    body = io.BytesIO(b"dumy migration that deletes users table")
    migr = Migration(body, "drop_users_table", 1486686016, -1)
    assert migr.log_string() == "1486686016/d drop_users_table"


def test_str_format():
    migr = Migration(None, "CREATE 1", 1, 3)
    assert str(migr) == "CREATE 1 [1=>3]"


def test_nil_migration_keeps_given_identifier():
    migr = Migration(None, "named", 2, 2)
    assert migr.identifier == "named"
    assert migr.buffered_body is None


def test_nil_migration_timestamps_equal_scheduled():
    migr = Migration(None, "", 1, 2)
    assert migr.started_buffering == migr.scheduled
    assert migr.finished_buffering == migr.scheduled
    assert migr.finished_reading == migr.scheduled


def test_nil_migration_buffer_is_noop():
    migr = Migration(None, "", 1, 2)
    migr.buffer()
    assert migr.bytes_read == 0


def test_body_migration_defaults():
    migr = Migration(io.BytesIO(b"x"), "id", 1, 2)
    assert migr.buffer_size == DEFAULT_BUFFER_SIZE
    assert migr.identifier == "id"


def test_buffer_round_trip_small_body():
    body = io.BytesIO(b"CREATE TABLE users;")
    migr = Migration(body, "users", 1, 1)
    migr.buffer()
    assert migr.buffered_body.read() == b"CREATE TABLE users;"
    assert migr.bytes_read == len(b"CREATE TABLE users;")
    assert body.closed


def test_buffer_empty_body():
    body = io.BytesIO(b"")
    migr = Migration(body, "empty", 1, 1)
    migr.buffer()
    assert migr.buffered_body.read() == b""
    assert migr.bytes_read == 0
    assert body.closed


def test_buffer_timestamps_are_ordered():
    migr = Migration(io.BytesIO(b"abc"), "t", 1, 1)
    migr.buffer()
    assert migr.started_buffering <= migr.finished_buffering <= migr.finished_reading


def test_buffer_large_body_with_concurrent_reader():
    payload = bytes(range(256)) * 400
    migr = Migration(io.BytesIO(payload), "big", 1, 1)
    migr.buffer_size = 1000
    received = {}

    def consume():
        received["data"] = migr.buffered_body.read()

    reader = threading.Thread(target=consume)
    reader.start()
    migr.buffer()
    reader.join(timeout=10)
    assert received["data"] == payload
    assert migr.bytes_read == len(payload)


def test_sized_reads():
    migr = Migration(io.BytesIO(b"0123456789"), "s", 1, 1)
    migr.buffer()
    assert migr.buffered_body.read(4) == b"0123"
    assert migr.buffered_body.read(4) == b"4567"
    assert migr.buffered_body.read(4) == b"89"
    assert migr.buffered_body.read(4) == b""


class _BrokenBody:
    def __init__(self):
        self.closed = False

    def read(self, size=-1):
        raise OSError("disk gone")

    def close(self):
        self.closed = True


def test_buffer_error_propagates_to_reader():
    migr = Migration(_BrokenBody(), "broken", 1, 1)
    with pytest.raises(OSError, match="disk gone"):
        migr.buffer()
    with pytest.raises(OSError, match="disk gone"):
        migr.buffered_body.read()