"""Reading migrations from a source and applying them to a database."""

from __future__ import annotations

import queue
import threading
from contextlib import closing, contextmanager
from datetime import datetime
from typing import BinaryIO, Iterable, Iterator, Protocol

from .migration import Migration

__all__ = [
    "DEFAULT_LOCK_TIMEOUT",
    "DEFAULT_PREFETCH_MIGRATIONS",
    "NIL_VERSION",
    "DirtyError",
    "InvalidVersionError",
    "LockTimeoutError",
    "LockedError",
    "Logger",
    "Migrate",
    "MigrateError",
    "NilVersionError",
    "NoChangeError",
    "ShortLimitError",
]

# Number of migrations read ahead from the source. Each one is buffered in
# memory, so this has a direct effect on memory use.
DEFAULT_PREFETCH_MIGRATIONS = 10

# Seconds a database driver has to acquire its lock.
DEFAULT_LOCK_TIMEOUT = 15.0

# The version of a database to which no migration has been applied.
NIL_VERSION = -1


class Logger(Protocol):
    """Where a :class:`Migrate` writes its progress."""

    verbose: bool

    def printf(self, message: str) -> None:
        """Write an already formatted message."""


class _SourceDriver(Protocol):
    def first(self) -> int: ...

    def next(self, version: int) -> int: ...

    def prev(self, version: int) -> int: ...

    def read_up(self, version: int) -> tuple[BinaryIO, str]: ...

    def read_down(self, version: int) -> tuple[BinaryIO, str]: ...

    def close(self) -> None: ...


class _DatabaseDriver(Protocol):
    def lock(self) -> None: ...

    def unlock(self) -> None: ...

    def run(self, body) -> None: ...

    def set_version(self, version: int, dirty: bool) -> None: ...

    def version(self) -> tuple[int, bool]: ...

    def drop(self) -> None: ...

    def close(self) -> None: ...


class MigrateError(Exception):
    """Base class for errors raised while migrating."""


class NoChangeError(MigrateError):
    """Nothing had to be done."""

    def __init__(self) -> None:
        super().__init__("no change")


class NilVersionError(MigrateError):
    """No migration has been applied yet."""

    def __init__(self) -> None:
        super().__init__("no migration")


class InvalidVersionError(MigrateError):
    """A version below the nil version was given."""

    def __init__(self) -> None:
        super().__init__("version must be >= -1")


class LockedError(MigrateError):
    """The database is already locked by this instance."""

    def __init__(self) -> None:
        super().__init__("database locked")


class LockTimeoutError(MigrateError):
    """The database lock could not be acquired in time."""

    def __init__(self) -> None:
        super().__init__("timeout: can't acquire database lock")


class ShortLimitError(MigrateError):
    """The source held fewer migrations than the requested limit."""

    def __init__(self, short: int) -> None:
        super().__init__(f"limit {short} short")
        self.short = short


class DirtyError(MigrateError):
    """The database was left in a dirty state by a failed migration."""

    def __init__(self, version: int) -> None:
        super().__init__(f"Dirty database version {version}. Fix and force version.")
        self.version = version


_END = object()


class Migrate:
    """Runs migrations from a source driver against a database driver.

    The source driver provides ``first()``, ``next(version)``,
    ``prev(version)``, ``read_up(version)``, ``read_down(version)`` and
    ``close()``; missing versions raise :class:`FileNotFoundError`, and the
    readers return a ``(body, identifier)`` pair. The database driver provides
    ``lock()``, ``unlock()``, ``run(body)``, ``set_version(version, dirty)``,
    ``version()``, ``drop()`` and ``close()``; ``version()`` returns
    ``(version, dirty)`` with -1 as the nil version.
    """

    def __init__(
        self,
        source_name: str,
        source_driver: _SourceDriver,
        database_name: str,
        database_driver: _DatabaseDriver,
    ) -> None:
        self.source_name = source_name
        self.source_driver = source_driver
        self.database_name = database_name
        self.database_driver = database_driver
        self.log: Logger | None = None
        self.prefetch_migrations = DEFAULT_PREFETCH_MIGRATIONS
        self.lock_timeout = DEFAULT_LOCK_TIMEOUT
        self._stop_requested = threading.Event()
        self._state_lock = threading.Lock()
        self._is_locked = False

    # -- public operations -------------------------------------------------

    def close(self) -> None:
        """Close the source and the database."""
        self._log_verbose("Closing source and database\n")
        errors = []
        for driver in (self.source_driver, self.database_driver):
            try:
                driver.close()
            except Exception as exc:
                errors.append(exc)
        if errors:
            raise errors[0] from (errors[1] if len(errors) > 1 else None)

    def migrate(self, version: int) -> None:
        """Migrate up or down from the current version to ``version``."""
        if version < 0:
            raise ValueError("version must be >= 0")
        self._execute(lambda current: self.read(current, version))

    def steps(self, n: int) -> None:
        """Apply ``n`` up migrations if ``n`` > 0, ``-n`` down ones if ``n`` < 0."""
        if n == 0:
            raise NoChangeError()
        if n > 0:
            self._execute(lambda current: self.read_up(current, n))
        else:
            self._execute(lambda current: self.read_down(current, -n))

    def up(self) -> None:
        """Apply all up migrations."""
        self._execute(lambda current: self.read_up(current, -1))

    def down(self) -> None:
        """Apply all down migrations."""
        self._execute(lambda current: self.read_down(current, -1))

    def drop(self) -> None:
        """Delete everything in the database."""
        with self._locked():
            self.database_driver.drop()

    def run(self, *args: Migration) -> None:
        """Run the given migrations, ignoring the database's current version."""
        if not args:
            raise NoChangeError()

        def scheduled() -> Iterator[Migration]:
            for migr in args:
                self._log_scheduled(migr)
                yield self._start_buffering(migr)

        self._execute(lambda current: scheduled())

    def force(self, version: int) -> None:
        """Set ``version`` and clear the dirty flag without running anything."""
        if version < NIL_VERSION:
            raise InvalidVersionError()
        with self._locked():
            self.database_driver.set_version(version, False)

    def version(self) -> tuple[int, bool]:
        """Return ``(version, dirty)``; raise NilVersionError if none applied."""
        version, dirty = self.database_driver.version()
        if version == NIL_VERSION:
            raise NilVersionError()
        return version, dirty

    def graceful_stop(self) -> None:
        """Stop at the next safe point between migrations."""
        self._stop_requested.set()

    # -- readers -------------------------------------------------------------

    def read(self, from_version: int, to_version: int) -> Iterator[Migration]:
        """Yield the up or down migrations leading from one version to another."""
        if from_version >= 0:
            self._version_exists(from_version)
        if to_version >= 0:
            self._version_exists(to_version)
        if from_version == to_version:
            raise NoChangeError()

        if from_version < to_version:
            if from_version == NIL_VERSION:
                first = self.source_driver.first()
                yield self._start_buffering(self.new_migration(first, first))
                from_version = first
            while from_version < to_version:
                if self._stop():
                    return
                following = self.source_driver.next(from_version)
                yield self._start_buffering(self.new_migration(following, following))
                from_version = following
            return

        while from_version > to_version and from_version >= 0:
            if self._stop():
                return
            previous = self._previous(from_version)
            if previous is None:
                if to_version != NIL_VERSION:
                    raise FileNotFoundError(f"no migration before version {from_version}")
                yield self._start_buffering(self.new_migration(from_version, NIL_VERSION))
                return
            yield self._start_buffering(self.new_migration(from_version, previous))
            from_version = previous

    def read_up(self, from_version: int, limit: int) -> Iterator[Migration]:
        """Yield up to ``limit`` up migrations after ``from_version`` (-1: all)."""
        if from_version >= 0:
            self._version_exists(from_version)
        if limit == 0:
            raise NoChangeError()

        count = 0
        while count < limit or limit == -1:
            if self._stop():
                return

            if from_version == NIL_VERSION:
                first = self.source_driver.first()
                yield self._start_buffering(self.new_migration(first, first))
                from_version = first
                count += 1
                continue

            following = self._following(from_version)
            if following is None:
                if limit == -1:
                    if count == 0:
                        raise NoChangeError()
                    return
                if count == 0:
                    raise FileNotFoundError(f"no migration after version {from_version}")
                raise ShortLimitError(limit - count)

            yield self._start_buffering(self.new_migration(following, following))
            from_version = following
            count += 1

    def read_down(self, from_version: int, limit: int) -> Iterator[Migration]:
        """Yield up to ``limit`` down migrations from ``from_version`` (-1: all)."""
        if from_version >= 0:
            self._version_exists(from_version)
        if limit == 0:
            raise NoChangeError()
        if from_version == NIL_VERSION and limit == -1:
            raise NoChangeError()
        if from_version == NIL_VERSION and limit > 0:
            raise FileNotFoundError("already at the nil version")

        count = 0
        while count < limit or limit == -1:
            if self._stop():
                return

            previous = self._previous(from_version)
            if previous is None:
                if limit == -1 or limit - count > 0:
                    first = self.source_driver.first()
                    yield self._start_buffering(self.new_migration(first, NIL_VERSION))
                    count += 1
                if count < limit:
                    raise ShortLimitError(limit - count)
                return

            yield self._start_buffering(self.new_migration(from_version, previous))
            from_version = previous
            count += 1

    def new_migration(self, version: int, target_version: int) -> Migration:
        """Build the migration leading from ``version`` to ``target_version``."""
        reader = (
            self.source_driver.read_up
            if target_version >= version
            else self.source_driver.read_down
        )
        try:
            body, identifier = reader(version)
        except FileNotFoundError:
            migr = Migration(None, "", version, target_version)
        else:
            migr = Migration(body, identifier, version, target_version)
        self._log_scheduled(migr)
        return migr

    # -- locking -------------------------------------------------------------

    def lock(self) -> None:
        """Lock the database, waiting at most ``lock_timeout`` seconds."""
        with self._state_lock:
            if self._is_locked:
                raise LockedError()

            failure: list[BaseException] = []

            def acquire() -> None:
                try:
                    self.database_driver.lock()
                except BaseException as exc:
                    failure.append(exc)

            worker = threading.Thread(target=acquire, daemon=True)
            worker.start()
            worker.join(self.lock_timeout)
            if worker.is_alive():
                raise LockTimeoutError()
            if failure:
                raise failure[0]
            self._is_locked = True

    def unlock(self) -> None:
        """Unlock the database."""
        with self._state_lock:
            self.database_driver.unlock()
            self._is_locked = False

    # -- internals -----------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.lock()
        try:
            yield
        except BaseException as exc:
            try:
                self.unlock()
            except Exception as unlock_exc:
                raise exc from unlock_exc
            raise
        self.unlock()

    def _execute(self, make_migrations) -> None:
        with self._locked():
            current, dirty = self.database_driver.version()
            if dirty:
                raise DirtyError(current)
            self._run_migrations(make_migrations(current))

    def _run_migrations(self, migrations: Iterator[Migration]) -> None:
        with closing(self._prefetched(migrations)) as stream:
            for migr in stream:
                if self._stop():
                    return

                self.database_driver.set_version(migr.target_version, True)
                if migr.body is not None:
                    self._log_verbose(f"Read and execute {migr.log_string()}\n")
                    self.database_driver.run(migr.buffered_body)
                self.database_driver.set_version(migr.target_version, False)

                end = datetime.now()
                finished_reading = migr.finished_reading or end
                started_buffering = migr.started_buffering or finished_reading
                read_time = finished_reading - started_buffering
                run_time = end - finished_reading
                if self.log is not None:
                    if self.log.verbose:
                        self.log.printf(
                            f"Finished {migr.log_string()} (read {read_time}, ran {run_time})\n"
                        )
                    else:
                        self.log.printf(f"{migr.log_string()} ({read_time + run_time})\n")

    def _prefetched(self, migrations: Iterator[Migration]) -> Iterator[Migration]:
        """Read migrations ahead in a background thread."""
        pending: queue.Queue = queue.Queue(maxsize=max(1, self.prefetch_migrations))
        cancelled = threading.Event()

        def offer(entry) -> bool:
            while not cancelled.is_set():
                try:
                    pending.put(entry, timeout=0.05)
                    return True
                except queue.Full:
                    continue
            return False

        def produce() -> None:
            try:
                for migr in migrations:
                    if not offer(migr):
                        close = getattr(migrations, "close", None)
                        if close is not None:
                            close()
                        return
            except BaseException as exc:
                offer(exc)
                return
            offer(_END)

        threading.Thread(target=produce, daemon=True).start()
        try:
            while True:
                item = pending.get()
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            cancelled.set()

    def _start_buffering(self, migr: Migration) -> Migration:
        def buffer() -> None:
            try:
                migr.buffer()
            except Exception as exc:
                self._log_err(exc)

        threading.Thread(target=buffer, daemon=True).start()
        return migr

    def _following(self, version: int) -> int | None:
        try:
            return self.source_driver.next(version)
        except FileNotFoundError:
            return None

    def _previous(self, version: int) -> int | None:
        try:
            return self.source_driver.prev(version)
        except FileNotFoundError:
            return None

    def _version_exists(self, version: int) -> None:
        """Raise FileNotFoundError unless an up or down migration exists."""
        last_missing: FileNotFoundError | None = None
        for reader in (self.source_driver.read_up, self.source_driver.read_down):
            try:
                body, _ = reader(version)
            except FileExistsError:
                return
            except FileNotFoundError as exc:
                last_missing = exc
                continue
            body.close()
            return

        error = FileNotFoundError(f"no migration found for version {version}")
        self._log_err(error)
        raise error from last_missing

    def _stop(self) -> bool:
        return self._stop_requested.is_set()

    def _log_scheduled(self, migr: Migration) -> None:
        if self.prefetch_migrations > 0 and migr.body is not None:
            self._log_verbose(f"Start buffering {migr.log_string()}\n")
        else:
            self._log_verbose(f"Scheduled {migr.log_string()}\n")

    def _log_verbose(self, message: str) -> None:
        if self.log is not None and self.log.verbose:
            self.log.printf(message)

    def _log_err(self, error: BaseException) -> None:
        if self.log is not None:
            self.log.printf(f"error: {error}")


def _iterate(items: Iterable[Migration]) -> Iterator[Migration]:
    yield from items