"""Tests for the polling worker against file-backed SQLite databases."""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError

from polling_cdc.common.exceptions import (
    ConnectionError,
    ErrorCategory,
    PollingFailure,
    QueryExecutionError,
    UnsupportedDatabaseError,
)
from polling_cdc.config import SEED_STRATEGY_MAX, ConnectionConfig, SessionConfig
from polling_cdc.connection import SQLAlchemyConnectionProvider, register_datasource
from polling_cdc.poller.events import CallbackEventSink
from polling_cdc.poller.offset import OffsetCheckpoint
from polling_cdc.poller.worker import PollingWorker, WorkerState


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_session(url, **kwargs):
    values = {
        "table_name": "orders",
        "polling_column": "id",
        "connection": ConnectionConfig(url=url),
        "polling_interval_seconds": 0.05,
    }
    values.update(kwargs)
    return SessionConfig(**values)


class Recorder:
    """Event sink recording deliveries and the worker offset at delivery time."""

    def __init__(self):
        self.events = []
        self.offsets = []
        self.worker = None

    def on_event(self, fields):
        if self.worker is not None:
            self.offsets.append(self.worker.current_offset())
        self.events.append(fields)


@pytest.fixture
def running_workers():
    workers = []
    yield workers
    for worker in workers:
        worker.stop(timeout=5)


@pytest.fixture
def make_worker(running_workers):
    providers = []

    def _make(session, sink=None, template_source=None):
        provider = SQLAlchemyConnectionProvider.from_config(session.connection)
        providers.append(provider)
        recorder = sink or Recorder()
        worker = PollingWorker(session, provider, recorder, template_source=template_source)
        if isinstance(recorder, Recorder):
            recorder.worker = worker
        running_workers.append(worker)
        return worker, recorder

    yield _make

    for provider in providers:
        provider.close()


def mock_provider(product="sqlite"):
    provider = MagicMock()
    connection = MagicMock()
    provider.get_connection.return_value = connection
    provider.get_database_product_name.return_value = product
    return provider, connection


class TestSeeding:
    def test_empty_table_seeds_sentinel(self, sqlite_url, make_worker):
        worker, _ = make_worker(make_session(sqlite_url))

        worker.start()

        assert wait_for(lambda: worker.current_offset() == "-1")

    def test_seeds_last_row_without_emitting(self, sqlite_url, insert_rows, make_worker):
        insert_rows((1, "a"), (2, "b"))
        worker, recorder = make_worker(make_session(sqlite_url))

        worker.start()

        assert wait_for(lambda: worker.stats["polls"] >= 2)
        assert worker.current_offset() == "2"
        assert recorder.events == []

    def test_max_strategy(self, sqlite_url, insert_rows, make_worker):
        insert_rows((5, "x"), (2, "y"))
        worker, _ = make_worker(make_session(sqlite_url, seed_strategy=SEED_STRATEGY_MAX))

        worker.start()

        assert wait_for(lambda: worker.current_offset() == "5")

    def test_max_strategy_empty_table(self, sqlite_url, make_worker):
        worker, _ = make_worker(make_session(sqlite_url, seed_strategy=SEED_STRATEGY_MAX))

        worker.start()

        assert wait_for(lambda: worker.current_offset() == "-1")

    def test_explicit_last_offset_skips_seed(self, sqlite_url, insert_rows, make_worker):
        insert_rows((1, "a"), (2, "b"))
        worker, recorder = make_worker(make_session(sqlite_url, last_offset="1"))

        worker.start()

        assert wait_for(lambda: len(recorder.events) == 1)
        assert recorder.events == [{"id": "2", "payload": "b"}]


class TestPolling:
    def test_emits_only_new_rows(self, sqlite_url, insert_rows, make_worker):
        insert_rows((1, "a"), (2, "b"))
        worker, recorder = make_worker(make_session(sqlite_url))
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "2")

        insert_rows((3, "c"))

        assert wait_for(lambda: len(recorder.events) == 1)
        assert recorder.events == [{"id": "3", "payload": "c"}]
        assert worker.current_offset() == "3"

        # Nothing is emitted twice on later polls
        polls = worker.stats["polls"]
        assert wait_for(lambda: worker.stats["polls"] >= polls + 2)
        assert len(recorder.events) == 1

    def test_rows_after_empty_seed(self, sqlite_url, insert_rows, make_worker):
        worker, recorder = make_worker(make_session(sqlite_url))
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")

        insert_rows((1, "a"))

        assert wait_for(lambda: recorder.events == [{"id": "1", "payload": "a"}])

    def test_offset_advances_before_delivery_and_is_monotonic(
        self, sqlite_url, insert_rows, make_worker
    ):
        worker, recorder = make_worker(make_session(sqlite_url))
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")

        insert_rows((1, "a"), (2, "b"))
        assert wait_for(lambda: len(recorder.events) == 2)
        insert_rows((3, "c"), (4, "d"), (5, "e"))
        assert wait_for(lambda: len(recorder.events) == 5)

        assert recorder.offsets == ["1", "2", "3", "4", "5"]
        assert [int(o) for o in recorder.offsets] == sorted(int(o) for o in recorder.offsets)
        assert [e["id"] for e in recorder.events] == recorder.offsets

    def test_null_values_stay_none(self, sqlite_url, insert_rows, make_worker):
        worker, recorder = make_worker(make_session(sqlite_url))
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")

        insert_rows((1, None))

        assert wait_for(lambda: recorder.events == [{"id": "1", "payload": None}])

    def test_datasource_mode(self, sqlite_url, insert_rows, running_workers):
        engine = create_engine(sqlite_url, future=True)
        register_datasource("shop", engine)
        session = make_session(None, connection=ConnectionConfig(datasource_name="shop"))
        recorder = Recorder()
        worker = PollingWorker(
            session, SQLAlchemyConnectionProvider.from_config(session.connection), recorder
        )
        running_workers.append(worker)
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")

        insert_rows((1, "a"))

        assert wait_for(lambda: len(recorder.events) == 1)
        worker.stop(timeout=5)
        engine.dispose()

    def test_stats(self, sqlite_url, insert_rows, make_worker):
        worker, recorder = make_worker(make_session(sqlite_url))
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")

        insert_rows((1, "a"), (2, "b"))
        assert wait_for(lambda: len(recorder.events) == 2)

        stats = worker.stats
        assert stats["rows_fetched"] == 2
        assert stats["events_delivered"] == 2
        assert stats["offset"] == "2"
        assert stats["state"] == "running"


class TestPauseResume:
    def test_pause_holds_delivery_until_resume(self, sqlite_url, insert_rows, make_worker):
        worker, recorder = make_worker(make_session(sqlite_url))
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")

        worker.pause()
        assert worker.state is WorkerState.PAUSED
        insert_rows((1, "a"), (2, "b"))

        # Offset advances for the row held at the gate; nothing is delivered
        assert wait_for(lambda: worker.current_offset() == "1")
        time.sleep(0.2)
        assert recorder.events == []
        assert worker.current_offset() == "1"

        worker.resume()

        assert wait_for(lambda: len(recorder.events) == 2)
        assert [e["id"] for e in recorder.events] == ["1", "2"]
        assert worker.state is WorkerState.RUNNING

    def test_resume_without_pause_is_noop(self, sqlite_url, insert_rows, make_worker):
        worker, recorder = make_worker(make_session(sqlite_url))
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")

        worker.resume()
        insert_rows((1, "a"))

        assert wait_for(lambda: len(recorder.events) == 1)

    def test_stop_while_paused(self, sqlite_url, insert_rows, make_worker):
        worker, recorder = make_worker(make_session(sqlite_url))
        reporter = MagicMock()
        worker.register_completion_reporter(reporter)
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")

        worker.pause()
        insert_rows((1, "a"))
        assert wait_for(lambda: worker.current_offset() == "1")

        worker.stop(timeout=5)

        assert worker.state is WorkerState.STOPPED
        assert recorder.events == []
        reporter.assert_not_called()

    def test_rows_committed_while_paused_wait_for_next_poll(
        self, sqlite_url, insert_rows, make_worker
    ):
        worker, recorder = make_worker(make_session(sqlite_url))
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")

        worker.pause()
        insert_rows((1, "a"), (2, "b"))
        assert wait_for(lambda: worker.current_offset() == "1")
        polls_while_held = worker.stats["polls"]

        insert_rows((3, "c"))
        time.sleep(0.2)

        # The held batch does not complete or requery while the gate is closed
        assert worker.stats["polls"] == polls_while_held
        assert worker.current_offset() == "1"
        assert recorder.events == []

        worker.resume()

        assert wait_for(lambda: len(recorder.events) == 3)
        assert [e["id"] for e in recorder.events] == ["1", "2", "3"]
        assert recorder.offsets == ["1", "2", "3"]
        # Held batch finishes, then row 3 arrives in a later poll
        assert worker.stats["polls"] >= polls_while_held + 2
        assert worker.stats["rows_fetched"] == 3


class TestLifecycle:
    def test_stop_is_clean(self, sqlite_url, make_worker):
        worker, _ = make_worker(make_session(sqlite_url))
        reporter = MagicMock()
        worker.register_completion_reporter(reporter)
        thread = worker.start()
        assert wait_for(lambda: worker.stats["polls"] >= 1)

        worker.stop(timeout=5)

        assert not thread.is_alive()
        assert worker.state is WorkerState.STOPPED
        assert worker.error is None
        reporter.assert_not_called()

    def test_stop_interrupts_long_sleep(self, sqlite_url, make_worker):
        worker, _ = make_worker(make_session(sqlite_url, polling_interval_seconds=60))
        thread = worker.start()
        assert wait_for(lambda: worker.stats["polls"] >= 1)

        started = time.monotonic()
        worker.stop(timeout=5)

        assert not thread.is_alive()
        assert time.monotonic() - started < 5

    def test_interrupt_sleep_polls_again(self, sqlite_url, insert_rows, make_worker):
        worker, recorder = make_worker(make_session(sqlite_url, polling_interval_seconds=60))
        worker.start()
        assert wait_for(lambda: worker.stats["polls"] >= 1)

        insert_rows((1, "a"))
        worker.interrupt_sleep()

        assert wait_for(lambda: len(recorder.events) == 1)
        assert worker.state is WorkerState.RUNNING

    def test_cannot_start_twice(self, sqlite_url, make_worker):
        worker, _ = make_worker(make_session(sqlite_url))
        worker.start()

        with pytest.raises(RuntimeError):
            worker.start()

    def test_stopped_before_start_cannot_start(self, sqlite_url, make_worker):
        worker, _ = make_worker(make_session(sqlite_url))
        assert worker.state is WorkerState.CREATED

        worker.stop()

        assert worker.state is WorkerState.STOPPED
        with pytest.raises(RuntimeError):
            worker.run()


class TestFailures:
    def test_query_error_is_fatal_and_reported_once(self):
        provider, connection = mock_provider()
        connection.execute.side_effect = OperationalError(
            "SELECT", {}, Exception("server closed the connection")
        )
        session = make_session("sqlite://", last_offset="0")
        worker = PollingWorker(session, provider, CallbackEventSink(MagicMock()))
        reporter = MagicMock()
        worker.register_completion_reporter(reporter)

        worker.run()

        reporter.assert_called_once()
        failure = reporter.call_args[0][0]
        assert isinstance(failure, PollingFailure)
        assert failure.message == "Error in polling for changes on orders"
        assert isinstance(failure.cause, QueryExecutionError)
        assert isinstance(failure.cause.cause, OperationalError)
        assert failure.category == ErrorCategory.TRANSIENT
        # No retry after the failure
        assert connection.execute.call_count == 1
        connection.close.assert_called_once()
        assert worker.state is WorkerState.STOPPED
        assert worker.error is failure

    def test_failure_after_successful_polls_is_reported_once(self):
        provider, connection = mock_provider()
        empty = MagicMock()
        empty.keys.return_value = ["id"]
        empty.fetchall.return_value = []
        connection.execute.side_effect = [
            empty,
            empty,
            OperationalError("SELECT", {}, Exception("server closed the connection")),
        ]
        worker = PollingWorker(
            make_session("sqlite://", last_offset="0", polling_interval_seconds=0.01),
            provider,
            CallbackEventSink(MagicMock()),
        )
        reporter = MagicMock()
        worker.register_completion_reporter(reporter)

        worker.run()

        reporter.assert_called_once()
        assert connection.execute.call_count == 3
        assert worker.stats["polls"] == 2
        assert worker.state is WorkerState.STOPPED

    def test_reporter_sees_stopped_worker(self):
        provider, connection = mock_provider()
        connection.execute.side_effect = OperationalError("SELECT", {}, Exception("lost connection"))
        worker = PollingWorker(
            make_session("sqlite://", last_offset="0"), provider, CallbackEventSink(MagicMock())
        )
        seen = {}

        def reporter(failure):
            seen["state"] = worker.state
            seen["closed"] = connection.close.called

        worker.register_completion_reporter(reporter)

        worker.start()
        worker.join(5)

        assert seen == {"state": WorkerState.STOPPED, "closed": True}

    def test_connect_failure(self):
        provider, _ = mock_provider()
        provider.get_connection.side_effect = ConnectionError("Failed to connect to database")
        worker = PollingWorker(make_session("sqlite://"), provider, CallbackEventSink(MagicMock()))
        reporter = MagicMock()
        worker.register_completion_reporter(reporter)

        worker.run()

        failure = reporter.call_args[0][0]
        assert isinstance(failure.cause, ConnectionError)
        reporter.assert_called_once()

    def test_unsupported_database(self):
        provider, connection = mock_provider(product="FooDB")
        worker = PollingWorker(make_session("sqlite://"), provider, CallbackEventSink(MagicMock()))
        reporter = MagicMock()
        worker.register_completion_reporter(reporter)

        worker.run()

        failure = reporter.call_args[0][0]
        assert isinstance(failure.cause, UnsupportedDatabaseError)
        assert "FooDB.recordSelectQuery" in str(failure.cause)
        assert failure.category == ErrorCategory.PERMANENT
        connection.execute.assert_not_called()

    def test_sink_error_is_fatal(self, sqlite_url, insert_rows, make_worker):
        sink = MagicMock()
        sink.on_event.side_effect = ValueError("sink down")
        worker, _ = make_worker(make_session(sqlite_url, last_offset="0"), sink=sink)
        reporter = MagicMock()
        worker.register_completion_reporter(reporter)
        insert_rows((1, "a"), (2, "b"))

        worker.run()

        reporter.assert_called_once()
        failure = reporter.call_args[0][0]
        assert isinstance(failure.cause, ValueError)
        assert sink.on_event.call_count == 1
        assert worker.current_offset() == "1"

    def test_reporter_exception_is_swallowed(self):
        provider, connection = mock_provider()
        connection.execute.side_effect = OperationalError("SELECT", {}, Exception("lost connection"))
        worker = PollingWorker(
            make_session("sqlite://", last_offset="0"), provider, CallbackEventSink(MagicMock())
        )
        reporter = MagicMock(side_effect=RuntimeError("alerting down"))
        worker.register_completion_reporter(reporter)

        worker.run()

        reporter.assert_called_once()
        assert worker.state is WorkerState.STOPPED
        assert isinstance(worker.error, PollingFailure)

    def test_failure_without_reporter(self):
        provider, _ = mock_provider()
        provider.get_connection.side_effect = ConnectionError("down")
        worker = PollingWorker(make_session("sqlite://"), provider, CallbackEventSink(MagicMock()))

        worker.run()

        assert isinstance(worker.error, PollingFailure)

    def test_failure_on_background_thread(self):
        provider, _ = mock_provider()
        provider.get_connection.side_effect = ConnectionError("down")
        worker = PollingWorker(make_session("sqlite://"), provider, CallbackEventSink(MagicMock()))
        reported = threading.Event()
        worker.register_completion_reporter(lambda failure: reported.set())

        thread = worker.start()

        assert reported.wait(5)
        thread.join(5)
        assert worker.state is WorkerState.STOPPED


class TestCheckpoint:
    def test_resumes_from_checkpoint(self, sqlite_url, insert_rows, make_worker, tmp_path):
        path = tmp_path / "orders.json"
        OffsetCheckpoint(table="orders", polling_column="id", last_offset="1").save(path)
        insert_rows((1, "a"), (2, "b"))
        worker, recorder = make_worker(make_session(sqlite_url, checkpoint_path=path))

        worker.start()

        assert wait_for(lambda: len(recorder.events) == 1)
        assert recorder.events == [{"id": "2", "payload": "b"}]
        assert wait_for(lambda: json.loads(path.read_text())["last_offset"] == "2")

    def test_explicit_offset_wins_over_checkpoint(self, sqlite_url, insert_rows, make_worker, tmp_path):
        path = tmp_path / "orders.json"
        OffsetCheckpoint(table="orders", polling_column="id", last_offset="1").save(path)
        insert_rows((1, "a"), (2, "b"))
        worker, recorder = make_worker(
            make_session(sqlite_url, checkpoint_path=path, last_offset="0")
        )

        worker.start()

        assert wait_for(lambda: len(recorder.events) == 2)

    def test_checkpoint_for_other_source_ignored(self, sqlite_url, insert_rows, make_worker, tmp_path):
        path = tmp_path / "orders.json"
        OffsetCheckpoint(table="invoices", polling_column="id", last_offset="0").save(path)
        insert_rows((1, "a"))
        worker, recorder = make_worker(make_session(sqlite_url, checkpoint_path=path))

        worker.start()

        assert wait_for(lambda: worker.current_offset() == "1")
        assert recorder.events == []

    def test_checkpoint_written_after_batch(self, sqlite_url, insert_rows, make_worker, tmp_path):
        path = tmp_path / "state" / "orders.json"
        worker, recorder = make_worker(make_session(sqlite_url, checkpoint_path=path))
        worker.start()
        assert wait_for(lambda: worker.current_offset() == "-1")
        assert not path.exists()

        insert_rows((1, "a"), (2, "b"))

        assert wait_for(lambda: path.exists())
        checkpoint = OffsetCheckpoint.from_file(path)
        assert checkpoint.last_offset == "2"
