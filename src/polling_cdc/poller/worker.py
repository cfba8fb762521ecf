"""
Polling worker: the per-session poll loop and its control surface.

Each iteration selects rows whose polling column is greater than the current
offset, then for every row in result order:
1. Materialize the row event
2. Advance the offset to the row's polling-column value
3. Pass the pause gate
4. Deliver to the event sink

then sleeps for the polling interval. Any error ends the session and is
reported once to the completion reporter; there is no retry or reconnect.
"""

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from core.logging.context import set_log_context
from polling_cdc import metrics
from polling_cdc.common.exceptions import (
    PollingFailure,
    QueryExecutionError,
    wrap_exception,
)
from polling_cdc.common.logging import LoggedClass, logged_operation
from polling_cdc.config import SEED_STRATEGY_MAX, SessionConfig
from polling_cdc.connection import ConnectionProvider
from polling_cdc.poller.events import EventSink, coerce_value, lookup_column, to_row_event
from polling_cdc.poller.gate import PauseGate
from polling_cdc.poller.offset import OffsetCheckpoint, OffsetCursor
from polling_cdc.templates.resolver import QueryTemplateResolver
from polling_cdc.templates.sources import TemplateSource

CompletionReporter = Callable[[PollingFailure], None]

OFFSET_BIND_PARAM = "last_offset"


class WorkerState(Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


class PollingWorker(LoggedClass):
    """
    Polls one table for new rows and delivers them as row events.

    The loop runs on a daemon thread via start(), or in the caller's thread
    via run(). Both may be used once; a stopped worker cannot be restarted.

    Usage:
        provider = SQLAlchemyConnectionProvider.from_config(session.connection)
        worker = PollingWorker(session, provider, CallbackEventSink(print))
        worker.register_completion_reporter(lambda failure: alert(failure))
        worker.start()
        ...
        worker.stop()
    """

    log_component = "worker"

    def __init__(
        self,
        session: SessionConfig,
        provider: ConnectionProvider,
        sink: EventSink,
        template_source: Optional[TemplateSource] = None,
    ):
        """
        Args:
            session: Session settings
            provider: Source of the session's database connection
            sink: Receives row events on the poll thread
            template_source: Select query templates (default: bundled)
        """
        self.session = session
        self.table_name = session.table_name
        self.polling_column = session.polling_column
        self.datasource_name = session.connection.datasource_name

        self._provider = provider
        self._sink = sink
        self._resolver = QueryTemplateResolver(session.table_name, template_source)
        self._gate = PauseGate()

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._started = False
        self._finished = False

        self._reporter: Optional[CompletionReporter] = None
        self._error: Optional[PollingFailure] = None

        self._polls = 0
        self._rows_fetched = 0
        self._events_delivered = 0

        super().__init__()
        self._offset = OffsetCursor(self._initial_offset())

    # -------------------------------------------------------------------------
    # Control surface
    # -------------------------------------------------------------------------

    @property
    def state(self) -> WorkerState:
        if self._finished:
            return WorkerState.STOPPED
        if not self._started:
            return WorkerState.CREATED
        if self._gate.is_paused:
            return WorkerState.PAUSED
        return WorkerState.RUNNING

    @property
    def error(self) -> Optional[PollingFailure]:
        """Failure that ended the session, None if running or stopped cleanly."""
        return self._error

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "session": self.session.name,
            "table": self.table_name,
            "state": self.state.value,
            "offset": self._offset.value,
            "polls": self._polls,
            "rows_fetched": self._rows_fetched,
            "events_delivered": self._events_delivered,
        }

    def current_offset(self) -> Optional[str]:
        return self._offset.value

    def register_completion_reporter(self, reporter: CompletionReporter) -> None:
        """Set the callable invoked once if the session fails."""
        self._reporter = reporter

    def start(self) -> threading.Thread:
        """Run the poll loop on a daemon thread."""
        self._mark_started()
        self._thread = threading.Thread(
            target=self._run_loop,
            name=f"polling-{self.session.name}",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def run(self) -> None:
        """Run the poll loop in the calling thread until stopped or failed."""
        self._mark_started()
        self._run_loop()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the session and wait for the poll loop to exit.

        A stop is a clean exit: the completion reporter is not invoked.
        Fetched rows still waiting at the pause gate are not delivered.
        """
        self._stop_event.set()
        self._wake_event.set()
        self._gate.wake()

        with self._lock:
            if not self._started:
                self._finished = True

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def pause(self) -> None:
        """Hold row delivery; the offset still advances for the row in hand."""
        self._gate.pause()
        metrics.set_paused(self.session.name, self.table_name, True)
        self._log(logging.INFO, "Session paused")

    def resume(self) -> None:
        self._gate.resume()
        metrics.set_paused(self.session.name, self.table_name, False)
        self._log(logging.INFO, "Session resumed")

    def interrupt_sleep(self) -> None:
        """Cut the current idle wait short; polling continues immediately."""
        self._wake_event.set()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    # -------------------------------------------------------------------------
    # Poll loop
    # -------------------------------------------------------------------------

    def _mark_started(self) -> None:
        with self._lock:
            if self._started or self._finished:
                raise RuntimeError(f"Worker for session '{self.session.name}' cannot be started twice")
            self._started = True

    def _run_loop(self) -> None:
        set_log_context(
            session=self.session.name,
            table=self.table_name,
            worker_id=threading.current_thread().name,
        )
        metrics.set_running(self.session.name, self.table_name, True)
        self._log(
            logging.INFO,
            "Polling session started",
            offset=self._offset.value,
            poll_interval=self.session.polling_interval_seconds,
        )

        connection: Optional[Connection] = None
        failure: Optional[PollingFailure] = None
        try:
            connection = self._provider.get_connection()
            statement = self._prepare(connection)

            while not self._stop_event.is_set():
                if not self._poll_once(connection, statement):
                    break
                self._idle_wait()

            self._log(logging.INFO, "Polling session stopped", offset=self._offset.value)

        except Exception as e:
            failure = self._fail(e)

        finally:
            if connection is not None:
                self._close_connection(connection)
            metrics.set_running(self.session.name, self.table_name, False)
            with self._lock:
                self._finished = True

        # Reported after cleanup so the worker already reads as STOPPED
        if failure is not None:
            self._report(failure)

    def _prepare(self, connection: Connection):
        """Resolve the template, seed the offset and build the steady-state statement."""
        try:
            database_name = self._provider.get_database_product_name(connection)
        except SQLAlchemyError as e:
            raise wrap_exception(
                e, QueryExecutionError, "Failed to read database product name"
            ) from e

        self._resolver.resolve(database_name)

        with self._lock:
            if not self._offset.is_initialized:
                self._seed_offset(connection)

        condition = f"WHERE {self.polling_column} > :{OFFSET_BIND_PARAM}"
        return text(self._resolver.build_query("*", condition))

    @logged_operation(level=logging.INFO, operation_name="seed")
    def _seed_offset(self, connection: Connection) -> None:
        if self.session.seed_strategy == SEED_STRATEGY_MAX:
            field_list = f"MAX({self.polling_column}) AS {self.polling_column}"
        else:
            field_list = self.polling_column
        sql = self._resolver.build_query(field_list, "")

        try:
            result = connection.execute(text(sql))
            seeded = self._offset.seed(coerce_value(value) for value in result.scalars())
            connection.commit()
        except SQLAlchemyError as e:
            raise wrap_exception(
                e, QueryExecutionError, "Failed to seed offset", context={"table": self.table_name}
            ) from e

        self._log(
            logging.INFO,
            "Seeded offset",
            offset=seeded,
            seed_strategy=self.session.seed_strategy,
        )

    def _poll_once(self, connection: Connection, statement) -> bool:
        """
        Fetch and deliver one batch.

        Returns:
            False if the session was stopped mid-batch
        """
        started = time.perf_counter()
        offset_before = self._offset.value

        try:
            result = connection.execute(statement, {OFFSET_BIND_PARAM: offset_before})
            keys: List[str] = list(result.keys())
            rows = result.fetchall()
            # End the read transaction so the next poll sees new commits
            connection.commit()
        except SQLAlchemyError as e:
            raise wrap_exception(
                e,
                QueryExecutionError,
                "Failed to fetch changes",
                context={"table": self.table_name, "offset": offset_before},
            ) from e

        delivered = 0
        for row in rows:
            fields = to_row_event(keys, row)
            value = lookup_column(fields, self.polling_column)
            if value is not None:
                self._offset.advance(value)

            if not self._gate.wait(self._stop_event):
                self._record_poll(len(rows), delivered, started)
                return False

            self._sink.on_event(fields)
            delivered += 1

        self._record_poll(len(rows), delivered, started)

        if rows:
            self._log(
                logging.DEBUG,
                "Delivered changes",
                rows_fetched=len(rows),
                offset_before=offset_before,
                offset_after=self._offset.value,
            )
            self._save_checkpoint()

        return not self._stop_event.is_set()

    def _record_poll(self, rows_fetched: int, delivered: int, started: float) -> None:
        self._polls += 1
        self._rows_fetched += rows_fetched
        self._events_delivered += delivered
        metrics.record_poll(
            self.session.name,
            self.table_name,
            rows_fetched,
            delivered,
            time.perf_counter() - started,
        )

    def _idle_wait(self) -> None:
        if self._stop_event.is_set():
            return
        interrupted = self._wake_event.wait(timeout=self.session.polling_interval_seconds)
        self._wake_event.clear()
        if interrupted and not self._stop_event.is_set():
            self._log(logging.INFO, "Idle wait interrupted, polling again")

    # -------------------------------------------------------------------------
    # Offset persistence
    # -------------------------------------------------------------------------

    def _initial_offset(self) -> Optional[str]:
        if self.session.last_offset is not None:
            return self.session.last_offset

        path = self.session.checkpoint_path
        if path is None:
            return None

        checkpoint = OffsetCheckpoint.from_file(path)
        if checkpoint is None:
            return None
        if not checkpoint.matches(self.table_name, self.polling_column):
            self._log(
                logging.WARNING,
                "Ignoring checkpoint written for a different source",
                path=str(path),
            )
            return None
        return checkpoint.last_offset

    def _save_checkpoint(self) -> None:
        path = self.session.checkpoint_path
        if path is None or self._offset.value is None:
            return
        OffsetCheckpoint(
            table=self.table_name,
            polling_column=self.polling_column,
            last_offset=self._offset.value,
        ).save(path)

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    def _fail(self, exc: BaseException) -> PollingFailure:
        failure = PollingFailure(self.table_name, exc, context={"offset": self._offset.value})
        self._error = failure

        metrics.record_failure(self.session.name, self.table_name, failure.category.value)
        self._log_exception(failure, "Polling session failed", offset=self._offset.value)
        return failure

    def _report(self, failure: PollingFailure) -> None:
        reporter = self._reporter
        if reporter is None:
            return
        try:
            reporter(failure)
        except Exception as e:
            self._log_exception(e, "Completion reporter raised")

    def _close_connection(self, connection: Connection) -> None:
        try:
            connection.close()
        except SQLAlchemyError as e:
            self._log_exception(e, "Error closing connection", level=logging.WARNING)
