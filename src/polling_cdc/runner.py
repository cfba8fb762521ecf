"""
Runner owning many independent polling sessions.

Each session gets its own worker, connection provider and event sink.
A failure in one session is recorded and never affects the others.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from core.logging.setup import get_logger
from polling_cdc.common.exceptions import PollingFailure
from polling_cdc.common.logging import log_exception, log_with_context
from polling_cdc.config import PollingConfig, SessionConfig, with_last_offset
from polling_cdc.connection import ConnectionProvider, SQLAlchemyConnectionProvider
from polling_cdc.poller.events import EventSink
from polling_cdc.poller.worker import PollingWorker, WorkerState
from polling_cdc.templates.sources import ConfigTemplateSource, TemplateSource

logger = get_logger(__name__)

SinkFactory = Callable[[SessionConfig], EventSink]
ProviderFactory = Callable[[SessionConfig], ConnectionProvider]


def default_provider_factory(session: SessionConfig) -> ConnectionProvider:
    return SQLAlchemyConnectionProvider.from_config(session.connection)


class PollingRunner:
    """
    Starts, watches and stops a set of polling sessions.

    Usage:
        runner = PollingRunner(config, sink_factory=lambda s: JsonLinesEventSink(sys.stdout, s))
        runner.start()
        runner.wait(shutdown_event)
        runner.stop_all()
        if runner.failures:
            ...
    """

    def __init__(
        self,
        config: PollingConfig,
        sink_factory: SinkFactory,
        provider_factory: ProviderFactory = default_provider_factory,
        template_source: Optional[TemplateSource] = None,
    ):
        self.config = config
        self._sink_factory = sink_factory
        self._provider_factory = provider_factory
        self._template_source = template_source or ConfigTemplateSource(
            config.template_overrides
        )

        self._lock = threading.Lock()
        self._changed = threading.Event()
        self.workers: Dict[str, PollingWorker] = {}
        self._providers: Dict[str, ConnectionProvider] = {}
        self.failures: Dict[str, PollingFailure] = {}

    def add_session(self, session: SessionConfig) -> PollingWorker:
        """Create the worker for a session without starting it."""
        with self._lock:
            if session.name in self.workers:
                raise ValueError(f"Session '{session.name}' already added")

        provider = self._provider_factory(session)
        worker = PollingWorker(
            session,
            provider,
            self._sink_factory(session),
            template_source=self._template_source,
        )
        worker.register_completion_reporter(
            lambda failure, name=session.name: self._on_failure(name, failure)
        )

        with self._lock:
            self.workers[session.name] = worker
            self._providers[session.name] = provider
        return worker

    def start(self, session_names: Optional[List[str]] = None) -> None:
        """
        Start sessions from the config.

        Args:
            session_names: Sessions to run (default: all configured sessions)
        """
        sessions = self.config.sessions
        if session_names:
            sessions = [self.config.get_session(name) for name in session_names]

        for session in sessions:
            worker = self.add_session(session)
            worker.start()
            log_with_context(
                logger,
                logging.INFO,
                "Started polling session",
                session=session.name,
                table=session.table_name,
            )

    def restart(self, name: str) -> PollingWorker:
        """
        Replace a stopped session with a fresh worker resuming at its offset.

        Raises:
            KeyError: If the session is unknown
            RuntimeError: If the session is still running
        """
        with self._lock:
            old = self.workers[name]
        if old.state is not WorkerState.STOPPED:
            raise RuntimeError(f"Session '{name}' is still running")

        session = with_last_offset(old.session, old.current_offset())
        self._close_provider(name)
        with self._lock:
            del self.workers[name]
            self.failures.pop(name, None)

        worker = self.add_session(session)
        worker.start()
        log_with_context(
            logger,
            logging.INFO,
            "Restarted polling session",
            session=name,
            offset=session.last_offset,
        )
        return worker

    def wait(self, shutdown_event: Optional[threading.Event] = None, poll_seconds: float = 0.5) -> None:
        """Block until every session has stopped or the shutdown event is set."""
        while self.running_sessions():
            if shutdown_event is not None and shutdown_event.is_set():
                return
            self._changed.wait(poll_seconds)
            self._changed.clear()

    def running_sessions(self) -> List[str]:
        with self._lock:
            workers = dict(self.workers)
        return [
            name
            for name, worker in workers.items()
            if worker.state is not WorkerState.STOPPED
        ]

    def stop_all(self, timeout: Optional[float] = 10.0) -> None:
        """Stop every session and release connection providers."""
        with self._lock:
            workers = dict(self.workers)

        for worker in workers.values():
            worker.stop(timeout)

        for name in list(workers):
            self._close_provider(name)

        logger.info(
            "All polling sessions stopped",
            extra={"total_polls": sum(w.stats["polls"] for w in workers.values())},
        )

    def _on_failure(self, name: str, failure: PollingFailure) -> None:
        with self._lock:
            self.failures[name] = failure
        log_with_context(
            logger,
            logging.ERROR,
            "Polling session failed",
            session=name,
            error_category=failure.category.value,
            error_message=str(failure),
            restartable=failure.is_restartable,
        )
        self._changed.set()

    def _close_provider(self, name: str) -> None:
        with self._lock:
            provider = self._providers.pop(name, None)
        if provider is None:
            return
        try:
            provider.close()
        except Exception as e:
            log_exception(logger, e, "Error closing connection provider", session=name)
