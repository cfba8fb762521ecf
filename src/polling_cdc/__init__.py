"""
Polling change-data-capture.

Detects newly inserted rows in relational tables by repeatedly selecting rows
whose polling column is greater than the last seen value, and emits each row
as an event.

Quick start:
    from polling_cdc.config import ConnectionConfig, SessionConfig
    from polling_cdc.connection import SQLAlchemyConnectionProvider
    from polling_cdc.poller import CallbackEventSink, PollingWorker

    session = SessionConfig(
        table_name="orders",
        polling_column="id",
        connection=ConnectionConfig(url="sqlite:///shop.db"),
    )
    provider = SQLAlchemyConnectionProvider.from_config(session.connection)
    worker = PollingWorker(session, provider, CallbackEventSink(print))
    worker.start()
"""

__version__ = "0.1.0"
