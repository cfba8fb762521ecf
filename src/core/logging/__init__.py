"""
Structured logging module.

Provides JSON file logging, a console formatter and per-thread context
(session, table, worker) injected into every record.

Import directly from sub-modules:
    from core.logging.setup import get_logger, setup_logging
    from core.logging.context import set_log_context
"""
