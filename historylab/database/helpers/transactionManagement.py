"""
Database Transaction Management
===============================

Manages SQLAlchemy sessions with a context variable and a decorator-based
transaction wrapper, so that a session propagates across service calls
without being threaded through arguments.

Key features
~~~~~~~~~~~~
- Context variable holding the active session
- Implicit reuse of an existing session by nested calls
- Commit on success, rollback on failure, close in every case
"""

from functools import wraps
from sqlalchemy.orm import sessionmaker
import contextvars
from historylab.database.config.connection_engine import connection_engine

db_session_context = contextvars.ContextVar("db_session_context", default=None)
"""Context variable storing the active SQLAlchemy session."""

SessionFactory = sessionmaker(bind=connection_engine, expire_on_commit=False)
"""Session factory bound to the application engine."""


def transactional(func):
    """
    Decorator to wrap functions in a managed SQLAlchemy transaction.

    Parameters
    ----------
    func : callable
        The function to wrap. It must accept a `session` keyword argument.

    Returns
    -------
    callable
        The wrapped function, executed within a database transaction.

    Notes
    -----
    - If a session already exists in context, it is reused and the outermost
      call owns commit/rollback.
    - Otherwise a new session is created, flushed, committed and closed.
    - On errors the session is rolled back and the exception propagates.
    """
    @wraps(func)
    def wrap_func(*args, **kwargs):
        session = db_session_context.get()
        if session:
            return func(*args, session=session, **kwargs)

        session = SessionFactory()
        token = db_session_context.set(session)

        try:
            result = func(*args, session=session, **kwargs)
            session.flush()
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
            db_session_context.reset(token)

        return result

    return wrap_func
