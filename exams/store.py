import functools
import logging
from contextlib import contextmanager

from django.db import InterfaceError, OperationalError

from .exceptions import StoreUnavailable

logger = logging.getLogger('exams')


@contextmanager
def store_guard(operation: str):
    """
    Translate driver-level failures (lost connections, lock waits and
    statement timeouts) into StoreUnavailable for the current request.
    """
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.error(f"Store call '{operation}' failed: {e.__class__.__name__}: {e}")
        raise StoreUnavailable() from e


def store_call(func):
    """Decorator form of store_guard, named after the wrapped function."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        with store_guard(func.__qualname__):
            return func(*args, **kwargs)
    return wrapper
