"""
Debug logging utility for the AWS IoT test client.
"""
import functools
import inspect
import logging
from typing import Any, Callable


def get_module_logger(func: Callable) -> logging.Logger:
    """Get the logger of the module a function lives in."""
    return logging.getLogger(func.__module__)


def debug_log(func: Callable) -> Callable:
    """Decorator to trace calls, arguments and failures at DEBUG level."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = get_module_logger(func)

        if not logger.isEnabledFor(logging.DEBUG):
            return func(*args, **kwargs)

        func_args = inspect.signature(func).bind(*args, **kwargs)
        func_args.apply_defaults()
        filtered_args = {k: v for k, v in func_args.arguments.items()
                         if k not in ('self', 'ctx') and not k.startswith('_')}
        logger.debug(f"Executing {func.__name__} with args: {filtered_args}")

        try:
            result = func(*args, **kwargs)
            logger.debug(f"{func.__name__} completed successfully")
            return result
        except Exception as e:
            logger.exception(f"Error in {func.__name__}: {str(e)}")
            raise

    return wrapper


def debug_step(message: str) -> Callable:
    """Decorator to log a debug step before a function runs."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            get_module_logger(func).debug(message)
            return func(*args, **kwargs)
        return wrapper
    return decorator
