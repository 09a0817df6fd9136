import logging

logger = logging.getLogger(__name__)


def best_effort(description: str, fn, *args, **kwargs) -> None:
    """Run a post-commit side effect; a failure is logged and swallowed."""
    try:
        fn(*args, **kwargs)
    except Exception:
        logger.exception("%s failed", description)
