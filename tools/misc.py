import os
import time
import logging


logger = logging.getLogger(__name__)


def retry_till_success(fun, *args, **kwargs):
    """
    Call fun until it stops raising bypassed_exception, or until timeout seconds have passed,
    in which case the last exception is re-raised.
    """
    timeout = kwargs.pop('timeout', 60)
    bypassed_exception = kwargs.pop('bypassed_exception', Exception)
    poll_interval = kwargs.pop('poll_interval', 0.25)

    deadline = time.time() + timeout
    while True:
        try:
            return fun(*args, **kwargs)
        except bypassed_exception:
            if time.time() > deadline:
                raise
            else:
                # brief pause before next attempt
                time.sleep(poll_interval)


def ensure_directory(path, description):
    """
    Create path (and parents) if it does not exist yet and return its absolute form.
    """
    path = os.path.abspath(path)
    if not os.path.isdir(path):
        logger.debug("creating {} at {}".format(description, path))
        os.makedirs(path, exist_ok=True)
    return path

