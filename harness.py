import logging
import os
import threading
import time
import pytest

import docker

from flaky import flaky

from tools.errors import GatewayError


LOG_SAVED_DIR = "logs"
try:
    os.mkdir(LOG_SAVED_DIR)
except OSError:
    pass

LAST_LOG = os.path.join(LOG_SAVED_DIR, "last")

LAST_TEST_DIR = 'last_test_dir'

logger = logging.getLogger(__name__)


class Runner(threading.Thread):
    """
    Calls func(i) with an increasing i until stopped or until func raises. The first error is
    kept and re-raised by stop() and check().
    """

    def __init__(self, func, name=None):
        threading.Thread.__init__(self, name=name)
        self.__func = func
        self.__error = None
        self.__stopped = False
        self.daemon = True

    def run(self):
        i = 0
        while True:
            if self.__stopped:
                return
            try:
                self.__func(i)
            except Exception as e:
                logger.debug("{} stopped on error: {}".format(self.name, e))
                self.__error = e
                return
            i = i + 1

    def stop(self):
        if self.__stopped:
            return

        self.__stopped = True
        # job workers long-poll the gateway, so this returns after at most one request timeout
        self.join(timeout=30)
        if self.__error is not None:
            raise self.__error

    def check(self):
        if self.__error is not None:
            raise self.__error


def failure_due_to_environment(err, *args):
    """
    check if we should rerun a test with the flaky plugin or not.
    only rerun if we failed the test for one of the following exceptions:

    - docker.errors.APIError will be thrown when the container runtime refuses or fails
    to create, start or remove a broker container (image pulls, port clashes, ...).
    - tools.errors.GatewayError will be thrown when a gateway call made outside of a
    retrying wait fails, typically because the broker we talk to is still booting.

    a scenario failing on its own assertions, or on a convergence timeout, is never rerun.
    """
    if issubclass(err[0], docker.errors.APIError) or issubclass(err[0], GatewayError):
        # give the container runtime a moment to release ports before the rerun
        time.sleep(2)
        return True
    else:
        return False


@flaky(rerun_filter=failure_due_to_environment)
class Tester:

    def __getattribute__(self, name):
        try:
            return object.__getattribute__(self, name)
        except AttributeError:
            fixture_harness_setup = object.__getattribute__(self, 'fixture_harness_setup')
            return object.__getattribute__(fixture_harness_setup, name)

    @pytest.fixture(scope='function', autouse=True)
    def set_harness_setup_on_function(self, fixture_harness_setup):
        self.fixture_harness_setup = fixture_harness_setup
        self.harness_config = fixture_harness_setup.harness_config
