import copy
import logging
import os
from datetime import datetime

import pytest
from psutil import virtual_memory

from harness_config import HarnessConfig, TRAVERSAL_ORDERS
from harness_setup import HarnessSetup

logger = logging.getLogger(__name__)

# a broker container needs about this much memory to stay responsive under load
MEMORY_PER_BROKER_GB = 2


def pytest_addoption(parser):
    parser.addoption("--old-version", action="store", default=None,
                     help="The broker version every cluster starts on (an image tag of --image-repository)")
    parser.addini("old_version", default=None,
                  help="The broker version every cluster starts on (an image tag of --image-repository)")
    parser.addoption("--new-version", action="store", default=None,
                     help="The broker version the rolling upgrade moves every broker to. This is the version "
                          "brokers are expected to report once upgraded.")
    parser.addini("new_version", default=None,
                  help="The broker version the rolling upgrade moves every broker to")
    parser.addoption("--new-image-tag", action="store", default=None,
                     help="The image tag to run for --new-version, if it differs from the version itself "
                          "(e.g. 'current-test' for a locally built image). Defaults to --new-version.")
    parser.addini("new_image_tag", default=None,
                  help="The image tag to run for new_version, if it differs from the version itself")
    parser.addoption("--image-repository", action="store", default=None,
                     help="The container image repository brokers are started from (default camunda/zeebe)")
    parser.addini("image_repository", default=None,
                  help="The container image repository brokers are started from (default camunda/zeebe)")
    parser.addoption("--cluster-size", action="store", default=3,
                     help="Number of brokers in every test cluster; the replication factor equals the cluster size")
    parser.addoption("--partitions-count", action="store", default=1,
                     help="Number of partitions configured on every broker")
    parser.addoption("--snapshot-period", action="store", default="1m",
                     help="Snapshot period configured on every broker")
    parser.addoption("--traversal-order", action="store", default="descending", choices=TRAVERSAL_ORDERS,
                     help="The order in which the full rolling upgrade visits brokers")
    parser.addoption("--shared-data-dir", action="store", default=None,
                     help="Directory under which per-test broker data directories are created. Defaults to "
                          "$ZEEBE_CI_SHARED_DATA or <tmpdir>/shared.")
    parser.addoption("--incompatible-version-prefix", action="append", default=None,
                     help="A version prefix that cannot be rolled onto from an older version; upgrade tests "
                          "targeting such a version are skipped. May be given more than once (default 0.25).")
    parser.addoption("--force-resource-intensive-tests", action="store_true", default=False,
                     help="Forces the execution of tests marked as resource_intensive")
    parser.addoption("--only-resource-intensive-tests", action="store_true", default=False,
                     help="Only run tests marked as resource_intensive")
    parser.addoption("--skip-resource-intensive-tests", action="store_true", default=False,
                     help="Skip all tests marked as resource_intensive")
    parser.addoption("--delete-logs", action="store_true", default=False,
                     help="Delete all generated logs created by a test after the completion of a test.")
    parser.addoption("--execute-upgrade-tests", action="store_true", default=False,
                     help="Execute Upgrade Tests (e.g. tests annotated with the upgrade_test mark)")
    parser.addoption("--execute-upgrade-tests-only", action="store_true", default=False,
                     help="Execute Upgrade Tests without running any other tests")
    parser.addoption("--keep-test-dir", action="store_true", default=False,
                     help="Do not remove/cleanup the broker data directories after the test completes")
    parser.addoption("--keep-failed-test-dir", action="store_true", default=False,
                     help="Do not remove/cleanup the broker data directories after the test fails")
    parser.addoption("--metatests", action="store_true", default=False,
                     help="Run only meta tests")


def pytest_configure(config):
    """Fail fast if arguments are invalid"""
    if not config.getoption("--help"):
        harness_config = HarnessConfig()
        harness_config.setup(config)
        if harness_config.metatests and config.args[0] == str(os.getcwd()):
            config.args = ['./meta_tests']


def sufficient_system_resources_for_resource_intensive_tests(cluster_size):
    mem = virtual_memory()
    total_mem_gb = mem.total / 1024 / 1024 / 1024
    logger.info("total available system memory is %dGB" % total_mem_gb)
    return total_mem_gb >= cluster_size * MEMORY_PER_BROKER_GB


@pytest.fixture(scope='function')
def fixture_harness_cluster_name():
    """
    :return: The name to use for the running test's cluster
    """
    return "rolling-update"


@pytest.fixture(scope="function", autouse=True)
def fixture_logging_setup(request):
    """
    Scoped to function level: when tests from several classes run in one session, the root
    logger can get reset between classes and would otherwise drop back to NOTSET.
    """

    # set the root logger level to whatever the user asked for
    # all new loggers created will use the root logger as a template
    # essentially making this the "default" active log level
    log_level = logging.INFO
    log_level_from_option = request.config.getoption("--log-level")
    if log_level_from_option is not None:
        log_level = logging.getLevelName(log_level_from_option.upper())
    elif request.config.getini("log_level"):
        log_level = logging.getLevelName(request.config.getini("log_level").upper())

    logging.root.setLevel(log_level)

    logging_format = request.config.getoption("--log-format") or request.config.getini("log_format") or None

    logging.basicConfig(level=log_level,
                        format=logging_format)

    # regardless of the level requested, the container runtime and gRPC clients stay at INFO or
    # above; their DEBUG output is of very limited help here
    if log_level == logging.DEBUG:
        client_module_log_level = logging.INFO
    else:
        client_module_log_level = log_level
    for name in ("docker", "urllib3", "grpc"):
        logging.getLogger(name).setLevel(client_module_log_level)


@pytest.fixture(scope='function', autouse=True)
def fixture_log_test_name_and_date(request, fixture_logging_setup):
    logger.info("Starting execution of %s at %s" % (request.node.name, str(datetime.now())))


def reset_environment_vars(initial_environment):
    pytest_current_test = os.environ.get('PYTEST_CURRENT_TEST')
    os.environ.clear()
    os.environ.update(initial_environment)
    if pytest_current_test is not None:
        os.environ['PYTEST_CURRENT_TEST'] = pytest_current_test


@pytest.fixture(scope='function')
def fixture_harness_create_cluster_func():
    """
    :return: A function whose sole argument is a HarnessSetup instance and returns an
             object that operates with the same interface as tools.registry.ClusterRegistry.
    """
    return HarnessSetup.create_docker_cluster


@pytest.hookimpl(hookwrapper=True, tryfirst=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()
    setattr(item, "rep_" + rep.when, rep)
    return rep


@pytest.fixture(scope='function', autouse=False)
def fixture_harness_setup(request,
                          harness_config,
                          fixture_logging_setup,
                          fixture_harness_cluster_name,
                          fixture_harness_create_cluster_func):
    # do all of our setup operations to get the environment ready for the actual test
    # to run (e.g. provision the broker registry, populate variables, etc)
    initial_environment = copy.deepcopy(os.environ)
    harness_setup = HarnessSetup(harness_config=harness_config,
                                 cluster_name=fixture_harness_cluster_name)
    harness_setup.initialize_cluster(fixture_harness_create_cluster_func)

    # at this point we're done with our setup operations in this fixture
    # yield to allow the actual test to run
    yield harness_setup

    # we're back after executing the test, now we need to do
    # all of our teardown and cleanup operations

    reset_environment_vars(initial_environment)

    rep_call = getattr(request.node, "rep_call", None)
    failed = rep_call is None or rep_call.failed
    try:
        # save the logs for inspection
        if failed or not harness_config.delete_logs:
            harness_setup.copy_logs(request.node.name)
    except Exception as e:
        logger.error("Error saving log: {}".format(e))
    finally:
        harness_setup.cleanup_cluster(failed)


@pytest.fixture(scope='session', autouse=True)
def install_debugging_signal_handler():
    import faulthandler
    faulthandler.enable()


@pytest.fixture(scope='session')
def harness_config(request):
    harness_config = HarnessConfig()
    harness_config.setup(request.config)
    yield harness_config


class SkipConditions:
    def __init__(self, harness_config, sufficient_resources):
        self.skip_upgrade_tests = (not harness_config.execute_upgrade_tests
                                   and not harness_config.execute_upgrade_tests_only)
        self.skip_non_upgrade_tests = harness_config.execute_upgrade_tests_only
        self.skip_resource_intensive_due_to_resources = (
            not harness_config.force_execution_of_resource_intensive_tests
            and not sufficient_resources)
        self.skip_resource_intensive_tests = (
            self.skip_resource_intensive_due_to_resources
            or harness_config.skip_resource_intensive_tests)
        self.skip_non_resource_intensive_tests = harness_config.only_resource_intensive_tests

    @staticmethod
    def _is_skippable(item, mark, skip_marked, skip_non_marked):
        if item.get_closest_marker(mark) is not None:
            if skip_marked:
                logger.info("SKIP: Skipping %s because it is marked with %s" % (item, mark))
                return True
            else:
                return False
        else:
            if skip_non_marked:
                logger.info("SKIP: Skipping %s because it is not marked with %s" % (item, mark))
                return True
            else:
                return False

    def is_skippable(self, item):
        return (self._is_skippable(item, "upgrade_test",
                                   skip_marked=self.skip_upgrade_tests,
                                   skip_non_marked=self.skip_non_upgrade_tests)
                or self._is_skippable(item, "resource_intensive",
                                      skip_marked=self.skip_resource_intensive_tests,
                                      skip_non_marked=self.skip_non_resource_intensive_tests))


def pytest_collection_modifyitems(items, config):
    """
    This function is called upon during the pytest test collection phase and allows for modification
    of the test items within the list
    """
    harness_config = HarnessConfig()
    harness_config.setup(config)

    if harness_config.metatests:
        # meta tests never start a broker, nothing to select
        return

    selected_items = []
    deselected_items = []

    sufficient_resources = sufficient_system_resources_for_resource_intensive_tests(harness_config.cluster_size)
    skip_conditions = SkipConditions(harness_config, sufficient_resources)

    if skip_conditions.skip_resource_intensive_due_to_resources:
        logger.info("Resource intensive tests will be skipped because "
                    "there is not enough system resources "
                    "and --force-resource-intensive-tests was not specified")

    for item in items:
        deselect_test = SkipConditions.is_skippable(skip_conditions, item)

        if deselect_test:
            deselected_items.append(item)
        else:
            selected_items.append(item)

    config.hook.pytest_deselected(items=deselected_items)
    items[:] = selected_items
