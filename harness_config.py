import os
import logging
import tempfile

from pytest import UsageError

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_REPOSITORY = 'camunda/zeebe'
DEFAULT_INCOMPATIBLE_VERSION_PREFIXES = ('0.25',)
SHARED_DATA_ENV = 'ZEEBE_CI_SHARED_DATA'
TRAVERSAL_ORDERS = ('descending', 'ascending', 'random')


def default_shared_data_dir():
    return os.environ.get(SHARED_DATA_ENV) or os.path.join(tempfile.gettempdir(), 'shared')


class HarnessConfig:
    def __init__(self):
        self.old_version = None
        self.new_version = None
        self.new_image_tag = None
        self.image_repository = DEFAULT_IMAGE_REPOSITORY
        self.cluster_size = 3
        self.partitions_count = 1
        self.snapshot_period = '1m'
        self.traversal_order = 'descending'
        self.shared_data_dir = default_shared_data_dir()
        self.incompatible_version_prefixes = DEFAULT_INCOMPATIBLE_VERSION_PREFIXES
        self.force_execution_of_resource_intensive_tests = False
        self.skip_resource_intensive_tests = False
        self.only_resource_intensive_tests = False
        self.delete_logs = False
        self.execute_upgrade_tests = False
        self.execute_upgrade_tests_only = False
        self.keep_test_dir = False
        self.keep_failed_test_dir = False
        self.metatests = False

    def setup(self, config):
        """
        Reads and validates configuration. Throws UsageError if configuration is invalid.
        """
        self.metatests = config.getoption("--metatests")
        if self.metatests:
            return

        self.old_version = self._option_or_ini(config, "--old-version", "old_version")
        self.new_version = self._option_or_ini(config, "--new-version", "new_version")
        self.new_image_tag = self._option_or_ini(config, "--new-image-tag", "new_image_tag") or self.new_version
        self.image_repository = (self._option_or_ini(config, "--image-repository", "image_repository")
                                 or DEFAULT_IMAGE_REPOSITORY)
        self.cluster_size = int(config.getoption("--cluster-size"))
        self.partitions_count = int(config.getoption("--partitions-count"))
        self.snapshot_period = config.getoption("--snapshot-period")
        self.traversal_order = config.getoption("--traversal-order")
        self.shared_data_dir = os.path.expanduser(config.getoption("--shared-data-dir") or default_shared_data_dir())
        self.incompatible_version_prefixes = tuple(config.getoption("--incompatible-version-prefix")
                                                   or DEFAULT_INCOMPATIBLE_VERSION_PREFIXES)
        self.force_execution_of_resource_intensive_tests = config.getoption("--force-resource-intensive-tests")
        self.skip_resource_intensive_tests = config.getoption("--skip-resource-intensive-tests")
        self.only_resource_intensive_tests = config.getoption("--only-resource-intensive-tests")
        self.delete_logs = config.getoption("--delete-logs")
        self.execute_upgrade_tests = config.getoption("--execute-upgrade-tests")
        self.execute_upgrade_tests_only = config.getoption("--execute-upgrade-tests-only")
        self.keep_test_dir = config.getoption("--keep-test-dir")
        self.keep_failed_test_dir = config.getoption("--keep-failed-test-dir")

        if (self.execute_upgrade_tests or self.execute_upgrade_tests_only) and \
                (self.old_version is None or self.new_version is None):
            raise UsageError("Required upgrade arguments were missing! You must provide both --old-version "
                             "and --new-version (or set 'old_version' and 'new_version' in the ini file) "
                             "to execute upgrade tests.")

        if self.cluster_size < 2:
            raise UsageError("--cluster-size must be at least 2 so that one broker stays up while another "
                             "is replaced, got {}".format(self.cluster_size))

        if self.partitions_count < 1:
            raise UsageError("--partitions-count must be positive, got {}".format(self.partitions_count))

        if self.skip_resource_intensive_tests and \
                (self.only_resource_intensive_tests or self.force_execution_of_resource_intensive_tests):
            raise UsageError("--skip-resource-intensive-tests does not make any sense with either "
                             "--only-resource-intensive-tests or --force-resource-intensive-tests.")

        if self.traversal_order not in TRAVERSAL_ORDERS:
            raise UsageError("--traversal-order must be one of {}, got {}".format(
                ', '.join(TRAVERSAL_ORDERS), self.traversal_order))

    @staticmethod
    def _option_or_ini(config, option, ini):
        value = config.getoption(option) or config.getini(ini)
        if value is not None and value.strip() == "":
            value = None
        return value

    def image_for(self, version):
        """
        The image a broker on version runs. The new version may be a locally built image
        published under its own tag.
        """
        tag = self.new_image_tag if version == self.new_version and self.new_image_tag else version
        return '{}:{}'.format(self.image_repository, tag)
