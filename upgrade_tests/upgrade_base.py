import sys
import time
import pytest
import logging

from harness import Tester
from harness_setup import HarnessSetup
from tools.errors import ConvergenceTimeout, IncompatibleVersion, UnexpectedVersionChange
from tools.snapshots import SnapshotVerifier
from tools.workload import PROCESS, JobLog, WorkDriver
from upgrade_tests.upgrade_manifest import build_upgrade_path, check_rolling_upgrade_compatible
from upgrade_tests.upgrade_sequencer import UpgradeSequencer

logger = logging.getLogger(__name__)


def upgrade_path_or_skip(harness_config):
    """
    @return the configured UpgradePath. Skips the calling test when either version is missing or
    the new version cannot be rolled onto.
    """
    upgrade_path = build_upgrade_path(harness_config)
    if upgrade_path is None:
        pytest.skip("No upgrade path configured; pass --old-version and --new-version")
    try:
        check_rolling_upgrade_compatible(upgrade_path.starting_version,
                                         upgrade_path.upgrade_version,
                                         harness_config.incompatible_version_prefixes)
    except IncompatibleVersion as e:
        pytest.skip(str(e))
    return upgrade_path


@pytest.mark.upgrade_test
@pytest.mark.skipif(sys.platform == 'win32', reason='Skip upgrade tests on Windows')
class UpgradeTester(Tester):
    """
    Base for scenarios that roll a cluster from --old-version to --new-version.

    Brokers are provisioned on the old version but not started; prepare() starts them and
    waits for the cluster to form. Timings are class attributes so scenarios can tune them.
    """
    __test__ = False

    GRACE_PERIOD = 30
    REMOVAL_TIMEOUT = 20
    READMISSION_TIMEOUT = 10
    POLL_INTERVAL = 0.1
    FORMATION_TIMEOUT = 60
    CONNECT_TIMEOUT = 30
    DEPLOY_TIMEOUT = 10
    INSTANCE_CREATION_TIMEOUT = 5
    SNAPSHOT_TIMEOUT = 120
    SNAPSHOT_POLL_INTERVAL = 0.5
    JOBS_TIMEOUT = 5

    @pytest.fixture(scope='function')
    def fixture_upgrade_path(self, harness_config):
        return upgrade_path_or_skip(harness_config)

    @pytest.fixture(scope='function')
    def fixture_harness_create_cluster_func(self, fixture_upgrade_path):
        # fixture_harness_setup depends on this, so a missing or incompatible upgrade path
        # skips before any network, container or data directory exists
        return HarnessSetup.create_docker_cluster

    @pytest.fixture(scope='function', autouse=True)
    def set_upgrade_path_on_function(self, fixture_upgrade_path):
        self.upgrade_path = fixture_upgrade_path
        logger.debug("Upgrade test beginning: {}".format(self.upgrade_path.name))

    def connect(self, node):
        return self.patient_gateway_connection(node, timeout=self.CONNECT_TIMEOUT)

    def prepare(self):
        """
        Start every broker on the old version and wait until the topology is complete.

        @return a gateway connection to broker 0
        """
        self.cluster.start_all()
        client = self.connect(self.cluster.get(0))
        try:
            self.observer.await_complete(client, self.FORMATION_TIMEOUT, self.POLL_INTERVAL)
        except ConvergenceTimeout as e:
            pytest.fail(str(e))
        return client

    def sequencer(self, after_removal=None):
        return UpgradeSequencer(self.cluster, self.observer, self.connect,
                                self.upgrade_path.starting_version,
                                self.upgrade_path.upgrade_version,
                                grace_period=self.GRACE_PERIOD,
                                removal_timeout=self.REMOVAL_TIMEOUT,
                                readmission_timeout=self.READMISSION_TIMEOUT,
                                poll_interval=self.POLL_INTERVAL,
                                incompatible_prefixes=self.harness_config.incompatible_version_prefixes,
                                after_removal=after_removal)

    def upgrade_brokers(self, order, after_removal=None):
        sequencer = self.sequencer(after_removal=after_removal)
        try:
            sequencer.run(order)
        except (ConvergenceTimeout, UnexpectedVersionChange) as e:
            pytest.fail(str(e))
        except IncompatibleVersion as e:
            pytest.skip(str(e))
        return sequencer

    def work_driver(self, client):
        return WorkDriver(client,
                          deploy_timeout=self.DEPLOY_TIMEOUT,
                          creation_timeout=self.INSTANCE_CREATION_TIMEOUT,
                          creation_poll_interval=self.POLL_INTERVAL,
                          poll_interval=self.POLL_INTERVAL)

    def start_workers(self, driver, job_log=None):
        """
        Start one worker per job type of the driver's process, all recording into job_log.
        """
        job_log = job_log if job_log is not None else JobLog()
        for job_type in driver.definition.job_types:
            self.runners.append(driver.run_worker(job_type, job_log))
        return job_log

    def await_snapshot(self, node_id):
        verifier = SnapshotVerifier(self.cluster)
        deadline = time.time() + self.SNAPSHOT_TIMEOUT
        while not verifier.has_snapshot(node_id):
            if time.time() > deadline:
                pytest.fail("Expected broker {} to have a snapshot in {} within {}s".format(
                    node_id, verifier.snapshot_directory(node_id), self.SNAPSHOT_TIMEOUT))
            time.sleep(self.SNAPSHOT_POLL_INTERVAL)

    def assert_all_upgraded(self, client):
        """
        Wait until the topology seen through client lists every broker once, all on the new version,
        with the replication factor the cluster was created with.
        """
        try:
            return self.observer.await_all_upgraded(client, self.upgrade_path.upgrade_version,
                                                    self.READMISSION_TIMEOUT, self.POLL_INTERVAL)
        except ConvergenceTimeout as e:
            pytest.fail(str(e))

    def assert_jobs_processed_in_order(self, job_log, instance_keys, expected=None):
        expected = list(expected or PROCESS.job_types)
        deadline = time.time() + self.JOBS_TIMEOUT
        while True:
            for runner in self.runners:
                runner.check()
            sequences = job_log.sequences()
            if all(len(sequences.get(key, [])) >= len(expected) for key in instance_keys):
                break
            if time.time() > deadline:
                break
            time.sleep(self.POLL_INTERVAL)

        for key in instance_keys:
            assert sequences.get(key, []) == expected, \
                "Expected jobs {} for process instance {}, got {}".format(expected, key, sequences.get(key, []))
