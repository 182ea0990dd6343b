import os
import shutil
import time
import logging
import uuid

import docker

from harness import LOG_SAVED_DIR, LAST_LOG, LAST_TEST_DIR
from tools.broker import BrokerNode
from tools.errors import GatewayError
from tools.misc import ensure_directory, retry_till_success
from tools.registry import ClusterRegistry
from tools.topology import TopologyObserver

logger = logging.getLogger(__name__)


class HarnessSetup:
    def __init__(self, harness_config=None, cluster_name="test"):
        self.harness_config = harness_config
        self.cluster_name = cluster_name
        self.cluster = None
        self.observer = None
        self.network = None
        self.docker_client = None
        self.connections = []
        self.runners = []

        self.log_saved_dir = LOG_SAVED_DIR
        try:
            os.mkdir(self.log_saved_dir)
        except OSError:
            pass

        self.last_log = LAST_LOG
        self.last_test_dir = LAST_TEST_DIR
        self.test_path = self.get_test_path()

    def get_test_path(self):
        # one directory per test under the shared root, so that brokers started by the container
        # runtime on the same host can bind-mount it
        shared_data_dir = ensure_directory(self.harness_config.shared_data_dir, "shared data directory")
        return ensure_directory(os.path.join(shared_data_dir, 'harness-{}'.format(uuid.uuid4().hex[:12])),
                                "test directory")

    def copy_logs(self, test_name, directory=None, name=None):
        """
        Save the container logs of every current broker to <directory>/<millis>_<test_name>/broker-<id>.log
        and point <directory>/last at it.
        """
        if directory is None:
            directory = self.log_saved_dir
        if name is None:
            name = self.last_log
        else:
            name = os.path.join(directory, name)
        if not os.path.exists(directory):
            os.mkdir(directory)

        if self.cluster is None:
            return

        basedir = str(int(time.time() * 1000)) + '_' + test_name
        logdir = os.path.join(directory, basedir)
        os.mkdir(logdir)
        for node in self.cluster.all():
            try:
                content = node.logs()
            except docker.errors.APIError as e:
                logger.debug("could not read logs of {}: {}".format(node, e))
                continue
            with open(os.path.join(logdir, node.name + ".log"), 'w') as f:
                f.write(content)

        if os.path.lexists(name):
            os.unlink(name)
        os.symlink(basedir, name)

    def gateway_connection(self, node):
        # imported here so that meta tests can run without the generated gateway client
        from tools.gateway import GatewayClient

        client = GatewayClient(node.external_address())
        self.connections.append(client)
        return client

    def patient_gateway_connection(self, node, timeout=30):
        """
        Returns a connection once the broker's gateway answers a topology request.

        If the timeout is exceeded, the GatewayError is raised.
        """
        client = self.gateway_connection(node)
        retry_till_success(client.topology, timeout=timeout, bypassed_exception=GatewayError)
        return client

    def cleanup_last_test_dir(self):
        if os.path.lexists(self.last_test_dir):
            os.remove(self.last_test_dir)

    def write_last_test_dir(self):
        self.cleanup_last_test_dir()
        with open(self.last_test_dir, 'w') as f:
            f.write(self.test_path + '\n')

    def stop_runners(self):
        """
        Stop every background runner; the first error any of them hit is re-raised once all are stopped.
        """
        errors = []
        for runner in self.runners:
            try:
                runner.stop()
            except Exception as e:
                errors.append(e)
        self.runners = []
        if errors:
            raise errors[0]

    def close_connections(self):
        for con in self.connections:
            con.close()
        self.connections = []

    def cleanup_cluster(self, failed=False):
        try:
            self.stop_runners()
        finally:
            self.close_connections()

            if self.cluster is not None:
                logger.debug("stopping all brokers of cluster {}".format(self.cluster_name))
                self.cluster.stop_all()

            if self.network is not None:
                try:
                    self.network.remove()
                except docker.errors.APIError as e:
                    logger.debug("ignoring failure removing network {}: {}".format(self.network.name, e))
                self.network = None

            if self.docker_client is not None:
                self.docker_client.close()
                self.docker_client = None

            keep = self.harness_config.keep_test_dir or (failed and self.harness_config.keep_failed_test_dir)
            if keep:
                logger.info("keeping broker data of {} at {}".format(self.cluster_name, self.test_path))
                self.write_last_test_dir()
            else:
                logger.debug("removing broker data of {} at: {}".format(self.cluster_name, self.test_path))
                # containers may have written files as another user; what we cannot remove stays behind
                shutil.rmtree(self.test_path, ignore_errors=True)
                self.cleanup_last_test_dir()

    @staticmethod
    def create_docker_cluster(harness_setup):
        logger.debug("cluster data directory: " + harness_setup.test_path)
        config = harness_setup.harness_config
        client = docker.from_env()
        network = client.networks.create('{}-{}'.format(harness_setup.cluster_name, os.path.basename(
            harness_setup.test_path)), driver='bridge')
        harness_setup.docker_client = client
        harness_setup.network = network

        def node_factory(node_id, version, hostname, environment, data_path, generation):
            return BrokerNode(client, network,
                              node_id=node_id,
                              version=version,
                              image=config.image_for(version),
                              hostname=hostname,
                              environment=environment,
                              data_path=data_path,
                              container_name='{}-{}-{}'.format(network.name, hostname, generation))

        return ClusterRegistry(harness_setup.cluster_name,
                               config.cluster_size,
                               config.old_version,
                               harness_setup.test_path,
                               node_factory,
                               partitions_count=config.partitions_count,
                               snapshot_period=config.snapshot_period)

    def initialize_cluster(self, create_cluster_func):
        """
        Build the broker registry for the next test. Brokers are created on the old version and
        are not started; scenarios start them once their own preparation is done.
        """
        self.cluster = create_cluster_func(self)
        self.observer = TopologyObserver(self.cluster.size,
                                         self.cluster.replication_factor,
                                         self.cluster.partitions_count)
