"""
In-memory stand-ins for broker containers and the gateway, for exercising the upgrade
machinery without a container runtime.
"""
import threading

from tools.errors import GatewayError
from tools.topology import FOLLOWER, LEADER, BrokerInfo, PartitionInfo, TopologySnapshot


class FakeNode(object):

    def __init__(self, node_id, version, hostname, environment, data_path, generation, events):
        self.node_id = node_id
        self.version = version
        self.hostname = hostname
        self.environment = environment
        self.data_path = data_path
        self.generation = generation
        self.events = events
        self.running = False
        self.released = False
        self.fail_on_stop = False

    def __repr__(self):
        return 'FakeNode({}, {}, gen={})'.format(self.node_id, self.version, self.generation)

    @property
    def name(self):
        return self.hostname

    def start(self):
        if self.running or ('start', self.node_id, self.generation) in self.events:
            raise RuntimeError("{} was already started".format(self))
        self.events.append(('start', self.node_id, self.generation))
        self.running = True

    def shutdown(self, timeout):
        self.events.append(('shutdown', self.node_id, self.generation))
        self.running = False

    def stop(self):
        self.events.append(('stop', self.node_id, self.generation))
        self.running = False
        if self.fail_on_stop:
            raise RuntimeError("container of broker {} is gone".format(self.node_id))

    def release(self):
        self.events.append(('release', self.node_id, self.generation))
        self.released = True

    def logs(self):
        return 'log of broker {}\n'.format(self.node_id)


class FakeNodeFactory(object):

    def __init__(self):
        self._lock = threading.Lock()
        self.events = []
        self.created = []

    def __call__(self, node_id, version, hostname, environment, data_path, generation):
        node = FakeNode(node_id, version, hostname, environment, data_path, generation, self.events)
        with self._lock:
            self.created.append(node)
        return node

    def lifecycle_events(self):
        return [e for e in self.events if e[0] in ('start', 'shutdown', 'release')]


class FakeGateway(object):
    """
    Reports the topology of a registry as a broker's gateway would, with some of the lag of a
    real membership protocol.

    A broker that stopped stays listed for removal_lag more polls; a broker that started is
    listed only after join_lag polls. The first `failures` polls raise GatewayError. Versions in
    reported_versions override what a broker reports.
    """

    def __init__(self, registry, removal_lag=0, join_lag=0, failures=0, partitions_count=1,
                 replication_factor=None, leaderless=False):
        self.registry = registry
        self.removal_lag = removal_lag
        self.join_lag = join_lag
        self.failures = failures
        self.partitions_count = partitions_count
        self.replication_factor = registry.replication_factor if replication_factor is None else replication_factor
        self.leaderless = leaderless
        self.reported_versions = {}
        self.polls = 0
        self.closed = False
        self._last_state = {}
        self._stable_for = {}
        # whatever is running when the gateway is created counts as settled
        settled = max(removal_lag, join_lag)
        for node in registry.all():
            self._last_state[node.node_id] = node.running
            self._stable_for[node.node_id] = settled

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self.closed = True

    def _visible(self, node):
        if self._last_state.get(node.node_id) != node.running:
            self._last_state[node.node_id] = node.running
            self._stable_for[node.node_id] = 0
        else:
            self._stable_for[node.node_id] += 1
        polls = self._stable_for[node.node_id]
        if node.running:
            return polls >= self.join_lag
        return polls < self.removal_lag

    def topology(self, timeout=5):
        self.polls += 1
        if self.failures > 0:
            self.failures -= 1
            raise GatewayError("UNAVAILABLE: broker is not reachable", code='UNAVAILABLE')

        visible = [node for node in self.registry.all() if self._visible(node)]
        leader_id = None if self.leaderless or not visible else min(node.node_id for node in visible)
        members = tuple(
            BrokerInfo(node_id=node.node_id,
                       version=self.reported_versions.get(node.node_id, node.version),
                       partitions=tuple(PartitionInfo(p, LEADER if node.node_id == leader_id else FOLLOWER)
                                        for p in range(1, self.partitions_count + 1)))
            for node in visible)
        return TopologySnapshot(members=members,
                                cluster_size=self.registry.size,
                                replication_factor=self.replication_factor,
                                partitions_count=self.partitions_count)


class RecordingConnector(object):
    """
    connect(node) for the sequencer: always hands out the same gateway, remembering whom it was asked for.
    """

    def __init__(self, gateway):
        self.gateway = gateway
        self.targets = []

    def __call__(self, node):
        self.targets.append(node.node_id)
        return self.gateway
