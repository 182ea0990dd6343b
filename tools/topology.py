"""
Reading and waiting on the cluster's own view of its membership.

A TopologySnapshot is recomputed on every poll and is only ever used for the
assertion at hand. Convergence predicates are small callables taking a snapshot;
wait_for_convergence polls until one holds or its deadline passes, treating any
QueryError along the way as "not converged yet".
"""
import time
import logging

from collections import namedtuple

from tools.errors import ConvergenceTimeout, GatewayError, QueryError

logger = logging.getLogger(__name__)

LEADER = 'LEADER'
FOLLOWER = 'FOLLOWER'
INACTIVE = 'INACTIVE'

# upper bound for one topology request; a poll never waits past its own deadline either
QUERY_TIMEOUT = 5

PartitionInfo = namedtuple('PartitionInfo', ('partition_id', 'role'))
BrokerInfo = namedtuple('BrokerInfo', ('node_id', 'version', 'partitions'))


class TopologySnapshot(namedtuple('_TopologySnapshot', ('members', 'cluster_size', 'replication_factor',
                                                        'partitions_count'))):
    """
    members is a tuple of BrokerInfo as reported by the gateway; the remaining fields are
    the cluster-wide values the gateway reports alongside them.
    """

    @property
    def size(self):
        return len(self.members)

    @property
    def node_ids(self):
        return sorted(set(m.node_id for m in self.members))

    def entries_for(self, node_id):
        return [m for m in self.members if m.node_id == node_id]

    def contains(self, node_id):
        return len(self.entries_for(node_id)) > 0

    def versions(self):
        return dict((m.node_id, m.version) for m in self.members)

    def partitions_with_leader(self):
        return set(p.partition_id for m in self.members for p in m.partitions if p.role == LEADER)

    def describe(self):
        members = ', '.join('({}, {})'.format(m.node_id, m.version)
                            for m in sorted(self.members, key=lambda m: m.node_id))
        return '{{{members}}} size={size} cluster_size={cluster_size} replication_factor={rf} leaders={leaders}'.format(
            members=members, size=self.size, cluster_size=self.cluster_size, rf=self.replication_factor,
            leaders=sorted(self.partitions_with_leader()))


class _ClusterPredicate(object):
    """
    Shared checks: the reported cluster size and replication factor are still the ones the
    cluster was created with, and every partition has a leader.
    """
    node_id = None

    def __init__(self, cluster_size, replication_factor, partitions_count):
        self.cluster_size = cluster_size
        self.replication_factor = replication_factor
        self.partitions_count = partitions_count

    def _cluster_unchanged(self, snapshot):
        return snapshot.cluster_size == self.cluster_size and snapshot.replication_factor == self.replication_factor

    def _partitions_led(self, snapshot):
        expected = set(range(1, self.partitions_count + 1))
        return expected.issubset(snapshot.partitions_with_leader())

    def __repr__(self):
        return '{}({})'.format(self.__class__.__name__, self.description)


class IsComplete(_ClusterPredicate):
    """
    All brokers are members and every partition has a leader.
    """

    @property
    def description(self):
        return 'topology is complete with {} brokers'.format(self.cluster_size)

    def __call__(self, snapshot):
        return (snapshot.size == self.cluster_size
                and self._cluster_unchanged(snapshot)
                and self._partitions_led(snapshot))


class Excludes(_ClusterPredicate):
    """
    node_id is gone from the membership view and the view has shrunk by exactly one. Both are
    required together, a stale partial view can show one without the other.
    """

    def __init__(self, node_id, cluster_size, replication_factor, partitions_count):
        super(Excludes, self).__init__(cluster_size, replication_factor, partitions_count)
        self.node_id = node_id

    @property
    def description(self):
        return 'broker {} is removed from topology'.format(self.node_id)

    def __call__(self, snapshot):
        return (not snapshot.contains(self.node_id)
                and snapshot.size == self.cluster_size - 1
                and self._cluster_unchanged(snapshot)
                and self._partitions_led(snapshot))


class IncludesUpgraded(_ClusterPredicate):

    def __init__(self, node_id, version, cluster_size, replication_factor, partitions_count):
        super(IncludesUpgraded, self).__init__(cluster_size, replication_factor, partitions_count)
        self.node_id = node_id
        self.version = version

    @property
    def description(self):
        return 'broker {} is added to topology with version {}'.format(self.node_id, self.version)

    def __call__(self, snapshot):
        entries = snapshot.entries_for(self.node_id)
        return (len(entries) == 1
                and entries[0].version == self.version
                and snapshot.size == self.cluster_size
                and self._cluster_unchanged(snapshot)
                and self._partitions_led(snapshot))


class AllUpgraded(_ClusterPredicate):
    """
    Every broker is a member exactly once and reports version.
    """

    def __init__(self, version, cluster_size, replication_factor, partitions_count):
        super(AllUpgraded, self).__init__(cluster_size, replication_factor, partitions_count)
        self.version = version

    @property
    def description(self):
        return 'all {} brokers are on version {}'.format(self.cluster_size, self.version)

    def __call__(self, snapshot):
        return (snapshot.size == self.cluster_size
                and snapshot.node_ids == list(range(self.cluster_size))
                and all(m.version == self.version for m in snapshot.members)
                and self._cluster_unchanged(snapshot)
                and self._partitions_led(snapshot))


def wait_for_convergence(query, predicate, timeout, poll_interval):
    """
    Poll query(query_timeout) every poll_interval seconds until predicate(snapshot) holds. Each
    query is given at most QUERY_TIMEOUT seconds, and no more than what is left until the deadline.

    QueryError raised by query counts as "not yet satisfied". The query is attempted at least
    once. Only the deadline is terminal: ConvergenceTimeout is raised with the predicate, its
    node id, the elapsed time and the last thing we saw.

    @return the snapshot that satisfied the predicate
    """
    start = time.time()
    deadline = start + timeout
    last_snapshot = None
    last_error = None
    attempts = 0

    while True:
        attempts += 1
        query_timeout = min(QUERY_TIMEOUT, max(deadline - time.time(), poll_interval))
        try:
            snapshot = query(query_timeout)
        except QueryError as e:
            last_error = e
            logger.debug("topology query #{} failed while waiting until {}: {}".format(
                attempts, predicate.description, e))
        else:
            last_snapshot = snapshot
            if predicate(snapshot):
                logger.debug("{} after {} attempt(s) in {:.2f}s".format(
                    predicate.description, attempts, time.time() - start))
                return snapshot

        if time.time() >= deadline:
            raise ConvergenceTimeout(predicate.description, predicate.node_id, timeout, time.time() - start,
                                     last_snapshot=last_snapshot, last_error=last_error)
        time.sleep(poll_interval)


class TopologyObserver(object):
    """
    Evaluates membership predicates against the topology reported by whichever live broker the
    given client is connected to.
    """

    def __init__(self, cluster_size, replication_factor, partitions_count=1):
        self.cluster_size = cluster_size
        self.replication_factor = replication_factor
        self.partitions_count = partitions_count

    def query(self, client, timeout=QUERY_TIMEOUT):
        try:
            return client.topology(timeout=timeout)
        except GatewayError as e:
            raise QueryError("could not read topology through {}: {}".format(client, e))

    def excludes(self, node_id):
        return Excludes(node_id, self.cluster_size, self.replication_factor, self.partitions_count)

    def includes_upgraded(self, node_id, version):
        return IncludesUpgraded(node_id, version, self.cluster_size, self.replication_factor,
                                self.partitions_count)

    def is_complete(self):
        return IsComplete(self.cluster_size, self.replication_factor, self.partitions_count)

    def all_upgraded(self, version):
        return AllUpgraded(version, self.cluster_size, self.replication_factor, self.partitions_count)

    def await_predicate(self, client, predicate, timeout, poll_interval):
        return wait_for_convergence(lambda query_timeout: self.query(client, query_timeout),
                                    predicate, timeout, poll_interval)

    def await_excludes(self, client, node_id, timeout, poll_interval):
        return self.await_predicate(client, self.excludes(node_id), timeout, poll_interval)

    def await_includes_upgraded(self, client, node_id, version, timeout, poll_interval):
        return self.await_predicate(client, self.includes_upgraded(node_id, version), timeout, poll_interval)

    def await_complete(self, client, timeout, poll_interval):
        return self.await_predicate(client, self.is_complete(), timeout, poll_interval)

    def await_all_upgraded(self, client, version, timeout, poll_interval):
        return self.await_predicate(client, self.all_upgraded(version), timeout, poll_interval)
