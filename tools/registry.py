import os
import logging
import threading

from tools.broker import INTERNAL_PORT
from tools.misc import ensure_directory

logger = logging.getLogger(__name__)


class _Slot(object):
    """
    Fixed position for one node id. The node held by a slot changes on replace, the slot does not.
    """

    def __init__(self, node_id):
        self.node_id = node_id
        self.node = None
        self.generation = 0
        self.lock = threading.Lock()


class ClusterRegistry(object):
    """
    Ordered collection of broker handles, indexed by their stable node id (0..size-1).

    node_factory(node_id=..., version=..., hostname=..., environment=..., data_path=...,
    generation=...) builds a handle; it is called once per node at construction time and once
    per replace. The registry is the only thing that swaps handles, so never keep a handle
    across a replace: look it up again with get().
    """

    def __init__(self, name, size, version, data_root, node_factory, partitions_count=1, snapshot_period='1m',
                 extra_environment=None):
        if size < 1:
            raise ValueError("a cluster needs at least one broker, got {}".format(size))
        self.name = name
        self.size = size
        self.replication_factor = size
        self.partitions_count = partitions_count
        self.snapshot_period = snapshot_period
        self.data_root = ensure_directory(data_root, "cluster data root")
        self.node_factory = node_factory
        self.extra_environment = extra_environment or {}
        self._slots = [_Slot(node_id) for node_id in range(size)]

        for slot in self._slots:
            slot.node = self._provision(slot, version)

    def hostname(self, node_id):
        return 'broker-{}'.format(node_id)

    @property
    def contact_points(self):
        return ','.join('{}:{}'.format(self.hostname(node_id), INTERNAL_PORT) for node_id in range(self.size))

    def data_path(self, node_id):
        return ensure_directory(os.path.join(self.data_root, self.hostname(node_id)), "broker data folder")

    def environment(self, node_id):
        environment = {
            'ZEEBE_BROKER_NETWORK_HOST': '0.0.0.0',
            'ZEEBE_BROKER_NETWORK_ADVERTISEDHOST': self.hostname(node_id),
            'ZEEBE_BROKER_CLUSTER_CLUSTERNAME': self.name,
            'ZEEBE_BROKER_NETWORK_MAXMESSAGESIZE': '128KB',
            'ZEEBE_BROKER_CLUSTER_NODEID': str(node_id),
            'ZEEBE_BROKER_CLUSTER_CLUSTERSIZE': str(self.size),
            'ZEEBE_BROKER_CLUSTER_REPLICATIONFACTOR': str(self.replication_factor),
            'ZEEBE_BROKER_CLUSTER_PARTITIONSCOUNT': str(self.partitions_count),
            'ZEEBE_BROKER_CLUSTER_INITIALCONTACTPOINTS': self.contact_points,
            'ZEEBE_BROKER_CLUSTER_MEMBERSHIP_BROADCASTUPDATES': 'true',
            'ZEEBE_BROKER_CLUSTER_MEMBERSHIP_SYNCINTERVAL': '250ms',
            'ZEEBE_BROKER_DATA_SNAPSHOTPERIOD': self.snapshot_period,
            'ZEEBE_BROKER_GATEWAY_ENABLE': 'true',
        }
        environment.update(self.extra_environment)
        return environment

    def _provision(self, slot, version):
        return self.node_factory(node_id=slot.node_id,
                                 version=version,
                                 hostname=self.hostname(slot.node_id),
                                 environment=self.environment(slot.node_id),
                                 data_path=self.data_path(slot.node_id),
                                 generation=slot.generation)

    def _slot(self, node_id):
        if not 0 <= node_id < self.size:
            raise IndexError("no broker with id {} in a cluster of {}".format(node_id, self.size))
        return self._slots[node_id]

    def get(self, node_id):
        return self._slot(node_id).node

    def all(self):
        return [slot.node for slot in self._slots]

    def running(self):
        return [slot.node for slot in self._slots if slot.node.running]

    def replace(self, node_id, version):
        """
        Swap the broker at node_id for a fresh handle on version. Same id, hostname and data
        path; the new handle is not started.
        """
        slot = self._slot(node_id)
        with slot.lock:
            previous = slot.node
            if previous.running:
                raise RuntimeError("refusing to replace {} while it is still running".format(previous))
            previous.release()
            slot.generation += 1
            slot.node = self._provision(slot, version)
            logger.debug("replaced {} with {}".format(previous, slot.node))
            return slot.node

    def start_all(self):
        for node in self.all():
            node.start()

    def stop_all(self):
        """
        Stop every broker at once. Best effort: failures are logged, never raised, and we wait
        for every stop to finish.
        """
        def stop(node):
            try:
                node.stop()
            except Exception as e:
                logger.debug("ignoring failure stopping {}: {}".format(node, e))

        threads = [threading.Thread(target=stop, args=(node,), name='stop-{}'.format(node.node_id))
                   for node in self.all()]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
