import os
import logging

logger = logging.getLogger(__name__)

SNAPSHOTS_PATH = os.path.join('raft-partition', 'partitions', '{partition_id}', 'snapshots')


class SnapshotVerifier(object):
    """
    Looks for snapshot evidence in a broker's data directory on the host. Only answers the
    question once; callers who need to wait poll has_snapshot themselves.
    """

    def __init__(self, registry, partition_id=1):
        self.registry = registry
        self.partition_id = partition_id

    def snapshot_directory(self, node_id):
        return os.path.join(self.registry.get(node_id).data_path,
                            SNAPSHOTS_PATH.format(partition_id=self.partition_id))

    def has_snapshot(self, node_id):
        path = self.snapshot_directory(node_id)
        if not os.path.isdir(path):
            logger.debug("no snapshot directory yet for broker {} at {}".format(node_id, path))
            return False
        entries = os.listdir(path)
        logger.debug("broker {} snapshot directory contains {}".format(node_id, entries))
        return len(entries) > 0
