"""
One-broker-at-a-time rolling upgrade.

For every node id in the traversal order the sequencer stops the broker, waits until the
remaining brokers no longer list it, swaps it for a handle on the new version, starts that, and
waits until it is listed again with the new version. It never works on two brokers at once:
the property under test is that the cluster tolerates exactly one absent broker.
"""
import logging
import random

from enum import Enum

from harness_config import DEFAULT_INCOMPATIBLE_VERSION_PREFIXES
from tools.errors import IncompatibleVersion, UnexpectedVersionChange
from upgrade_tests.upgrade_manifest import check_rolling_upgrade_compatible

logger = logging.getLogger(__name__)


class UpgradeState(Enum):
    IDLE = 'idle'
    STOPPING = 'stopping'
    AWAITING_REMOVAL = 'awaiting_removal'
    UPGRADING = 'upgrading'
    AWAITING_READMISSION = 'awaiting_readmission'
    DONE = 'done'
    FAILED = 'failed'
    SKIPPED = 'skipped'


TERMINAL_STATES = (UpgradeState.DONE, UpgradeState.FAILED, UpgradeState.SKIPPED)


def single(node_id):
    return [node_id]


def descending(size):
    return list(range(size - 1, -1, -1))


def ascending(size):
    return list(range(size))


def shuffled(size, seed=None):
    order = ascending(size)
    random.Random(seed).shuffle(order)
    return order


def traversal_order(name, size, seed=None):
    """
    @return the node ids of a full sweep over a cluster of size brokers, in the named order
    """
    if name == 'descending':
        return descending(size)
    elif name == 'ascending':
        return ascending(size)
    elif name == 'random':
        order = shuffled(size, seed)
        logger.info("random traversal order for seed {}: {}".format(seed, order))
        return order
    raise ValueError("unknown traversal order {}".format(name))


class UpgradeSequencer:
    """
    Drives a ClusterRegistry from old_version to new_version.

    connect(node) must return a gateway client usable as a context manager; the sequencer opens
    one per node it upgrades, against a broker other than the one being replaced. The optional
    after_removal(node_id, client) hook runs while the node is down, before it is replaced.

    Any error, including a pytest fail or skip raised by the hook, ends the run in FAILED and is
    re-raised; nothing is rolled back.
    """

    def __init__(self, registry, observer, connect, old_version, new_version,
                 grace_period=30, removal_timeout=20, readmission_timeout=10, poll_interval=0.1,
                 incompatible_prefixes=DEFAULT_INCOMPATIBLE_VERSION_PREFIXES, after_removal=None):
        self.registry = registry
        self.observer = observer
        self.connect = connect
        self.old_version = old_version
        self.new_version = new_version
        self.grace_period = grace_period
        self.removal_timeout = removal_timeout
        self.readmission_timeout = readmission_timeout
        self.poll_interval = poll_interval
        self.incompatible_prefixes = incompatible_prefixes
        self.after_removal = after_removal

        self.state = UpgradeState.IDLE
        self.current_node_id = None
        self.last_confirmed = None
        self.history = []
        self._valid_transitions = {}
        self._setup_transition_graph()

    def _setup_transition_graph(self):
        self._add_transition(UpgradeState.IDLE, UpgradeState.STOPPING)
        self._add_transition(UpgradeState.IDLE, UpgradeState.DONE)
        self._add_transition(UpgradeState.IDLE, UpgradeState.SKIPPED)
        self._add_transition(UpgradeState.STOPPING, UpgradeState.AWAITING_REMOVAL)
        self._add_transition(UpgradeState.AWAITING_REMOVAL, UpgradeState.UPGRADING)
        self._add_transition(UpgradeState.UPGRADING, UpgradeState.AWAITING_READMISSION)
        self._add_transition(UpgradeState.AWAITING_READMISSION, UpgradeState.IDLE)
        for state in UpgradeState:
            if state not in TERMINAL_STATES:
                self._add_transition(state, UpgradeState.FAILED)

    def _add_transition(self, from_state, to_state):
        self._valid_transitions.setdefault(from_state, set()).add(to_state)

    def can_transition_to(self, state):
        return state in self._valid_transitions.get(self.state, set())

    def transition_to(self, state, node_id=None):
        if not self.can_transition_to(state):
            raise RuntimeError("invalid upgrade transition {} -> {}".format(self.state.value, state.value))
        logger.info("upgrade {} -> {}{}".format(self.state.value, state.value,
                                                '' if node_id is None else ' (broker {})'.format(node_id)))
        self.state = state
        self.current_node_id = node_id
        self.history.append((state, node_id))

    def query_target(self, node_id):
        """
        The broker to observe node_id's removal and readmission through: the most recently
        confirmed broker if it is still running, otherwise the first running broker that is not
        node_id.
        """
        if self.last_confirmed is not None and self.last_confirmed != node_id:
            node = self.registry.get(self.last_confirmed)
            if node.running:
                return node
        for node in self.registry.running():
            if node.node_id != node_id:
                return node
        raise RuntimeError("no running broker left to observe broker {} through".format(node_id))

    def run(self, order):
        """
        Upgrade every node id in order, one at a time.

        Raises IncompatibleVersion (state SKIPPED) before touching any broker if new_version
        cannot be rolled onto; otherwise ends in DONE or, on the first error, FAILED.
        """
        order = list(order)
        if len(set(order)) != len(order):
            raise ValueError("traversal order {} visits a broker more than once".format(order))

        try:
            check_rolling_upgrade_compatible(self.old_version, self.new_version, self.incompatible_prefixes)
        except IncompatibleVersion:
            self.transition_to(UpgradeState.SKIPPED)
            raise

        logger.info("rolling upgrade from {} to {} in order {}".format(self.old_version, self.new_version, order))
        try:
            for node_id in order:
                self._upgrade(node_id)
            self.transition_to(UpgradeState.DONE)
        except BaseException as e:
            logger.info("rolling upgrade failed at broker {} in state {}: {}".format(
                self.current_node_id, self.state.value, e))
            if self.can_transition_to(UpgradeState.FAILED):
                self.transition_to(UpgradeState.FAILED, self.current_node_id)
            raise

    def _upgrade(self, node_id):
        self.current_node_id = node_id
        target = self.query_target(node_id)
        logger.debug("observing broker {} through broker {}".format(node_id, target.node_id))

        with self.connect(target) as client:
            self.transition_to(UpgradeState.STOPPING, node_id)
            self.registry.get(node_id).shutdown(self.grace_period)

            self.transition_to(UpgradeState.AWAITING_REMOVAL, node_id)
            self.observer.await_excludes(client, node_id, self.removal_timeout, self.poll_interval)
            if self.after_removal is not None:
                self.after_removal(node_id, client)

            self.transition_to(UpgradeState.UPGRADING, node_id)
            self.registry.replace(node_id, self.new_version).start()

            self.transition_to(UpgradeState.AWAITING_READMISSION, node_id)
            snapshot = self.observer.await_includes_upgraded(client, node_id, self.new_version,
                                                             self.readmission_timeout, self.poll_interval)
            self.check_versions_unchanged(snapshot, node_id)

        self.last_confirmed = node_id
        self.transition_to(UpgradeState.IDLE)

    def check_versions_unchanged(self, snapshot, upgraded_node_id):
        """
        Every broker other than the one just upgraded must still report the version it was started on.
        """
        for member in snapshot.members:
            if member.node_id == upgraded_node_id:
                continue
            expected = self.registry.get(member.node_id).version
            if member.version != expected:
                raise UnexpectedVersionChange(member.node_id, expected, member.version)
