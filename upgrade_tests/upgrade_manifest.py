import logging

from collections import namedtuple

from harness_config import DEFAULT_INCOMPATIBLE_VERSION_PREFIXES
from tools.errors import IncompatibleVersion

logger = logging.getLogger(__name__)

# UpgradePath's contain data about the upgrade we wish to test: which version every broker starts
# on and which version it is rolled onto
UpgradePath = namedtuple('UpgradePath', ('name', 'starting_version', 'upgrade_version'))


def build_upgrade_path(harness_config):
    """
    @return the UpgradePath configured for this session, or None if either version is missing
    """
    if harness_config.old_version is None or harness_config.new_version is None:
        return None
    name = 'Upgrade_{}_To_{}'.format(harness_config.old_version, harness_config.new_version).replace('.', '_')
    return UpgradePath(name=name,
                       starting_version=harness_config.old_version,
                       upgrade_version=harness_config.new_version)


def incompatible_prefix(new_version, incompatible_prefixes=DEFAULT_INCOMPATIBLE_VERSION_PREFIXES):
    """
    @return the first listed prefix new_version starts with, or None
    """
    for prefix in incompatible_prefixes:
        if new_version.startswith(prefix):
            return prefix
    return None


def check_rolling_upgrade_compatible(old_version, new_version,
                                     incompatible_prefixes=DEFAULT_INCOMPATIBLE_VERSION_PREFIXES):
    """
    Raise IncompatibleVersion if new_version is known not to accept a rolling upgrade from old_version.
    """
    prefix = incompatible_prefix(new_version, incompatible_prefixes)
    if prefix is not None:
        logger.debug("{} matches incompatible prefix {}".format(new_version, prefix))
        raise IncompatibleVersion(old_version, new_version, prefix)
