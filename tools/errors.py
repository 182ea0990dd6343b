"""
Exceptions raised by the harness.

Only ConvergenceTimeout, UnexpectedVersionChange, DeployError and
InstanceCreationError are meant to end a scenario. QueryError and GatewayError
are transient by nature and are retried by whoever polls.
"""


class HarnessError(Exception):
    pass


class GatewayError(HarnessError):
    """
    A gateway RPC failed. Keeps the gRPC status code (if any) so callers can log it.
    """

    def __init__(self, message, code=None):
        super(GatewayError, self).__init__(message)
        self.code = code


class QueryError(HarnessError):
    """
    The topology could not be read from the broker we asked. Expected while brokers
    come and go; never fatal on its own.
    """


class ConvergenceTimeout(HarnessError):

    def __init__(self, description, node_id, timeout, elapsed, last_snapshot=None, last_error=None):
        self.description = description
        self.node_id = node_id
        self.timeout = timeout
        self.elapsed = elapsed
        self.last_snapshot = last_snapshot
        self.last_error = last_error
        super(ConvergenceTimeout, self).__init__(self._message())

    def _message(self):
        message = "Timed out after {elapsed:.1f}s (limit {timeout}s) waiting until {description} (broker {node_id})".format(
            elapsed=self.elapsed, timeout=self.timeout, description=self.description, node_id=self.node_id)
        if self.last_snapshot is not None:
            message += "; last observed topology: {}".format(self.last_snapshot.describe())
        if self.last_error is not None:
            message += "; last query error: {}".format(self.last_error)
        return message


class UnexpectedVersionChange(HarnessError):
    """
    A broker we did not touch reports a different version than the one it was started with.
    """

    def __init__(self, node_id, expected, actual):
        self.node_id = node_id
        self.expected = expected
        self.actual = actual
        super(UnexpectedVersionChange, self).__init__(
            "Broker {} reports version {} but was started with {}".format(node_id, actual, expected))


class DeployError(HarnessError):
    pass


class InstanceCreationError(HarnessError):
    pass


class IncompatibleVersion(HarnessError):

    def __init__(self, old_version, new_version, prefix):
        self.old_version = old_version
        self.new_version = new_version
        self.prefix = prefix
        super(IncompatibleVersion, self).__init__(
            "New version {} (prefix {}) does not support a rolling upgrade from {}".format(
                new_version, prefix, old_version))
