import logging

import docker

logger = logging.getLogger(__name__)

GATEWAY_PORT = 26500
INTERNAL_PORT = 26502

# where the broker image keeps its state; the host side of the mount is owned by the registry
DATA_DIRECTORY = '/usr/local/zeebe/data'


class BrokerNode(object):
    """
    Lifecycle controls for one broker container.

    A BrokerNode is bound to exactly one image; upgrading a broker means replacing its handle
    through the registry, which keeps node_id, hostname and data_path. start() may only be
    called once per handle.
    """

    def __init__(self, docker_client, network, node_id, version, image, hostname, environment, data_path,
                 container_name):
        self.docker_client = docker_client
        self.network = network
        self.node_id = node_id
        self.version = version
        self.image = image
        self.hostname = hostname
        self.environment = environment
        self.data_path = data_path
        self.container_name = container_name
        self.running = False
        self._container = None

    def __repr__(self):
        return 'BrokerNode(node_id={}, version={}, running={})'.format(self.node_id, self.version, self.running)

    @property
    def name(self):
        return self.hostname

    def start(self):
        if self._container is not None:
            raise RuntimeError("{} was already started; replace it through the registry instead".format(self))

        logger.debug("starting {} from image {} (data at {})".format(self.hostname, self.image, self.data_path))
        self._container = self.docker_client.containers.create(
            self.image,
            name=self.container_name,
            hostname=self.hostname,
            environment=self.environment,
            volumes={self.data_path: {'bind': DATA_DIRECTORY, 'mode': 'rw'}},
            ports={'{}/tcp'.format(GATEWAY_PORT): None},
            detach=True)
        # the alias is what other brokers find us by through the initial contact points
        self.network.connect(self._container, aliases=[self.hostname])
        self._container.start()
        self.running = True

    def shutdown(self, timeout):
        """
        Ask the broker to terminate and give it timeout seconds to do so; after that the container
        runtime kills it. Either way the broker is down when this returns.
        """
        logger.debug("gracefully stopping {} (timeout {}s)".format(self.hostname, timeout))
        self._container.stop(timeout=int(timeout))
        self.running = False

    def stop(self):
        """
        Kill and remove the container immediately. Used at teardown.
        """
        self.running = False
        if self._container is not None:
            container, self._container = self._container, None
            container.remove(force=True)

    def release(self):
        """
        Remove the stopped container once this handle has been replaced. The data directory stays.
        """
        if self._container is None:
            return
        try:
            self._container.remove(force=True)
        except docker.errors.APIError as e:
            logger.debug("could not remove replaced container {}: {}".format(self.container_name, e))

    def external_address(self, port=GATEWAY_PORT):
        self._container.reload()
        bindings = self._container.ports.get('{}/tcp'.format(port))
        if not bindings:
            raise RuntimeError("{} does not expose port {}".format(self, port))
        return '127.0.0.1:{}'.format(bindings[0]['HostPort'])

    def logs(self):
        if self._container is None:
            return ''
        return self._container.logs().decode('utf-8', errors='replace')
