import json
import logging

from collections import namedtuple

import grpc
from zeebe_grpc import gateway_pb2, gateway_pb2_grpc

from tools.errors import GatewayError
from tools.topology import FOLLOWER, INACTIVE, LEADER, BrokerInfo, PartitionInfo, TopologySnapshot

logger = logging.getLogger(__name__)

DeploymentResult = namedtuple('DeploymentResult', ('key', 'processes'))
DeployedProcess = namedtuple('DeployedProcess', ('bpmn_process_id', 'version', 'process_definition_key',
                                                 'resource_name'))
ActivatedJob = namedtuple('ActivatedJob', ('key', 'type', 'process_instance_key', 'element_id', 'retries'))

_ROLES = {
    gateway_pb2.Partition.LEADER: LEADER,
    gateway_pb2.Partition.FOLLOWER: FOLLOWER,
    gateway_pb2.Partition.INACTIVE: INACTIVE,
}


def _wrap(description, e):
    code = e.code() if hasattr(e, 'code') else None
    details = e.details() if hasattr(e, 'details') else str(e)
    return GatewayError("{} failed: {} {}".format(description, code, details), code=code)


def topology_from_response(response):
    members = tuple(
        BrokerInfo(node_id=broker.nodeId,
                   version=broker.version,
                   partitions=tuple(PartitionInfo(p.partitionId, _ROLES.get(p.role, INACTIVE))
                                    for p in broker.partitions))
        for broker in response.brokers)
    return TopologySnapshot(members=members,
                            cluster_size=response.clusterSize,
                            replication_factor=response.replicationFactor,
                            partitions_count=response.partitionsCount)


def job_from_message(job):
    return ActivatedJob(key=job.key, type=job.type, process_instance_key=job.processInstanceKey,
                        element_id=job.elementId, retries=job.retries)


class GatewayClient(object):
    """
    Plaintext gRPC client for the gateway embedded in a broker.

    Every failed call raises GatewayError; what to make of it is up to the caller. The channel is
    safe to share between the sequencer and job worker threads.
    """

    def __init__(self, address, stub=None):
        self.address = address
        self._channel = None
        if stub is None:
            self._channel = grpc.insecure_channel(address)
            stub = gateway_pb2_grpc.GatewayStub(self._channel)
        self._stub = stub
        self._closed = False

    def __repr__(self):
        return 'GatewayClient({})'.format(self.address)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        if self._closed:
            return
        self._closed = True
        if self._channel is not None:
            self._channel.close()

    def topology(self, timeout=5):
        try:
            response = self._stub.Topology(gateway_pb2.TopologyRequest(), timeout=timeout)
        except grpc.RpcError as e:
            raise _wrap("topology request to {}".format(self.address), e)
        return topology_from_response(response)

    def deploy_resource(self, name, content, timeout=10):
        if isinstance(content, str):
            content = content.encode('utf-8')
        request = gateway_pb2.DeployResourceRequest(resources=[gateway_pb2.Resource(name=name, content=content)])
        try:
            response = self._stub.DeployResource(request, timeout=timeout)
        except grpc.RpcError as e:
            raise _wrap("deployment of {}".format(name), e)
        processes = tuple(DeployedProcess(d.process.bpmnProcessId, d.process.version,
                                          d.process.processDefinitionKey, d.process.resourceName)
                          for d in response.deployments if d.HasField('process'))
        return DeploymentResult(key=response.key, processes=processes)

    def create_process_instance(self, bpmn_process_id, version=-1, variables=None, timeout=10):
        request = gateway_pb2.CreateProcessInstanceRequest(bpmnProcessId=bpmn_process_id,
                                                           version=version,
                                                           variables=json.dumps(variables or {}))
        try:
            response = self._stub.CreateProcessInstance(request, timeout=timeout)
        except grpc.RpcError as e:
            raise _wrap("creating an instance of {}".format(bpmn_process_id), e)
        return response.processInstanceKey

    def activate_jobs(self, job_type, worker, max_jobs, job_timeout_ms, request_timeout_ms):
        """
        Long-poll for up to max_jobs jobs of job_type. Activated jobs are locked to worker for
        job_timeout_ms; an empty list just means nothing was available within request_timeout_ms.
        """
        request = gateway_pb2.ActivateJobsRequest(type=job_type, worker=worker, timeout=job_timeout_ms,
                                                  maxJobsToActivate=max_jobs, requestTimeout=request_timeout_ms)
        jobs = []
        try:
            for response in self._stub.ActivateJobs(request, timeout=request_timeout_ms / 1000.0 + 5):
                jobs.extend(job_from_message(job) for job in response.jobs)
        except grpc.RpcError as e:
            raise _wrap("activating {} jobs".format(job_type), e)
        return jobs

    def complete_job(self, job_key, variables=None, timeout=10):
        request = gateway_pb2.CompleteJobRequest(jobKey=job_key, variables=json.dumps(variables or {}))
        try:
            self._stub.CompleteJob(request, timeout=timeout)
        except grpc.RpcError as e:
            raise _wrap("completing job {}".format(job_key), e)
