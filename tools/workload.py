"""
Submitting work to the cluster and capturing how it gets processed.

The process every scenario uses runs two service tasks in sequence. Each activated job is
handed to a caller-supplied callback (usually a JobLog) before it is completed, so the log
shows, per process instance, the order in which job types were processed.
"""
import time
import logging
import threading

from collections import namedtuple

from harness import Runner
from tools.errors import DeployError, GatewayError, InstanceCreationError
from tools.misc import retry_till_success

logger = logging.getLogger(__name__)

_BPMN_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<bpmn:definitions xmlns:bpmn="http://www.omg.org/spec/BPMN/20100524/MODEL"
                  xmlns:zeebe="http://camunda.org/schema/zeebe/1.0"
                  id="definitions-{process_id}"
                  targetNamespace="http://bpmn.io/schema/bpmn">
  <bpmn:process id="{process_id}" isExecutable="true">
    <bpmn:startEvent id="start">
      <bpmn:outgoing>flow-start</bpmn:outgoing>
    </bpmn:startEvent>
{elements}
    <bpmn:endEvent id="end">
      <bpmn:incoming>{last_flow}</bpmn:incoming>
    </bpmn:endEvent>
  </bpmn:process>
</bpmn:definitions>
"""

_TASK_TEMPLATE = """    <bpmn:sequenceFlow id="{incoming}" sourceRef="{source}" targetRef="{task_id}" />
    <bpmn:serviceTask id="{task_id}">
      <bpmn:extensionElements>
        <zeebe:taskDefinition type="{job_type}" />
      </bpmn:extensionElements>
      <bpmn:incoming>{incoming}</bpmn:incoming>
      <bpmn:outgoing>{outgoing}</bpmn:outgoing>
    </bpmn:serviceTask>"""

_END_FLOW_TEMPLATE = """    <bpmn:sequenceFlow id="{incoming}" sourceRef="{source}" targetRef="end" />"""


class ProcessDefinition(namedtuple('_ProcessDefinition', ('bpmn_process_id', 'resource_name', 'job_types'))):
    """
    A process of service tasks executed one after the other; task i has id task<i+1> and
    job type job_types[i].
    """

    def to_bpmn(self):
        elements = []
        source = 'start'
        incoming = 'flow-start'
        for i, job_type in enumerate(self.job_types, 1):
            task_id = 'task{}'.format(i)
            outgoing = 'flow-{}'.format(task_id)
            elements.append(_TASK_TEMPLATE.format(incoming=incoming, source=source, task_id=task_id,
                                                  job_type=job_type, outgoing=outgoing))
            source, incoming = task_id, outgoing
        elements.append(_END_FLOW_TEMPLATE.format(incoming=incoming, source=source))
        return _BPMN_TEMPLATE.format(process_id=self.bpmn_process_id, elements='\n'.join(elements),
                                     last_flow=incoming)


PROCESS = ProcessDefinition(bpmn_process_id='process', resource_name='process.bpmn',
                            job_types=('firstTask', 'secondTask'))


class JobLog(object):
    """
    Append-only record of processed job types per process instance key. Safe to call from any
    number of worker threads; appends for one instance keep the order in which they happened.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._jobs = {}

    def __call__(self, job):
        self.record(job)

    def record(self, job):
        with self._lock:
            self._jobs.setdefault(job.process_instance_key, []).append(job.type)

    def sequences(self):
        with self._lock:
            return dict((key, list(types)) for key, types in self._jobs.items())

    def __len__(self):
        with self._lock:
            return len(self._jobs)


class WorkDriver(object):

    def __init__(self, client, definition=PROCESS, variables=None, deploy_timeout=10, creation_timeout=5,
                 creation_poll_interval=0.1, poll_interval=0.1, job_timeout_ms=30000, request_timeout_ms=1000,
                 max_jobs=32):
        self.client = client
        self.definition = definition
        self.variables = {'foo': 'bar'} if variables is None else variables
        self.deploy_timeout = deploy_timeout
        self.creation_timeout = creation_timeout
        self.creation_poll_interval = creation_poll_interval
        # back-off of job workers between failed activations and completions
        self.poll_interval = poll_interval
        self.job_timeout_ms = job_timeout_ms
        self.request_timeout_ms = request_timeout_ms
        self.max_jobs = max_jobs

    def deploy(self, definition=None):
        definition = definition or self.definition
        logger.debug("deploying {} through {}".format(definition.resource_name, self.client))
        try:
            return self.client.deploy_resource(definition.resource_name, definition.to_bpmn(),
                                               timeout=self.deploy_timeout)
        except GatewayError as e:
            raise DeployError("{} was not acknowledged within {}s: {}".format(
                definition.resource_name, self.deploy_timeout, e))

    def try_create_instance(self):
        try:
            return self.client.create_process_instance(self.definition.bpmn_process_id, version=-1,
                                                       variables=self.variables)
        except GatewayError as e:
            raise InstanceCreationError("could not create an instance of {}: {}".format(
                self.definition.bpmn_process_id, e))

    def create_instance(self, timeout=None):
        """
        Create an instance of the latest deployed version. Deployments reach the partitions
        asynchronously, so a rejection right after deploying is retried until timeout seconds
        have passed; only then is InstanceCreationError raised.
        """
        timeout = self.creation_timeout if timeout is None else timeout
        key = retry_till_success(self.try_create_instance,
                                 timeout=timeout,
                                 bypassed_exception=InstanceCreationError,
                                 poll_interval=self.creation_poll_interval)
        logger.debug("created process instance {}".format(key))
        return key

    def _complete(self, job):
        retry_till_success(self.client.complete_job, job.key,
                           timeout=self.job_timeout_ms / 1000.0,
                           bypassed_exception=GatewayError,
                           poll_interval=self.poll_interval)

    def _job_poller(self, job_type, on_job, worker_name):
        def poll(iteration):
            try:
                jobs = self.client.activate_jobs(job_type, worker_name, self.max_jobs,
                                                 self.job_timeout_ms, self.request_timeout_ms)
            except GatewayError as e:
                logger.debug("{} could not activate jobs (poll #{}): {}".format(worker_name, iteration, e))
                time.sleep(self.poll_interval)
                return

            for job in jobs:
                logger.debug("{} activated job {} of instance {}".format(worker_name, job.key,
                                                                        job.process_instance_key))
                on_job(job)
                self._complete(job)
        return poll

    def run_worker(self, job_type, on_job, worker_name=None):
        """
        Start a background worker for job_type. Every job it activates is passed to on_job and
        then completed. Returns the started Runner; stop() it when done.
        """
        worker_name = worker_name or '{}-worker'.format(job_type)
        runner = Runner(self._job_poller(job_type, on_job, worker_name), name=worker_name)
        runner.start()
        return runner
