"""
The Supervisor package.
Manages the lifecycle of the local Ollama service.

This package contains the central ServiceSupervisor class and its helper
modules, which together handle locating the binary, starting, stopping and
monitoring the service, and publishing its status to subscribers.
"""
from .errors import ErrorKind, SignalError, SupervisorError
from .events import EventChannel, EventKind, Subscription, SubscriptionGroup
from .locator import BinaryLocator
from .probe import ProcessProbe, SignalKind, select_probe
from .state import ResourceSample, ServiceResult, ServiceState, StatusReport
from .supervisor import ServiceSupervisor

__all__ = [
    'ServiceSupervisor', 'ServiceState', 'ServiceResult', 'StatusReport', 'ResourceSample',
    'ErrorKind', 'SignalError', 'SupervisorError',
    'EventChannel', 'EventKind', 'Subscription', 'SubscriptionGroup',
    'BinaryLocator', 'ProcessProbe', 'SignalKind', 'select_probe',
]
