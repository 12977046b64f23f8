"""
btmesh-operator Reconciler Package

Drives registry intent and gateway-observed state of mesh nodes to agreement.
"""
from .state_machine import Action, Decision, Outcome, plan
from .device_table import DeviceState, DeviceTable
from .dispatcher import CommandDispatcher
from .correlator import AckCorrelator
from .loop import ReconcileLoop, TickReport
from .engine import Operator

__all__ = [
    "Action",
    "Decision",
    "Outcome",
    "plan",
    "DeviceState",
    "DeviceTable",
    "CommandDispatcher",
    "AckCorrelator",
    "ReconcileLoop",
    "TickReport",
    "Operator",
]
