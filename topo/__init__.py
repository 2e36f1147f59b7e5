"""Service Topology Orchestrator (topo).

Single-node orchestrator for a declared set of interdependent services:
 - dependency-ordered, level-parallel startup with cycle detection
 - resource reservation for GPU, CPU and memory
 - health probing (http / tcp / exec) with restart policies
 - port-to-service TLS reverse proxy that only forwards to healthy targets
"""
from .descriptors import DescriptorStore, ServiceDescriptor, load_compose, load_file
from .errors import CyclicDependency, DependencyFailed, ResourceExhausted, TopologyError
from .graph import DependencyGraph
from .orchestrator import Orchestrator

__all__ = [
    "CyclicDependency",
    "DependencyFailed",
    "DependencyGraph",
    "DescriptorStore",
    "Orchestrator",
    "ResourceExhausted",
    "ServiceDescriptor",
    "TopologyError",
    "load_compose",
    "load_file",
]
