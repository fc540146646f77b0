# src/nodefleet/bootstrap/node/interface.py

from __future__ import annotations
from typing import Protocol, Sequence

from nodefleet.bootstrap.results import NodeResults
from .models import Host, NodeBootstrapOptions


class NodeBootstrapper(Protocol):
    """
    Contract for turning ready instances into running nodes over SSH.
    Implementations should be idempotent and safe to re-run.
    """

    def bootstrap(self, hosts: Sequence[Host], options: NodeBootstrapOptions) -> NodeResults:
        """
        Run the node pipeline on every host. A failing host stops at its
        failing stage; the others carry on. Returns the sealed results.
        """
        ...
