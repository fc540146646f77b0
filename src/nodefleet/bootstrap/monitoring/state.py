# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/monitoring/state.py

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from nodefleet.errors import InvalidTransitionError


class MonitoringState(str, Enum):
    ABSENT = "absent"
    PENDING = "pending"     # instance allocated, not yet serving
    ACTIVE = "active"


@dataclass(frozen=True)
class MonitoringFacility:
    """
    A cluster's monitoring host. Transitions return a new facility:

        ABSENT  -> PENDING        new instance allocated
        PENDING -> ACTIVE(node)   new instance bootstrapped
        ABSENT  -> ACTIVE(node)   reuse of a recorded instance
    """
    state: MonitoringState = MonitoringState.ABSENT
    node_id: Optional[str] = None

    def __post_init__(self):
        if self.state is MonitoringState.ABSENT and self.node_id is not None:
            raise ValueError("an absent monitoring facility has no node")
        if self.state is not MonitoringState.ABSENT and not self.node_id:
            raise ValueError(f"a {self.state.value} monitoring facility needs a node id")

    @classmethod
    def absent(cls) -> "MonitoringFacility":
        return cls()

    @classmethod
    def from_recorded(cls, node_id: Optional[str], state: Optional[str] = None) -> "MonitoringFacility":
        """
        Facility as persisted in the topology. A node recorded as pending
        never finished its setup; one with no recorded state is active.
        """
        if not node_id:
            return cls.absent()
        if state == MonitoringState.PENDING.value:
            return cls.absent().allocate(node_id)
        return cls.absent().activate(node_id)

    def allocate(self, node_id: str) -> "MonitoringFacility":
        if self.state is not MonitoringState.ABSENT:
            raise InvalidTransitionError(f"cannot allocate monitoring host from {self.describe()}")
        return MonitoringFacility(MonitoringState.PENDING, node_id)

    def activate(self, node_id: str) -> "MonitoringFacility":
        if self.state is MonitoringState.ACTIVE:
            raise InvalidTransitionError(f"monitoring host already {self.describe()}")
        if self.state is MonitoringState.PENDING and node_id != self.node_id:
            raise InvalidTransitionError(f"cannot activate {node_id}: pending host is {self.node_id}")
        return MonitoringFacility(MonitoringState.ACTIVE, node_id)

    @property
    def is_active(self) -> bool:
        return self.state is MonitoringState.ACTIVE

    @property
    def is_pending(self) -> bool:
        return self.state is MonitoringState.PENDING

    @property
    def has_host(self) -> bool:
        return self.state is not MonitoringState.ABSENT

    def describe(self) -> str:
        if self.node_id:
            return f"{self.state.value}({self.node_id})"
        return self.state.value
