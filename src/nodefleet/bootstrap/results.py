# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nodefleet/bootstrap/results.py

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class ResultsNotSealedError(RuntimeError):
    pass


class DuplicateOutcomeError(RuntimeError):
    pass


@dataclass(frozen=True)
class NodeOutcome:
    node_id: str
    stage: Optional[str] = None          # stage that failed; None on success
    error: Optional[BaseException] = None
    result: Any = None
    elapsed_s: float = 0.0
    finished_at: float = 0.0             # time.monotonic() when recorded

    @property
    def ok(self) -> bool:
        return self.error is None

    def describe(self) -> str:
        if self.ok:
            return "OK"
        where = f" at {self.stage}" if self.stage else ""
        return f"FAILED{where}: {self.error}"


class NodeResults:
    """
    Write-once outcome store shared by the per-host workers of one phase.

    Writers call add_result() concurrently. Readers only get at the data
    after seal(), which the fan-out calls once every worker has finished.
    """

    def __init__(self, phase: str = ""):
        self.phase = phase
        self._lock = threading.Lock()
        self._outcomes: Dict[str, NodeOutcome] = {}
        self._order: List[str] = []
        self._sealed = False

    # ------------------ writers ------------------

    def add(self, outcome: NodeOutcome) -> None:
        with self._lock:
            if self._sealed:
                raise ResultsNotSealedError(f"[{self.phase}] results already sealed, cannot add {outcome.node_id}")
            if outcome.node_id in self._outcomes:
                raise DuplicateOutcomeError(f"[{self.phase}] outcome for {outcome.node_id} already recorded")
            self._outcomes[outcome.node_id] = outcome
            self._order.append(outcome.node_id)

    def add_result(
        self,
        node_id: str,
        result: Any = None,
        err: Optional[BaseException] = None,
        *,
        stage: Optional[str] = None,
        elapsed_s: float = 0.0,
        finished_at: float = 0.0,
    ) -> None:
        self.add(
            NodeOutcome(
                node_id=node_id,
                stage=stage if err is not None else None,
                error=err,
                result=result,
                elapsed_s=elapsed_s,
                finished_at=finished_at,
            )
        )

    def seal(self) -> "NodeResults":
        with self._lock:
            self._sealed = True
        return self

    @property
    def sealed(self) -> bool:
        return self._sealed

    # ------------------ readers ------------------

    def _require_sealed(self) -> None:
        if not self._sealed:
            raise ResultsNotSealedError(f"[{self.phase}] results read before all workers finished")

    def __len__(self) -> int:
        self._require_sealed()
        return len(self._outcomes)

    def __contains__(self, node_id: str) -> bool:
        self._require_sealed()
        return node_id in self._outcomes

    def get(self, node_id: str) -> Optional[NodeOutcome]:
        self._require_sealed()
        return self._outcomes.get(node_id)

    def outcomes(self) -> List[NodeOutcome]:
        """Outcomes in the order they were recorded."""
        self._require_sealed()
        return [self._outcomes[n] for n in self._order]

    def has_node_error(self, node_id: str) -> bool:
        self._require_sealed()
        o = self._outcomes.get(node_id)
        return o is not None and not o.ok

    def has_errors(self) -> bool:
        self._require_sealed()
        return any(not o.ok for o in self._outcomes.values())

    def get_error_host_map(self) -> Dict[str, BaseException]:
        self._require_sealed()
        return {n: o.error for n, o in self._outcomes.items() if o.error is not None}

    def failed_nodes(self) -> List[str]:
        self._require_sealed()
        return sorted(n for n, o in self._outcomes.items() if not o.ok)

    def succeeded_nodes(self) -> List[str]:
        self._require_sealed()
        return sorted(n for n, o in self._outcomes.items() if o.ok)

    def summary(self) -> str:
        self._require_sealed()
        failed = len(self.failed_nodes())
        return f"OK={len(self._outcomes) - failed} FAILED={failed}"
