"""Human-in-the-loop approval gates.

A gate is opened with :meth:`ApprovalGateManager.request_approval`, which
returns an awaitable :class:`ApprovalHandle`. The handle resolves exactly once:
on a decision, on cancellation, or when the gate times out. Cancellation and
timeout always resolve as a denial, never as an approval.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..contracts import ApprovalDecision, ApprovalGate, ApprovalRequest, utcnow
from ..errors import DuplicateGate, GateNotFound

logger = logging.getLogger(__name__)

ApprovalListener = Callable[[ApprovalGate], Any]


@dataclass
class _PendingGate:
    gate: ApprovalGate
    future: asyncio.Future
    loop: asyncio.AbstractEventLoop
    timer: Optional[asyncio.TimerHandle] = None
    deadline: Optional[float] = None


class ApprovalHandle:
    """Awaitable, cancellable handle on a pending approval gate."""

    def __init__(
        self, manager: "ApprovalGateManager", gate: ApprovalGate, future: asyncio.Future
    ) -> None:
        self._manager = manager
        self._future = future
        self.gate = gate

    @property
    def gate_id(self) -> str:
        return self.gate.gate_id

    def done(self) -> bool:
        return self._future.done()

    def cancel(self, reason: str = "Approval cancelled") -> bool:
        return self._manager.cancel_approval(self.gate_id, reason=reason)

    async def wait(self) -> ApprovalDecision:
        """Wait for the decision.

        Cancelling the waiting task cancels the gate as well.
        """
        try:
            return await asyncio.shield(self._future)
        except asyncio.CancelledError:
            self._manager.cancel_approval(self.gate_id, reason="Waiter cancelled")
            raise

    def __await__(self):
        return self.wait().__await__()


class ApprovalGateManager:
    """Track pending approval gates and deliver decisions to their waiters."""

    def __init__(
        self,
        default_timeout: Optional[float] = None,
        on_request: Optional[ApprovalListener] = None,
    ) -> None:
        self._default_timeout = default_timeout
        self._on_request = on_request
        self._pending: Dict[str, _PendingGate] = {}
        self._active: Dict[Tuple[str, int], str] = {}
        self._lock = threading.Lock()

    def request_approval(
        self, workflow_id: str, request: ApprovalRequest | dict
    ) -> ApprovalHandle:
        """Open a gate for ``workflow_id`` and return a handle to await.

        Must be called from a running event loop.
        """
        if not isinstance(request, ApprovalRequest):
            request = ApprovalRequest.model_validate(request)
        loop = asyncio.get_running_loop()
        timeout = request.timeout or self._default_timeout
        key = (workflow_id, request.step_index)

        with self._lock:
            if key in self._active:
                raise DuplicateGate(workflow_id, request.step_index)
            gate = ApprovalGate(
                workflow_id=workflow_id,
                step_index=request.step_index,
                step_name=request.step_name,
                requested_data=dict(request.data),
                timeout=timeout,
            )
            pending = _PendingGate(gate=gate, future=loop.create_future(), loop=loop)
            if timeout:
                pending.deadline = loop.time() + timeout
                pending.timer = loop.call_at(pending.deadline, self._expire, gate.gate_id)
            self._pending[gate.gate_id] = pending
            self._active[key] = gate.gate_id

        logger.info(
            f"Approval requested for workflow {workflow_id} step {request.step_index} "
            f"({request.step_name}), gate {gate.gate_id}"
        )
        if self._on_request is not None:
            try:
                self._on_request(gate.model_copy(deep=True))
            except Exception:
                logger.exception(f"Approval listener failed for gate {gate.gate_id}")
        return ApprovalHandle(self, gate, pending.future)

    def provide_decision(
        self, gate_id: str, decision: ApprovalDecision | dict
    ) -> ApprovalGate:
        """Resolve a pending gate. Raises :class:`GateNotFound` otherwise."""
        if not isinstance(decision, ApprovalDecision):
            decision = ApprovalDecision.model_validate(decision)
        pending = self._take(gate_id)
        if pending is None:
            raise GateNotFound(gate_id)
        return self._settle(pending, decision)

    def cancel_approval(self, gate_id: str, reason: str = "Approval cancelled") -> bool:
        pending = self._take(gate_id)
        if pending is None:
            return False
        self._settle(
            pending, ApprovalDecision(approved=False, reason=reason, outcome="cancelled")
        )
        return True

    def clear_workflow_approvals(self, workflow_id: str) -> int:
        """Cancel every pending gate of ``workflow_id``; return how many."""
        gate_ids = [gate.gate_id for gate in self.get_pending_approvals(workflow_id)]
        cleared = sum(
            1
            for gate_id in gate_ids
            if self.cancel_approval(gate_id, reason="Workflow approvals cleared")
        )
        if cleared:
            logger.info(f"Cleared {cleared} pending approval(s) for workflow {workflow_id}")
        return cleared

    def get_pending_approvals(self, workflow_id: Optional[str] = None) -> List[ApprovalGate]:
        with self._lock:
            gates = [p.gate.model_copy(deep=True) for p in self._pending.values()]
        if workflow_id:
            gates = [gate for gate in gates if gate.workflow_id == workflow_id]
        return gates

    def get_gate(self, gate_id: str) -> Optional[ApprovalGate]:
        with self._lock:
            pending = self._pending.get(gate_id)
            return pending.gate.model_copy(deep=True) if pending else None

    # ------------------------------------------------------------------
    def _take(self, gate_id: str) -> Optional[_PendingGate]:
        """Remove a pending gate; only one caller can ever win it."""
        with self._lock:
            pending = self._pending.pop(gate_id, None)
            if pending is not None:
                self._active.pop((pending.gate.workflow_id, pending.gate.step_index), None)
            return pending

    def _expire(self, gate_id: str) -> None:
        with self._lock:
            pending = self._pending.get(gate_id)
        if pending is None:
            return
        if pending.deadline is not None and pending.loop.time() < pending.deadline:
            pending.timer = pending.loop.call_at(pending.deadline, self._expire, gate_id)
            return
        pending = self._take(gate_id)
        if pending is None:
            return
        logger.warning(f"Approval gate {gate_id} timed out after {pending.gate.timeout}s")
        self._settle(
            pending,
            ApprovalDecision(approved=False, reason="Approval timeout", outcome="timed_out"),
        )

    def _settle(self, pending: _PendingGate, decision: ApprovalDecision) -> ApprovalGate:
        if pending.timer is not None:
            pending.timer.cancel()
        gate = pending.gate
        gate.resolution = "approved" if decision.approved else "denied"
        gate.resolved_at = utcnow()
        gate.resolved_by = decision.user_id
        gate.reason = decision.reason
        logger.info(
            f"Approval gate {gate.gate_id} resolved as {decision.outcome}"
            + (f": {decision.reason}" if decision.reason else "")
        )

        def deliver() -> None:
            if not pending.future.done():
                pending.future.set_result(decision)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is pending.loop:
            deliver()
        else:
            pending.loop.call_soon_threadsafe(deliver)
        return gate.model_copy(deep=True)
