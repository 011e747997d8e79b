"""
Approval gates for onboarding.

Admitting a new service is an asynchronous capability: the authority awaits
``request_approval`` holding at most the lock of the name being admitted.
How the decision is taken is pluggable. The default is an operator queue
served over the admin API.
"""

import asyncio
import logging
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, TextIO, Tuple

from .config import Settings
from .util import generate_id, now_epoch, utc_rfc3339

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalRequest:
    service_name: str
    service_id: str
    owner: str = ""
    description: str = ""
    addresses: Any = None
    can_write_data: bool = False
    reason: str = "new_service"  # new_service | reauthentication
    request_id: str = field(default_factory=generate_id)
    requested_at: int = field(default_factory=now_epoch)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "serviceName": self.service_name,
            "serviceId": self.service_id,
            "owner": self.owner,
            "description": self.description,
            "addresses": self.addresses,
            "canWriteData": self.can_write_data,
            "reason": self.reason,
            "requestedAt": utc_rfc3339(self.requested_at),
        }


class ApprovalGate(ABC):
    """Decides whether a service may be admitted."""

    @abstractmethod
    async def request_approval(self, request: ApprovalRequest) -> bool:
        pass

    def pending(self) -> List[ApprovalRequest]:
        """Requests still awaiting a decision. Only the queue gate has any."""
        return []

    def resolve(self, request_id: str, approved: bool) -> bool:
        """Decide a pending request. Returns False if no such request is waiting."""
        return False


class QueuedApprovalGate(ApprovalGate):
    """
    Parks each request on a future until an operator resolves it.

    ``resolve`` may be called from any thread; the decision is handed to the
    waiting event loop with ``call_soon_threadsafe``. A request that is
    abandoned (timeout, client disconnect) leaves the queue.
    """

    def __init__(self):
        self._pending: Dict[str, Tuple[ApprovalRequest, asyncio.Future, asyncio.AbstractEventLoop]] = {}
        self._lock = threading.Lock()

    async def request_approval(self, request: ApprovalRequest) -> bool:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        with self._lock:
            self._pending[request.request_id] = (request, future, loop)
        logger.info("approval %s queued for %s (%s)", request.request_id, request.service_name, request.reason)
        try:
            return await future
        finally:
            with self._lock:
                self._pending.pop(request.request_id, None)

    def pending(self) -> List[ApprovalRequest]:
        with self._lock:
            return sorted((entry[0] for entry in self._pending.values()), key=lambda r: r.requested_at)

    def resolve(self, request_id: str, approved: bool) -> bool:
        with self._lock:
            entry = self._pending.get(request_id)
        if entry is None:
            return False
        _, future, loop = entry

        def _set():
            if not future.done():
                future.set_result(bool(approved))

        loop.call_soon_threadsafe(_set)
        return True


class ConsoleApprovalGate(ApprovalGate):
    """
    Asks an operator at the terminal. Prompts are serialized.

    A worker thread blocked in ``input`` cannot be cancelled. When the
    authority stops waiting, the request is flagged abandoned; the answer
    typed at its prompt is discarded and the next request is prompted afresh.
    """

    def __init__(self, input_func: Callable[[str], str] = input, output: Optional[TextIO] = None):
        self._input = input_func
        self._output = output or sys.stdout
        self._prompt_lock = threading.Lock()

    def _ask(self, request: ApprovalRequest, abandoned: threading.Event) -> Optional[bool]:
        with self._prompt_lock:
            if abandoned.is_set():
                return None
            print(
                f"\nService '{request.service_name}' ({request.service_id}) requests "
                f"{'re-authentication' if request.reason == 'reauthentication' else 'registration'}\n"
                f"  owner: {request.owner or '-'}\n"
                f"  description: {request.description or '-'}\n"
                f"  addresses: {request.addresses if request.addresses is not None else '-'}\n"
                f"  write access: {'yes' if request.can_write_data else 'no'}",
                file=self._output,
            )
            answer = self._input("Approve? (y/n): ")
            if abandoned.is_set():
                print(f"Answer for '{request.service_name}' ignored: the request expired", file=self._output)
                return None
        return answer.strip().lower() in ("y", "yes", "s", "si")

    async def request_approval(self, request: ApprovalRequest) -> bool:
        abandoned = threading.Event()
        try:
            return await asyncio.to_thread(self._ask, request, abandoned)
        except asyncio.CancelledError:
            abandoned.set()
            logger.warning("console approval for %s abandoned", request.service_name)
            raise


class StaticApprovalGate(ApprovalGate):
    """Always returns the same answer."""

    def __init__(self, approve: bool):
        self._approve = approve

    async def request_approval(self, request: ApprovalRequest) -> bool:
        return self._approve


def get_approval_gate(settings: Settings) -> ApprovalGate:
    """
    Factory function to get the configured approval gate.

    Uses settings.approval_mode:
    - "queue" (default): operator decides over the admin API
    - "console": interactive prompt on the CA's terminal
    - "auto_approve" / "auto_deny": fixed answer
    """
    mode = settings.approval_mode
    if mode == "console":
        return ConsoleApprovalGate()
    if mode == "auto_approve":
        return StaticApprovalGate(True)
    if mode == "auto_deny":
        return StaticApprovalGate(False)
    return QueuedApprovalGate()
