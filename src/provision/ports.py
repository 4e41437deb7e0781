"""Port reclamation.

Frees a TCP port by terminating whatever is listening on it: SIGTERM first,
then SIGKILL for anything that survives the grace period. Used for the
server's own port (idempotent restart) and for port 80 while an ACME
HTTP-01 challenge is served.
"""

import logging
import os
import signal
import time
from dataclasses import dataclass, field
from typing import Callable

import psutil

from provision.base import PortBusyError, ProvisioningError

logger = logging.getLogger(__name__)

GRACE_PERIOD = 2.0
KILL_GRACE_PERIOD = 1.0

# Placeholder pid for a listener whose owner cannot be seen; never signalled
UNKNOWN_PID = 0


@dataclass(frozen=True)
class PortOccupant:
    """A process listening on a port."""

    pid: int
    name: str

    def __str__(self) -> str:
        return f"{self.name} (PID {self.pid})"


@dataclass
class ReclaimResult:
    """Outcome of a reclaim attempt."""

    port: int
    success: bool
    remaining: list = field(default_factory=list)
    signalled: list = field(default_factory=list)


def _describe_process(pid: int) -> str:
    try:
        return psutil.Process(pid).name() or "?"
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return "?"


def list_port_occupants(port: int) -> list[PortOccupant]:
    """List processes listening on a TCP port, excluding this process.

    Recomputed on every call; never cached.

    Raises:
        ProvisioningError: If socket ownership cannot be inspected
    """
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied as e:
        raise ProvisioningError("P101", f"Cannot inspect sockets on port {port}: {e}")

    own_pid = os.getpid()
    listeners = [
        conn for conn in connections
        if conn.laddr
        and conn.laddr.port == port
        and conn.status == psutil.CONN_LISTEN
    ]
    pids = sorted({conn.pid for conn in listeners if conn.pid and conn.pid != own_pid})
    occupants = [PortOccupant(pid=pid, name=_describe_process(pid)) for pid in pids]

    # psutil reports pid=None for sockets owned by other users when unprivileged
    if any(conn.pid is None for conn in listeners):
        occupants.append(PortOccupant(pid=UNKNOWN_PID, name="unknown owner"))
    return occupants


class PortReclaimer:
    """Free a port by signalling the processes holding it."""

    def __init__(
        self,
        grace_period: float = GRACE_PERIOD,
        kill_grace_period: float = KILL_GRACE_PERIOD,
        lister: Callable[[int], list] = list_port_occupants,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.grace_period = grace_period
        self.kill_grace_period = kill_grace_period
        self.lister = lister
        self.sleep = sleep

    def occupants(self, port: int) -> list[PortOccupant]:
        return self.lister(port)

    def reclaim(self, port: int) -> ReclaimResult:
        """Terminate the processes on a port.

        SIGTERM, wait grace_period, re-check; SIGKILL survivors, wait
        kill_grace_period, re-check once more.

        Returns:
            ReclaimResult; success only if the port ends up unoccupied
        """
        occupants = self.occupants(port)
        if not occupants:
            logger.debug("Port %d is free", port)
            return ReclaimResult(port=port, success=True)

        signalled: list = []
        logger.info("Port %d in use by %s, sending SIGTERM", port, _join(occupants))
        self._signal(occupants, signal.SIGTERM, signalled)
        self.sleep(self.grace_period)

        occupants = self.occupants(port)
        if occupants:
            logger.warning("Port %d still in use by %s, sending SIGKILL", port, _join(occupants))
            self._signal(occupants, signal.SIGKILL, signalled)
            self.sleep(self.kill_grace_period)
            occupants = self.occupants(port)

        if occupants:
            logger.error("Failed to free port %d: %s", port, _join(occupants))
            return ReclaimResult(port=port, success=False, remaining=occupants, signalled=signalled)

        logger.info("Port %d freed", port)
        return ReclaimResult(port=port, success=True, signalled=signalled)

    def ensure_free(self, port: int) -> ReclaimResult:
        """Reclaim a port, raising if it is still occupied afterwards.

        Raises:
            PortBusyError: With the remaining occupants
        """
        result = self.reclaim(port)
        if not result.success:
            raise PortBusyError(port, result.remaining)
        return result

    def _signal(self, occupants: list, sig: signal.Signals, signalled: list) -> None:
        for occupant in occupants:
            if occupant.pid == UNKNOWN_PID:
                logger.warning("Cannot signal the unknown owner of the port")
                continue
            try:
                os.kill(occupant.pid, sig)
            except ProcessLookupError:
                continue  # Exited on its own
            except PermissionError:
                logger.warning("Not permitted to signal %s", occupant)
                continue
            signalled.append((occupant.pid, sig))


def _join(occupants: list) -> str:
    return ", ".join(str(o) for o in occupants)
