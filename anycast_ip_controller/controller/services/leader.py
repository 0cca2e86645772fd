import logging
import socket
import uuid
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from kubernetes_asyncio import client
from kubernetes_asyncio.leaderelection import electionconfig
from kubernetes_asyncio.leaderelection.leaderelection import LeaderElection
from kubernetes_asyncio.leaderelection.resourcelock.leaselock import LeaseLock

from anycast_ip_controller.exceptions import ConfigError

logger = logging.getLogger(__name__)


class LeadershipStatus(ABC):
    """Answers whether this replica currently holds the controller leadership."""

    @abstractmethod
    def is_leader(self) -> bool:
        ...


class StaticLeadership(LeadershipStatus):
    """Fixed leadership, used when leader election is disabled."""

    def __init__(self, leader: bool = True) -> None:
        self._leader = leader

    def is_leader(self) -> bool:
        return self._leader


class LeaseLeaderElector(LeadershipStatus):
    """Leader election on a `coordination.k8s.io/v1` Lease object.

    `run` returns once the lease could not be renewed within the renew deadline, and raises when
    the election itself fails, e.g. on the API server being unreachable. In both cases the
    leadership is over for good, the process is expected to exit and start over.
    """

    def __init__(
        self,
        api_client: client.ApiClient,
        *,
        name: str,
        namespace: str,
        lease_duration: timedelta,
        renew_deadline: timedelta,
        retry_period: timedelta,
        identity: Optional[str] = None,
    ) -> None:
        self._name = name
        self._namespace = namespace
        self._lease_duration = lease_duration
        self._renew_deadline = renew_deadline
        self._retry_period = retry_period

        self.identity = identity or f"{socket.gethostname()}_{uuid.uuid4()}"

        self._lock = LeaseLock(name, namespace, self.identity, api_client)
        self._on_started_leading: Optional[Callable[[], Awaitable[None]]] = None

        self._is_leader = False
        self._is_finished = False

        # validates the durations upfront, the config is rebuilt with callbacks on `run`
        self._create_election_config()

    def __str__(self) -> str:
        return f"lease `{self._namespace}/{self._name}`"

    def is_leader(self) -> bool:
        return self._is_leader

    def _create_election_config(self) -> electionconfig.Config:
        try:
            return electionconfig.Config(
                self._lock,
                lease_duration=self._lease_duration.total_seconds(),
                renew_deadline=self._renew_deadline.total_seconds(),
                retry_period=self._retry_period.total_seconds(),
                onstarted_leading=self._started_leading,
                onstopped_leading=self._stopped_leading,
            )
        except ValueError as e:
            raise ConfigError(f"Invalid leader election settings: {e}") from e

    async def run(self, on_started_leading: Callable[[], Awaitable[None]]) -> None:
        """Acquire the lease, call `on_started_leading` and keep renewing the lease.

        Leadership is reported only between acquiring the lease and the end of this call."""

        if self._is_finished:
            raise RuntimeError(f"Leader election on {self} already finished")

        self._on_started_leading = on_started_leading

        logger.info("Acquiring %s as `%s`...", self, self.identity)

        try:
            await LeaderElection(self._create_election_config()).run()
        finally:
            self._is_finished = True

            if self._is_leader:
                logger.error("Holding %s as `%s` failed, leadership lost!", self, self.identity)

            self._is_leader = False

    async def _started_leading(self) -> None:
        # scheduled as a task by the election, which may have finished in the meantime
        if self._is_finished:
            return

        self._is_leader = True

        logger.info("Acquiring %s as `%s` done", self, self.identity)

        await self._on_started_leading()

    async def _stopped_leading(self) -> None:
        self._is_leader = False

        logger.error(
            "Renewing %s failed for longer than `%s`, leadership lost!",
            self,
            self._renew_deadline,
        )
