#!/usr/bin/env python3
"""
Droplet Lifecycle Controller — one on-demand Minecraft droplet

Owns the single in-memory state machine for the game server droplet:

    down -> starting -> up -> stopping -> down
                 \\-> weird (provisioning failed / never became active)
    up | weird -> stopping (stop is also the recovery path for weird)

Creation asks DigitalOcean for a droplet, polls it until it is active
with a public address, then runs the provisioning script over one SSH
session. Teardown stops the service over SSH (best effort) and deletes
the droplet. Nothing is persisted: a restart always begins at "down".

Usage:
    controller = DropletController.from_config(load_config())
    ready = await controller.create_server()
    if ready is not None:
        state = await ready          # LifecycleState.UP or WEIRD
    await controller.stop_server()
"""

import asyncio
import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from .config import DropletConfig
from .digitalocean import DigitalOceanClient, DropletInfo
from .errors import CreationError, ProvisioningError, SSHConnectionError, TeardownCommandError
from .observability import TransitionRecord
from .scheduler import PollSchedule, Scheduler
from .ssh import RemoteExecutor

logger = logging.getLogger(__name__)


class LifecycleState(Enum):
    """Controller's belief about the droplet."""
    DOWN = "down"
    STARTING = "starting"
    UP = "up"
    STOPPING = "stopping"
    WEIRD = "weird"


# Commands to run on a fresh droplet to make it a minecraft server
PROVISIONING_SCRIPT = (
    "mkdir -p /mnt/discord_mcserver",
    "mount /dev/sda /mnt/discord_mcserver",
    "apt install openjdk-11-jre-headless -y",
    "ufw allow 25565/tcp",
    "ufw allow 25565/udp",
    "useradd --home-dir /mnt/discord_mcserver/minecraft --uid=10001 minecraft",
    "cp /mnt/discord_mcserver/minecraft.service /etc/systemd/system/minecraft.service",
    "systemctl daemon-reload",
    "systemctl enable --now minecraft.service",
)

STOP_COMMAND = "systemctl stop minecraft"


@dataclass(frozen=True)
class ServerStatus:
    """Snapshot returned by ``get_status``."""
    state: LifecycleState
    ipv4: Optional[str] = None
    droplet_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "ipv4": self.ipv4,
            "droplet_id": self.droplet_id,
        }


class DropletController:
    """
    State machine for the game droplet.

    Every guarded transition is a compare-and-set under one lock, so two
    concurrent ``create_server`` calls can never both leave "down".
    Cloud and SSH calls block, so they run in worker threads.
    """

    def __init__(
        self,
        cloud: DigitalOceanClient,
        executor: RemoteExecutor,
        schedule: PollSchedule = None,
        scheduler: Scheduler = None,
        provisioning_script: Iterable[str] = PROVISIONING_SCRIPT,
        history_size: int = 100,
    ):
        self._cloud = cloud
        self._executor = executor
        self._schedule = schedule or PollSchedule()
        self._scheduler = scheduler or Scheduler()
        self._script = tuple(provisioning_script)

        self._lock = threading.Lock()
        self._state = LifecycleState.DOWN
        self._droplet_id: Optional[int] = None
        self._ipv4: Optional[str] = None
        self._history: deque = deque(maxlen=history_size)
        self._tasks: set = set()

    @classmethod
    def from_config(cls, config: DropletConfig) -> "DropletController":
        config.require_token()
        return cls(
            cloud=DigitalOceanClient(config.digitalocean),
            executor=RemoteExecutor(
                username=config.ssh.username,
                key_path=config.ssh.private_key_path or None,
                port=config.ssh.port,
                timeout=config.ssh.timeout_sec,
            ),
            schedule=PollSchedule(
                interval=config.lifecycle.poll_interval_sec,
                timeout=config.lifecycle.poll_timeout,
            ),
            history_size=config.lifecycle.history_size,
        )

    # ── State Machine ────────────────────────────────────────────

    def _transition(
        self,
        allowed: Iterable[LifecycleState],
        new_state: LifecycleState,
        reason: str,
        droplet_id: Optional[int] = None,
        release: bool = False,
    ) -> bool:
        """Move to ``new_state`` only if the current state is in ``allowed``.

        With ``droplet_id`` the transition also requires that droplet to
        still be the one under control, so a stale poll loop cannot act
        after a forced override. With ``release`` the droplet id and
        address are dropped in the same step.
        """
        with self._lock:
            if self._state not in allowed:
                return False
            if droplet_id is not None and self._droplet_id != droplet_id:
                return False
            if release:
                self._droplet_id = None
                self._ipv4 = None
            self._set_state(new_state, reason, forced=False)
            return True

    def _set_state(self, new_state: LifecycleState, reason: str, forced: bool):
        # caller holds self._lock; only the state changes here
        previous = self._state
        self._state = new_state
        self._history.append(TransitionRecord(
            from_state=previous.value,
            to_state=new_state.value,
            reason=reason,
            forced=forced,
            droplet_id=self._droplet_id,
            ipv4=self._ipv4,
        ))
        logger.info(f"Status {previous.value} -> {new_state.value} ({reason})")

    def _owns(self, droplet_id: int) -> bool:
        with self._lock:
            return self._state is LifecycleState.STARTING and self._droplet_id == droplet_id

    # ── Public Operations ────────────────────────────────────────

    async def create_server(
        self, on_ready: Optional[Callable[[], None]] = None,
    ) -> Optional["asyncio.Future"]:
        """
        Create a new minecraft server droplet.
        Works only when status is "down".

        Args:
            on_ready: Called once, when the server reaches "up".

        Returns:
            A future resolving to the final state of the bring-up
            (``UP`` or ``WEIRD``), or None if the request was refused or
            DigitalOcean failed to create the droplet.
        """
        with self._lock:
            leftover = self._droplet_id if self._state is LifecycleState.DOWN else None
        if leftover is not None:
            logger.warning(
                f"Refusing to create server while droplet {leftover} is still known. "
                "Force 'weird' and stop it first."
            )
            return None

        if not self._transition({LifecycleState.DOWN}, LifecycleState.STARTING, "create requested"):
            logger.warning("Refusing to create server when status is not 'down'.")
            return None

        try:
            droplet_id = await asyncio.to_thread(self._cloud.create_droplet)
            if droplet_id is None:
                raise CreationError("DigitalOcean did not return a droplet id")
        except Exception as e:  # noqa: BLE001
            logger.error(f"Error while creating droplet: {e}")
            self._transition({LifecycleState.STARTING}, LifecycleState.DOWN, "creation failed")
            return None

        with self._lock:
            adopted = self._state is LifecycleState.STARTING
            if adopted:
                self._droplet_id = droplet_id
            current = self._state
        if not adopted:
            logger.error(
                f"Droplet {droplet_id} was created after status changed to "
                f"'{current.value}'. It is not under control, delete it manually."
            )
            return None
        logger.info(f"Created droplet with ID {droplet_id}. Waiting for network...")

        ready = asyncio.get_running_loop().create_future()
        task = self._scheduler.spawn(self._bring_up(droplet_id, ready, on_ready))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ready

    async def stop_server(self) -> bool:
        """
        Stop the service and delete the droplet.
        Works only when status is "up" or "weird".

        Returns:
            True once the droplet is deleted and status is "down". False
            when refused, when deletion failed, or when no droplet was
            known and so nothing was deleted.
        """
        if not self._transition(
            {LifecycleState.UP, LifecycleState.WEIRD}, LifecycleState.STOPPING, "stop requested",
        ):
            logger.warning("Refusing to stop server when status is not 'up'/'weird'.")
            return False

        with self._lock:
            droplet_id, ipv4 = self._droplet_id, self._ipv4

        logger.info("Stopping droplet!")
        await self._graceful_stop(ipv4)

        if droplet_id is None:
            logger.warning("No droplet ID known, nothing was deleted")
            self._transition({LifecycleState.STOPPING}, LifecycleState.DOWN, "no droplet to delete")
            return False

        logger.info(f"Deleting droplet with ID = {droplet_id}")
        try:
            result = await asyncio.to_thread(self._cloud.delete_droplet, droplet_id)
            deleted, detail = result.success, result.message
        except Exception as e:  # noqa: BLE001
            deleted, detail = False, str(e)
        if not deleted:
            logger.error(f"Could not delete droplet {droplet_id}: {detail}")
            self._transition({LifecycleState.STOPPING}, LifecycleState.WEIRD, "droplet deletion failed")
            return False

        self._transition(
            {LifecycleState.STOPPING}, LifecycleState.DOWN, "droplet deleted", droplet_id, release=True,
        )
        logger.info("Server stopped!")
        return True

    def force_status(self, new_status: Union[LifecycleState, str]) -> LifecycleState:
        """Forcefully change the current status (for manual recovery).

        Only the state is assigned. A known droplet id and address are
        kept, so forcing "weird" and then stopping still deletes it.
        """
        state = LifecycleState(new_status)
        logger.warning(f"Forcing status to be {state.value}")
        with self._lock:
            self._set_state(state, "forced", forced=True)
        return state

    def get_status(self) -> ServerStatus:
        """Return the current status of the server."""
        with self._lock:
            return ServerStatus(state=self._state, ipv4=self._ipv4, droplet_id=self._droplet_id)

    def get_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Recent transitions, newest first."""
        with self._lock:
            entries = list(self._history)[-limit:] if limit > 0 else []
        return [e.to_dict() for e in reversed(entries)]

    # ── Bring-up ─────────────────────────────────────────────────

    async def _bring_up(self, droplet_id: int, ready: "asyncio.Future", on_ready):
        ipv4 = await self._wait_for_droplet(droplet_id)
        if ipv4 is not None:
            final = await self._init_droplet(droplet_id, ipv4)
        else:
            final = self.get_status().state

        if final is LifecycleState.UP and on_ready is not None:
            try:
                on_ready()
            except Exception as e:  # noqa: BLE001
                logger.error(f"Ready callback failed: {e}")
        if not ready.done():
            ready.set_result(final)

    async def _describe(self, droplet_id: int) -> Optional[DropletInfo]:
        try:
            return await asyncio.to_thread(self._cloud.get_droplet, droplet_id)
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Could not query droplet {droplet_id}: {e}")
            return None

    async def _wait_for_droplet(self, droplet_id: int) -> Optional[str]:
        """Poll until the droplet is active with a public address.

        Returns the address, or None when the poll gave up (timeout) or
        the droplet is no longer the one under control.
        """
        started = self._scheduler.now()
        while True:
            if not self._owns(droplet_id):
                logger.info(f"Droplet {droplet_id} no longer starting, polling stopped")
                return None

            info = await self._describe(droplet_id)
            if info is None:
                logger.info(f"Droplet {droplet_id} status unknown. Waiting...")
            elif not info.active:
                logger.info(f"Droplet {droplet_id} not active ({info.status}). Waiting...")
            elif not info.ipv4:
                logger.info(f"Droplet {droplet_id} is active but without network. Waiting...")
            else:
                with self._lock:
                    if self._state is not LifecycleState.STARTING or self._droplet_id != droplet_id:
                        return None
                    self._ipv4 = info.ipv4
                return info.ipv4

            if self._schedule.expired(started, self._scheduler.now()):
                logger.error(
                    f"Droplet {droplet_id} did not become reachable within "
                    f"{self._schedule.timeout:.0f}s"
                )
                self._transition(
                    {LifecycleState.STARTING}, LifecycleState.WEIRD,
                    "droplet never became active", droplet_id,
                )
                return None
            await self._scheduler.sleep(self._schedule.interval)

    async def _init_droplet(self, droplet_id: int, ipv4: str) -> LifecycleState:
        logger.info("Initializing droplet with SSH...")
        try:
            await asyncio.to_thread(self._provision, ipv4)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Could not run initialization script: {e}")
            self._transition(
                {LifecycleState.STARTING}, LifecycleState.WEIRD,
                "provisioning failed", droplet_id,
            )
            return self.get_status().state

        if self._transition({LifecycleState.STARTING}, LifecycleState.UP, "provisioned", droplet_id):
            logger.info("Droplet initialized!")
        return self.get_status().state

    def _provision(self, host: str):
        """Run the provisioning script in order over one shared session."""
        try:
            session = self._executor.open_session(host)
        except SSHConnectionError as e:
            raise ProvisioningError(str(e)) from e

        with session:
            for command in self._script:
                result = self._executor.execute(command, session=session, log_output=True)
                if result.transport_error:
                    raise ProvisioningError(f"{command!r} did not run: {result.stderr}")
                if not result.success:
                    logger.warning(f"Provisioning step exited {result.exit_code}: {command}")

    # ── Teardown ─────────────────────────────────────────────────

    async def _graceful_stop(self, ipv4: Optional[str]):
        if not ipv4:
            logger.warning("No address known, skipping graceful stop")
            return
        logger.info(f"Running '{STOP_COMMAND}'...")
        try:
            result = await asyncio.to_thread(
                self._executor.execute, STOP_COMMAND, log_output=True, host=ipv4,
            )
            if not result.success:
                raise TeardownCommandError(f"exit={result.exit_code} {result.stderr}")
        except Exception as e:  # noqa: BLE001
            logger.error(f"Graceful stop failed, deleting droplet anyway: {e}")

    def __repr__(self) -> str:
        status = self.get_status()
        return f"DropletController({status.state.value}, droplet={status.droplet_id})"
