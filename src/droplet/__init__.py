"""
mcdroplet — On-demand Minecraft droplet on DigitalOcean

Provides:
- Droplet Lifecycle Controller (DropletController): down/starting/up/stopping/weird
- DigitalOcean API (DigitalOceanClient): create, describe, delete droplets
- Remote Command Executor (RemoteExecutor): SSH provisioning and shutdown
- Config loader (load_config): YAML defaults + env overrides
"""

from .config import DropletConfig, load_config
from .controller import (
    DropletController, LifecycleState, ServerStatus,
    PROVISIONING_SCRIPT, STOP_COMMAND,
)
from .digitalocean import DigitalOceanClient, DropletInfo, ActionResult
from .errors import (
    DropletError, CreationError, ProvisioningError,
    TeardownCommandError, SSHConnectionError, ConfigError,
)
from .observability import TransitionRecord
from .scheduler import PollSchedule, Scheduler
from .ssh import RemoteExecutor, SSHSession, ExecResult

__all__ = [
    'DropletConfig', 'load_config',
    'DropletController', 'LifecycleState', 'ServerStatus',
    'PROVISIONING_SCRIPT', 'STOP_COMMAND',
    'DigitalOceanClient', 'DropletInfo', 'ActionResult',
    'DropletError', 'CreationError', 'ProvisioningError',
    'TeardownCommandError', 'SSHConnectionError', 'ConfigError',
    'TransitionRecord',
    'PollSchedule', 'Scheduler',
    'RemoteExecutor', 'SSHSession', 'ExecResult',
]
