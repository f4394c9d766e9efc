"""Exception types raised inside the droplet lifecycle core."""


class DropletError(Exception):
    """Base class for lifecycle failures."""


class CreationError(DropletError):
    """The cloud provider did not create the droplet."""


class ProvisioningError(DropletError):
    """The post-boot script could not be run on the droplet."""


class TeardownCommandError(DropletError):
    """The graceful service stop failed before deletion."""


class SSHConnectionError(DropletError):
    """An SSH session could not be opened (unreachable host or auth rejected)."""


class ConfigError(DropletError):
    """Configuration is missing a required value."""
