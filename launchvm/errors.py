"""Error taxonomy for launchvm.

Core modules raise these and never swallow them; only the CLI commands catch
``LaunchVMError`` and turn it into a one-line message and a non-zero exit.
"""


class LaunchVMError(Exception):
    """Base error for launchvm."""


class NotFoundError(LaunchVMError):
    """Raised when a referenced resource id does not exist."""


class InvalidError(LaunchVMError):
    """Raised when user input or flags fail validation."""


class ProviderError(LaunchVMError):
    """Raised when an AWS API call or the network stack fails."""


class AbortedError(LaunchVMError):
    """Raised when the launch was not confirmed."""
