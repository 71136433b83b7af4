class PortwatchError(Exception):
    pass


class CommandError(PortwatchError):
    """An external introspection command was missing, timed out, or exited non-zero."""

    def __init__(self, command, reason: str):
        self.command = list(command)
        self.reason = reason
        super().__init__(f"{' '.join(self.command)}: {reason}")


class ContainerRuntimeError(PortwatchError):
    """The container runtime could not be reached or returned unusable data."""
