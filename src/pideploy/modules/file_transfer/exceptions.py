"""Custom exceptions for artifact deployment."""


class DeployError(Exception):
    """Base exception for network-facing deploy errors.

    Everything in this family is an expected-category failure: it is
    reported to the user and the launch is abandoned.
    """

    pass


class InvalidArtifactError(DeployError):
    """Local artifact is missing or unreadable."""

    pass


class TransferError(DeployError):
    """Copying the artifact to the target failed."""

    pass


class RemoteLaunchError(DeployError):
    """Starting the program on the target failed."""

    pass
