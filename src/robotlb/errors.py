# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Error taxonomy shared by the resolvers, the diff engine and the reconciler.

Every error carries a ``transient`` flag: transient errors are retried with
backoff, permanent ones are reported on the service and left alone until the
service changes.
"""

from __future__ import annotations


class RobotLBError(Exception):
    """Base class for all controller errors."""

    transient = False
    reason = "Error"


class ConfigError(RobotLBError, ValueError):
    """Raised when service annotations or defaults are invalid."""

    reason = "InvalidConfiguration"


class InvalidValue(ConfigError):
    def __init__(self, key: str, value: str, expected: str = ""):
        self.key = key
        self.value = value
        message = f"invalid value {value!r} for {key}"
        if expected:
            message = f"{message}: {expected}"
        super().__init__(message)


class DependentFieldMissing(ConfigError):
    def __init__(self, key: str, requires: str):
        self.key = key
        self.requires = requires
        super().__init__(f"{key} is set but {requires} is not")


class NoListeners(ConfigError):
    """The service exposes no TCP port the balancer could listen on."""


class ImmutableFieldChanged(ConfigError):
    """The desired spec asks to change a field fixed at creation time."""

    reason = "ImmutableFieldChanged"

    def __init__(self, field: str, current: str, desired: str):
        self.field = field
        self.current = current
        self.desired = desired
        super().__init__(
            f"{field} of an existing load balancer cannot be changed "
            f"(current {current!r}, desired {desired!r}); delete the balancer to recreate it"
        )


class OwnershipConflict(RobotLBError):
    """A balancer with the desired name belongs to another service."""

    reason = "OwnershipConflict"


class ResolutionError(RobotLBError):
    """Target resolution failed altogether."""

    transient = True
    reason = "TargetResolutionFailed"


class PartialTargets(ResolutionError):
    """Some backends could not be turned into targets.

    Recorded as a warning; the pass continues with the remaining targets.
    """

    reason = "PartialTargets"

    def __init__(self, node: str, detail: str):
        self.node = node
        self.detail = detail
        super().__init__(f"node {node} excluded: {detail}")


class CloudAPIError(RobotLBError):
    """Raised when the cloud provider API call fails."""

    reason = "CloudAPIError"

    def __init__(self, code: str, message: str, transient: bool = False):
        self.code = code
        self.transient = transient
        super().__init__(f"{code}: {message}")


class KubeAPIError(RobotLBError):
    """Raised when the Kubernetes API call fails."""

    reason = "KubernetesAPIError"

    def __init__(self, message: str, transient: bool = True):
        self.transient = transient
        super().__init__(message)
