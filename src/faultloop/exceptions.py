# SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for faultloop operations."""


class FaultLoopError(Exception):
    """Base exception for all faultloop errors."""

    pass


class InvalidSizeSpec(FaultLoopError, ValueError):
    """Size string, size range or instance count is not usable."""

    pass


class InvalidBlockRange(FaultLoopError, ValueError):
    """Fault block-range specification is malformed or out of bounds."""

    pass


class ResourceExhaustion(FaultLoopError):
    """A host resource (loop slot, space, memory) ran out."""

    pass


class NoFreeLoopDevice(ResourceExhaustion):
    """The kernel has no free loop device to hand out."""

    pass


class InsufficientSpace(ResourceExhaustion):
    """Not enough disk space or memory for a backing store or pool."""

    pass


class DeviceSetupFailure(FaultLoopError):
    """Creating one of the layers of a device failed."""

    pass


class BackingStoreError(DeviceSetupFailure):
    """Backing file could not be created or adopted."""

    pass


class AttachError(DeviceSetupFailure):
    """Loop device could not be bound to its backing file."""

    pass


class DeviceMapperError(DeviceSetupFailure):
    """Device-mapper table could not be loaded."""

    pass


class FormatError(DeviceSetupFailure):
    """mkfs failed on the device."""

    pass


class MountError(DeviceSetupFailure):
    """Mount operation failed."""

    pass


class TeardownFailure(FaultLoopError):
    """Releasing a resource failed. Logged by the orchestrator, never fatal."""

    pass
