# SPDX-License-Identifier: Apache-2.0
"""
faultloop - ephemeral loop block devices with deterministic fault windows.

Creates sparse-file or tmpfs-backed loop devices, optionally layers a
device-mapper table that makes chosen block ranges fail I/O, optionally
formats and mounts them, holds the batch until released, then tears
everything down.

Layers are loaded lazily - the pure compiler never pulls in ctypes:

    from faultloop import compile_table          # pure, no I/O
    from faultloop import BatchSession           # orchestrator
    from faultloop import host_services          # kernel-backed services

Example:
    from faultloop import (BatchSession, DeviceOptions, PromptRelease,
                           draw_sizes, host_services, parse_size)

    session = BatchSession(host_services(), release=PromptRelease())
    session.run(draw_sizes(3, parse_size("64M")),
                DeviceOptions(fault_spec="500,1000-1010"))
"""

# Exceptions are lightweight and always available.
from .exceptions import (
    FaultLoopError,
    InvalidSizeSpec,
    InvalidBlockRange,
    ResourceExhaustion,
    NoFreeLoopDevice,
    InsufficientSpace,
    DeviceSetupFailure,
    BackingStoreError,
    AttachError,
    DeviceMapperError,
    FormatError,
    MountError,
    TeardownFailure,
)

__all__ = [
    # Compiler
    "parse_fault_spec",
    "compile_table",
    "format_dm_table",
    "blocks_for",
    # Sizes
    "parse_size",
    "draw_sizes",
    # Orchestration
    "BatchSession",
    "DeviceOptions",
    "DeviceState",
    "Config",
    "PromptRelease",
    "ImmediateRelease",
    "sweep",
    "host_services",
    # Exceptions
    "FaultLoopError",
    "InvalidSizeSpec",
    "InvalidBlockRange",
    "ResourceExhaustion",
    "NoFreeLoopDevice",
    "InsufficientSpace",
    "DeviceSetupFailure",
    "BackingStoreError",
    "AttachError",
    "DeviceMapperError",
    "FormatError",
    "MountError",
    "TeardownFailure",
]

__version__ = "0.1.0"

# Lazy imports - each layer loads only when first accessed.
_LAZY_IMPORTS = {
    "parse_fault_spec": ".core.mapping",
    "compile_table": ".core.mapping",
    "format_dm_table": ".core.mapping",
    "blocks_for": ".core.mapping",
    "parse_size": ".core.sizes",
    "draw_sizes": ".core.sizes",
    "BatchSession": ".core.session",
    "DeviceOptions": ".core.session",
    "DeviceState": ".core.records",
    "Config": ".config",
    "PromptRelease": ".core.release",
    "ImmediateRelease": ".core.release",
    "sweep": ".core.sweep",
    "host_services": ".fs.host",
}


def __getattr__(name: str):
    if name in _LAZY_IMPORTS:
        import importlib
        module = importlib.import_module(_LAZY_IMPORTS[name], __name__)
        value = getattr(module, name)
        # Cache on the module so __getattr__ isn't called again.
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
