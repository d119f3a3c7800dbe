# SPDX-License-Identifier: Apache-2.0
"""Runtime configuration with environment overrides."""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

ENV_PREFIX = "FAULTLOOP_"


@dataclass(frozen=True)
class Config:
    """Host-side defaults shared by every service of one invocation.

    Only one filesystem type is used per invocation.
    """

    tmp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    """Directory for backing files, mountpoints and tmpfs pools."""

    fs_type: str = "ext4"
    """Filesystem created by ``mkfs.<fs_type>`` and passed to mount(2)."""

    name_prefix: str = "faultloop"
    """Prefix of every file, directory and device-mapper name we create."""

    mkfs_args: tuple[str, ...] = ("-q",)

    mount_options: str | None = None
    """Data string passed to mount(2), e.g. ``"noatime"``."""

    dmsetup: str = "dmsetup"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Config":
        """Build a Config, overriding defaults from ``FAULTLOOP_*`` variables."""
        env = os.environ if environ is None else environ
        kwargs: dict = {}
        if env.get(ENV_PREFIX + "TMPDIR"):
            kwargs["tmp_dir"] = Path(env[ENV_PREFIX + "TMPDIR"])
        if env.get(ENV_PREFIX + "FSTYPE"):
            kwargs["fs_type"] = env[ENV_PREFIX + "FSTYPE"]
        if env.get(ENV_PREFIX + "PREFIX"):
            kwargs["name_prefix"] = env[ENV_PREFIX + "PREFIX"]
        if ENV_PREFIX + "MKFS_ARGS" in env:
            kwargs["mkfs_args"] = tuple(shlex.split(env[ENV_PREFIX + "MKFS_ARGS"]))
        if env.get(ENV_PREFIX + "MOUNT_OPTIONS"):
            kwargs["mount_options"] = env[ENV_PREFIX + "MOUNT_OPTIONS"]
        if env.get(ENV_PREFIX + "DMSETUP"):
            kwargs["dmsetup"] = env[ENV_PREFIX + "DMSETUP"]
        return cls(**kwargs)
