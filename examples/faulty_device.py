#!/usr/bin/env python3
# SPDX-License-Identifier: Apache-2.0
"""Faulty device example: watch a filesystem meet a bad block.

Creates one mounted ext4 device whose blocks 2048-2055 fail every I/O,
writes files until one lands on the bad range, then tears down.

Must run as root (loop devices, dmsetup, mount).

Usage:
    sudo python faulty_device.py [SIZE]
"""

import os
import sys

from faultloop import (
    BatchSession,
    DeviceOptions,
    ImmediateRelease,
    draw_sizes,
    host_services,
    parse_size,
)


def main():
    size = parse_size(sys.argv[1] if len(sys.argv) > 1 else "64M")

    with BatchSession(host_services(), release=ImmediateRelease()) as session:
        # Blocks 2048-2055 lie in the first block group, used early by ext4
        [record] = session.create(
            draw_sizes(1, size),
            DeviceOptions(fault_spec="2048-2055", mount=True),
            fail_fast=True,
        )
        print(f"Device {record.device} mounted at {record.mount.mountpoint}")

        for i in range(256):
            path = record.mount.mountpoint / f"file{i}"
            try:
                with open(path, "wb") as f:
                    f.write(os.urandom(64 * 1024))
                    f.flush()
                    os.fsync(f.fileno())
            except OSError as e:
                print(f"  write #{i} failed: {e}")
                break
        else:
            print("  every write succeeded; the bad range was never touched")

    print("Torn down.")


if __name__ == "__main__":
    main()
