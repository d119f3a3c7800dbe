# SPDX-License-Identifier: Apache-2.0
"""``python -m cli``; also the target of the pkexec/sudo re-exec."""

from . import main

main()
