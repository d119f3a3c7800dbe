# SPDX-License-Identifier: Apache-2.0
"""Implementation of 'faultloop table' command."""

import json

from faultloop.core.mapping import (
    Fault,
    blocks_for,
    compile_table,
    format_dm_table,
    parse_fault_spec,
)
from faultloop.core.sizes import parse_size


def cmd_table(args) -> int:
    total = blocks_for(parse_size(args.size))
    table = compile_table(parse_fault_spec(args.faulty, total), total)

    if getattr(args, "json", False):
        print(json.dumps({
            "command": "table",
            "blocks": total,
            "segments": [
                {
                    "start": seg.start,
                    "length": seg.length,
                    "target": "error" if isinstance(seg, Fault) else "linear",
                }
                for seg in table
            ],
            "table": format_dm_table(table, args.device),
        }))
    else:
        print(format_dm_table(table, args.device))

    return 0
