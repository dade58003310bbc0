"""Stdout NDJSON sink for the live entry feed.

Each stamped log entry is written as one JSON line to ``sys.stdout.buffer``
so the feed can be piped into ``jq`` or another consumer.
"""

from __future__ import annotations

import logging
import sys
from typing import Union

from uniongate_monitor.models import DeviceStatus, EventLogEntry
from uniongate_monitor.render import to_ndjson

logger = logging.getLogger(__name__)


class StdoutSink:
    """Write log entries as NDJSON to stdout.

    ``count`` is the number of entries written so far.
    """

    def __init__(self) -> None:
        self.count = 0
        self.broken = False

    def write(self, entry: Union[DeviceStatus, EventLogEntry]) -> None:
        """Serialize and write *entry*.

        Raises
        ------
        BrokenPipeError
            If the stdout consumer has gone away.
        """
        data = to_ndjson(entry)
        try:
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()
        except BrokenPipeError:
            self.broken = True
            logger.warning("stdout broken: consumer likely exited")
            raise
        self.count += 1
