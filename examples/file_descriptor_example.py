#!/usr/bin/env python3
"""
Close raw file descriptors when the objects wrapping them are collected.

Each `Scratch` wraps an `os.open` descriptor. Some are closed explicitly, some
are simply dropped and left to the background drainer, and some are bound to
a ResourceScope. The disposer only captures the integer descriptor, never the
wrapper, so the wrapper can become unreachable.
"""

import gc
import os
import tempfile
import time

from gcdispose.config.logging_config import get_logger
from gcdispose.observability.metrics import get_metrics_summary, init_metrics
from gcdispose.runtime import ResourceScope, TrackType, shutdown_default_drainer, track

log = get_logger(__name__)


class Scratch:
    def __init__(self, path: str):
        self.fd = os.open(path, os.O_RDWR | os.O_CREAT)
        self.ref = track(self, _closer(self.fd, path))

    def write(self, data: bytes) -> int:
        return os.write(self.fd, data)

    def close(self) -> None:
        self.ref.dispose()


def _closer(fd: int, path: str):
    def close_fd():
        os.close(fd)
        log.info(f"closed fd {fd} ({os.path.basename(path)})")

    return close_fd


def main():
    init_metrics(service_name="fd-example", enabled=True)
    workdir = tempfile.mkdtemp(prefix="gcdispose-")

    explicit = Scratch(os.path.join(workdir, "explicit.bin"))
    explicit.write(b"closed by the caller")
    explicit.close()
    explicit.close()  # no-op

    for i in range(3):
        Scratch(os.path.join(workdir, f"dropped-{i}.bin")).write(b"closed by the drainer")
    gc.collect()

    with ResourceScope():
        scoped = Scratch(os.path.join(workdir, "scoped.bin"))
        track(scoped, lambda: log.info("scope exited"), track_type=TrackType.STACK)
        scoped.write(b"closed when the scope exits")

    time.sleep(1.0)
    shutdown_default_drainer()
    log.info(f"metrics: {get_metrics_summary()['metrics']}")


if __name__ == "__main__":
    main()
