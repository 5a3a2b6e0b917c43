"""Reference worker process.

The development-mode default for ``dev_script``.  It binds the two endpoints
the bridge connects to:

* a ``REP`` socket answering every command with one JSON reply, and
* a ``PUB`` socket streaming ``progress`` and ``result`` frames for jobs.

Every payload is strict JSON (double quotes).  ``Shutdown`` stops the worker;
so does SIGTERM/SIGINT.  In ``--echo`` mode each command is answered with
``{"status":"ok","echo":<command>}`` and no job is started.

Only pyzmq and the standard library are used so the file runs as a plain
script (``python reference_worker.py``) or as a frozen ``backend`` binary.
"""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import zmq

logger = logging.getLogger("reference_worker")

SHUTDOWN_COMMAND = "Shutdown"


def _dumps(obj: object) -> str:
    return json.dumps(obj, separators=(",", ":"))


@dataclass
class _Job:
    job_id: str
    command: str
    steps: int
    interval: float
    step: int = 0
    next_due: float = field(default_factory=time.monotonic)


class ReferenceWorker:
    def __init__(
        self,
        command_endpoint: str,
        update_endpoint: str,
        *,
        echo: bool = False,
        steps: int = 10,
        interval: float = 0.2,
    ) -> None:
        self.command_endpoint = command_endpoint
        self.update_endpoint = update_endpoint
        self.echo = echo
        self.steps = max(1, steps)
        self.interval = max(0.0, interval)

        self._ctx = zmq.Context()
        self._rep: Optional[zmq.Socket] = None
        self._pub: Optional[zmq.Socket] = None
        self._jobs: Dict[str, _Job] = {}
        self._next_id = 1
        self._stop = False

    def request_stop(self, *_args) -> None:
        self._stop = True

    # ------------------------------------------------------------------
    # Command handling
    # ------------------------------------------------------------------
    def handle(self, command: str) -> str:
        """Return the reply text for *command*."""
        if command == SHUTDOWN_COMMAND:
            self._stop = True
            return _dumps({"status": "stopping"})
        if self.echo:
            return _dumps({"status": "ok", "echo": command})

        job_id = str(self._next_id)
        self._next_id += 1
        self._jobs[job_id] = _Job(job_id, command, self.steps, self.interval)
        logger.info("Started job %s for %r", job_id, command)
        return _dumps({"status": "started", "id": job_id, "command": command})

    def _advance_jobs(self) -> None:
        now = time.monotonic()
        for job in list(self._jobs.values()):
            if job.next_due > now:
                continue
            job.step += 1
            value = round(100 * job.step / job.steps)
            self._publish("progress", {"id": job.job_id, "value": value})
            job.next_due = now + job.interval
            if job.step >= job.steps:
                self._publish("result", {"id": job.job_id, "status": "done", "command": job.command})
                del self._jobs[job.job_id]
                logger.info("Finished job %s", job.job_id)

    def _publish(self, topic: str, payload: dict) -> None:
        assert self._pub is not None
        self._pub.send_string(f"{topic} {_dumps(payload)}")

    def _poll_timeout_ms(self) -> int:
        if not self._jobs:
            return 200
        wait = min(job.next_due for job in self._jobs.values()) - time.monotonic()
        return max(0, min(200, int(wait * 1000)))

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    def run(self) -> int:
        self._rep = self._ctx.socket(zmq.REP)
        self._pub = self._ctx.socket(zmq.PUB)
        for sock in (self._rep, self._pub):
            sock.setsockopt(zmq.LINGER, 0)
        try:
            self._rep.bind(self.command_endpoint)
            self._pub.bind(self.update_endpoint)
        except zmq.ZMQError as exc:
            logger.error("Cannot bind worker endpoints: %s", exc)
            self._ctx.destroy(linger=0)
            return 2

        logger.info("Worker ready (commands=%s, updates=%s)", self.command_endpoint, self.update_endpoint)
        poller = zmq.Poller()
        poller.register(self._rep, zmq.POLLIN)
        try:
            while not self._stop:
                events = dict(poller.poll(self._poll_timeout_ms()))
                if self._rep in events:
                    command = self._rep.recv().decode("utf-8", errors="replace")
                    logger.info("Command received: %s", command)
                    self._rep.send_string(self.handle(command))
                self._advance_jobs()
        except zmq.ZMQError as exc:
            if not self._stop:
                logger.error("Worker transport error: %s", exc)
                return 1
        finally:
            # Give the last reply (e.g. to Shutdown) a moment to leave.
            self._pub.close(linger=0)
            self._rep.close(linger=500)
            self._ctx.term()
        logger.info("Worker stopped")
        return 0


def _parse_args(argv: List[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reference worker for the worker bridge")
    parser.add_argument("--command-endpoint", default="tcp://127.0.0.1:5555")
    parser.add_argument("--update-endpoint", default="tcp://127.0.0.1:5556")
    parser.add_argument("--echo", action="store_true", help="reply with the command instead of starting a job")
    parser.add_argument("--steps", type=int, default=10, help="progress frames per job")
    parser.add_argument("--interval", type=float, default=0.2, help="seconds between progress frames")
    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        stream=sys.stdout,
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    worker = ReferenceWorker(
        args.command_endpoint,
        args.update_endpoint,
        echo=args.echo,
        steps=args.steps,
        interval=args.interval,
    )
    signal.signal(signal.SIGTERM, worker.request_stop)
    signal.signal(signal.SIGINT, worker.request_stop)
    return worker.run()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
