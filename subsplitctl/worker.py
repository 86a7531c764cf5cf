# subsplitctl/worker.py
import os
import signal
import time

from . import executor
from .broker import BrokerFault
from .commands import build_command
from .config import Config
from .models import Notification, NotificationError, classify_reference, resolve_project


class WorkerShutdown(Exception):
    """Raised by the signal handler to leave an idle wait."""


class Worker:
    """
    Consumes notifications one at a time and publishes the matching project.
    """
    def __init__(self, worker_id, config: Config, broker, install_signal_handlers=True):
        self.worker_id = worker_id
        self.config = config
        self.broker = broker
        # Set to False by the signal handler
        self.running = True
        self.waiting = False
        self.processed_count = 0
        self.failed_count = 0
        self.started_at = time.monotonic()
        if install_signal_handlers:
            self.setup_signal_handlers()
        print(f"Worker {self.worker_id} starting...")

    def setup_signal_handlers(self):
        """Sets up signal handlers for graceful shutdown."""
        signal.signal(signal.SIGTERM, self.handle_shutdown)
        signal.signal(signal.SIGINT, self.handle_shutdown)

    def handle_shutdown(self, signum, frame):
        """
        Stops the loop. Only a blocking wait is interrupted; a notification
        being processed is finished and acknowledged first.
        """
        print(f"Worker {self.worker_id} received shutdown signal {signum}.")
        interrupt = self.waiting and self.running
        self.running = False
        if interrupt:
            raise WorkerShutdown()
        print(f"Worker {self.worker_id} finishing current notification...")

    def working_directory_for(self, name: str) -> str:
        # Namespaced by worker id so instances sharing a root never collide
        return os.path.join(self.config.working_directory, self.worker_id, name)

    def wait_for_notification(self):
        """
        Blocks on the broker for the next notification.
        If a shutdown interrupts the wait after the broker already moved a
        notification to processing, that notification is returned so it still
        gets acknowledged.
        """
        try:
            self.waiting = True
            body = self.broker.next_notification()
            self.waiting = False
        except WorkerShutdown:
            self.waiting = False
            return self.broker.in_flight
        return body

    def run(self):
        """The main worker loop."""
        while self.running:
            print(f"Worker {self.worker_id} waiting for a notification...")
            body = self.wait_for_notification()

            if body is None:
                if not self.running:
                    break
                seconds = int(time.monotonic() - self.started_at)
                raise BrokerFault(f"Something strange happened after {seconds} seconds")

            self.process(body)

        print(
            f"Worker {self.worker_id} shutting down "
            f"({self.processed_count} processed, {self.failed_count} failed)."
        )

    def process(self, body: str) -> bool:
        """
        Processes one notification already moved to processing.
        Returns True if it was acknowledged to processed, False if it went to failures.
        """
        try:
            notification = Notification.from_json(body)
        except NotificationError as e:
            print(f"Worker {self.worker_id} skipping malformed notification: {e}")
            return self._fail(body, body)

        notification.mark_processed()

        resolved = resolve_project(notification, self.config.projects)
        if resolved is None:
            print(f"Skipping request for URL {notification.repository_url} (not configured)")
            return self._fail(body, notification.to_json())

        name, project = resolved
        notification.assign_project(name, project)

        mode = classify_reference(notification.ref, notification.base_ref)
        if mode.is_rejected:
            print(
                f"Skipping request for URL {notification.repository_url} "
                f"(unexpected reference detected: {notification.ref})"
            )
            return self._fail(body, notification.to_json())

        print(f"Worker {self.worker_id} processing subsplit for {name} ({notification.ref}, {mode})")

        working_directory = self.working_directory_for(name)
        try:
            if not os.path.exists(working_directory):
                print(f"Creating working directory for project {name} ({working_directory})")
            os.makedirs(working_directory, mode=0o700, exist_ok=True)
        except OSError as e:
            print(f"Worker {self.worker_id} could not create {working_directory}: {e}")
            return self._fail(body, notification.to_json())

        command = build_command(project, mode, project.checkout_url, working_directory)
        print(command)
        exit_code = executor.execute_command(command)

        if exit_code != 0:
            print(f"Command {command} had a problem, exit code {exit_code}")
            return self._fail(body, notification.to_json())

        self.broker.acknowledge(body, notification.to_json(), succeeded=True)
        self.processed_count += 1
        print(f"Worker {self.worker_id} completed subsplit for {name}")
        return True

    def _fail(self, body: str, payload: str) -> bool:
        self.broker.acknowledge(body, payload, succeeded=False)
        self.failed_count += 1
        return False
