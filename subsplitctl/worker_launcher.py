# subsplitctl/worker_launcher.py
"""Module entry point for spawning a detached worker process.
This is invoked via: python -m subsplitctl.worker_launcher WORKER_ID [CONFIG_PATH]
It isolates worker startup from the CLI process so the CLI can exit
immediately.
"""
import sys

from .cli import start_worker_process

if __name__ == '__main__':
    worker_id = sys.argv[1] if len(sys.argv) > 1 else None
    config_path = sys.argv[2] if len(sys.argv) > 2 else None
    start_worker_process(worker_id, config_path)
