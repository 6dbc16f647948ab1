"""
License:
dropbox_link_cloner
Copyright (C) 2025  Frédéric Devernay

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

import sys
from datetime import datetime
from typing import Optional

from tqdm import tqdm


def default_log_file() -> str:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"dropbox_link_clone_log_{timestamp}.txt"


class SyncLog:
    """
    Per-run log.

    Every message is appended with a timestamp to the log file. Progress
    messages are also printed to stdout, errors and warnings to stderr, and
    detail messages only when verbose is set.
    """

    def __init__(self, log_file: Optional[str] = None, verbose: bool = False):
        self.log_file = log_file or default_log_file()
        self.verbose = verbose

    def _log_message(self, message: str) -> None:
        """Write a message to the log file with timestamp."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(f"[{timestamp}] {message}\n")

    def detail(self, message: str) -> None:
        self._log_message(message)
        if self.verbose:
            tqdm.write(message, file=sys.stdout)

    def info(self, message: str) -> None:
        self._log_message(message)
        tqdm.write(message, file=sys.stdout)

    def warning(self, message: str) -> None:
        self._log_message("Warning: " + message)
        tqdm.write(message, file=sys.stderr)

    def error(self, message: str) -> None:
        self._log_message("Error: " + message)
        tqdm.write(message, file=sys.stderr)
