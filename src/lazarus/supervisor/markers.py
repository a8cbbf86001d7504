"""Per-domain presence markers and the saved continuation token."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from lazarus.defaults import CLEAN_EXIT_MARKER, CONTINUATION_FILE, FRESH_START_MARKER, domain_dir
from lazarus.fs import atomic_write_file, consume_marker, marker_present, read_text_file, touch_marker


class DomainMarkers:
    """Filesystem signals shared by the supervisor, the hooks and the monitor.

    clean_exit    — written by the supervisor right before a voluntary stop,
                    consumed by the monitor once per restart decision
    fresh_start   — written by an operator, consumed by the supervisor at Starting
    continuation  — last platform session id, used to build the resume argument
    """

    def __init__(self, state_dir: str | Path, domain: str) -> None:
        self.domain = domain
        self.dir = domain_dir(Path(state_dir), domain)
        self.clean_exit_path = self.dir / CLEAN_EXIT_MARKER
        self.fresh_start_path = self.dir / FRESH_START_MARKER
        self.continuation_path = self.dir / CONTINUATION_FILE

    # -- clean exit ---------------------------------------------------------

    def mark_clean_exit(self) -> None:
        touch_marker(self.clean_exit_path)

    def clean_exit_present(self) -> bool:
        return marker_present(self.clean_exit_path)

    def consume_clean_exit(self) -> bool:
        return consume_marker(self.clean_exit_path)

    # -- fresh start --------------------------------------------------------

    def request_fresh_start(self) -> None:
        touch_marker(self.fresh_start_path)

    def consume_fresh_start(self) -> bool:
        return consume_marker(self.fresh_start_path)

    # -- continuation token -------------------------------------------------

    def save_token(self, token: str) -> None:
        token = token.strip()
        if not token:
            raise ValueError("continuation token must not be empty")
        atomic_write_file(self.continuation_path, token + "\n")

    def load_token(self) -> Optional[str]:
        token = read_text_file(self.continuation_path).strip()
        return token or None

    def clear_token(self) -> bool:
        return consume_marker(self.continuation_path)
