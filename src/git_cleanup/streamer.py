"""Live terminal status for a running operation."""

import logging
import queue
import threading
from collections import deque
from typing import Callable, NamedTuple, Optional, Union

from rich.console import Console, Group
from rich.live import Live
from rich.spinner import Spinner
from rich.text import Text

logger = logging.getLogger(__name__)

MAX_DISPLAY_LINES = 2
SPINNER = "dots"
PASS_GLYPH = "✔"
FAIL_GLYPH = "✖"

Sink = Callable[[str], None]
Operation = Callable[[Sink], None]


class _Finished(NamedTuple):
    error: Optional[BaseException]


class StatusLine:
    """A spinner labelled with the operation title and its latest output."""

    def __init__(self, title: str, max_lines: int = MAX_DISPLAY_LINES) -> None:
        self.title = title
        self.spinner = Spinner(SPINNER, text=Text(title))
        self._lines: deque[str] = deque(maxlen=max_lines)

    @property
    def lines(self) -> list[str]:
        """Lines currently shown below the spinner, oldest first."""
        return list(self._lines)

    def add(self, line: str) -> bool:
        """Add a line of output. Returns False if the line was ignored."""
        if not line:
            return False
        self._lines.append(line)
        return True

    def clear(self) -> None:
        self._lines.clear()

    def render(self) -> Group:
        """Snapshot of the spinner and the visible lines."""
        return Group(
            self.spinner,
            *(Text(line, style="dim", no_wrap=True, overflow="ellipsis") for line in self._lines),
        )


class OutputStreamer:
    """Run operations behind a live, self-erasing status line.

    The operation runs on a worker thread and pushes output lines through
    the sink it is given. Each line redraws the status region once and
    nothing else redraws it, so the spinner advances with the output. When
    the operation finishes the region is erased and replaced by a single
    pass or fail line.
    """

    def __init__(self, console: Optional[Console] = None) -> None:
        self.console = console or Console()

    def run(self, title: str, operation: Operation) -> Optional[BaseException]:
        """Run an operation, returning the exception it raised, if any."""
        status = StatusLine(title)
        events: "queue.Queue[Union[str, _Finished]]" = queue.Queue()

        def work() -> None:
            error: Optional[BaseException] = None
            try:
                operation(events.put)
            except BaseException as err:
                error = err
            finally:
                events.put(_Finished(error))

        worker = threading.Thread(target=work, name=f"operation: {title}", daemon=True)
        with Live(status.render(), console=self.console, transient=True, auto_refresh=False) as live:
            worker.start()
            # Lines are queued before the finish marker, so they are always drained first
            while True:
                event = events.get()
                if isinstance(event, _Finished):
                    break
                if status.add(event):
                    self._redraw(live, status)
            status.clear()
            live.update(status.render(), refresh=True)
        worker.join()

        logger.debug("Operation %r %s", title, "failed" if event.error else "succeeded")
        self._finish(status, event.error)
        return event.error

    def _redraw(self, live: Live, status: StatusLine) -> None:
        live.update(status.render(), refresh=True)

    def _finish(self, status: StatusLine, error: Optional[BaseException]) -> None:
        if error is None:
            self.console.print(Text(f"{PASS_GLYPH} {status.title}"))
            return

        self.console.print(Text(f"{FAIL_GLYPH} {status.title}", style="red"))
        for line in str(error).split("\n"):
            self.console.print(Text(f"  {line}", style="bright_black"))
